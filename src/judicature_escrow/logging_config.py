"""Structured logging configuration using structlog.

JSON-structured output in production, human-readable colored output in
development. Every entry carries the correlation request_id bound by the
API middleware, and payment secrets (card references, client secrets,
webhook signatures) are masked before rendering.

Usage:
    from judicature_escrow.logging_config import setup_logging, get_logger
    setup_logging(log_level="DEBUG", json_logs=False)
    logger = get_logger(__name__)
    logger.info("order.created", order_id="ORD-LX2K9A-7QF3ZD", amount=10000)
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

SENSITIVE_KEYS = frozenset(
    {
        "payment_method_ref",
        "client_secret",
        "signature",
        "signature_header",
        "stripe_secret_key",
        "stripe_webhook_secret",
    }
)


def redact_sensitive(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Mask values of keys that must never reach log storage in clear text."""
    for key in SENSITIVE_KEYS.intersection(event_dict):
        value = event_dict[key]
        if isinstance(value, str) and len(value) > 8:
            event_dict[key] = f"{value[:4]}...{value[-4:]}"
        else:
            event_dict[key] = "***"
    return event_dict


def setup_logging(log_level: str = "DEBUG", json_logs: bool = False) -> None:
    """Route structlog and the standard library through one stdout handler.

    ``json_logs`` selects JSON lines (production) over the coloured console
    renderer (development).
    """
    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_sensitive,
    ]
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    )

    structlog.configure(
        processors=[
            *pre_chain,
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    logging.basicConfig(
        handlers=[handler],
        level=getattr(logging, log_level.upper(), logging.DEBUG),
        force=True,
    )

    # The stripe SDK logs full request bodies at INFO
    for name in ("uvicorn.access", "sqlalchemy.engine", "httpx", "httpcore", "stripe"):
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger bound to ``name`` (usually the module name)."""
    return structlog.get_logger(name)
