"""HTTP middleware: request correlation, domain error mapping, CORS.

The error handler is the only place that knows HTTP status codes; services
raise domain exceptions and never build responses themselves.

    ValidationError, PayoutAccountMissingError   422
    PermissionDeniedError                        403
    NotFoundError                                404
    StateConflictError (and subclasses)          409
    GatewayError                                 402 on a card decline, else 502
    GatewayOutcomeUnknownError                   504
    UserDirectoryUnavailableError                503
    WebhookSignatureError                        400
"""

from __future__ import annotations

import time
import uuid
from typing import TYPE_CHECKING

import structlog
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from judicature_escrow.config import get_settings
from judicature_escrow.domain.exceptions import (
    EscrowError,
    GatewayError,
    GatewayOutcomeUnknownError,
    InvalidStateTransitionError,
    NotFoundError,
    PayoutAccountMissingError,
    PermissionDeniedError,
    StateConflictError,
    UserDirectoryUnavailableError,
    ValidationError,
    WebhookSignatureError,
)

if TYPE_CHECKING:
    from fastapi import FastAPI, Request, Response

logger = structlog.get_logger(__name__)


def _error(status_code: int, exc: EscrowError, details: dict | None = None) -> JSONResponse:
    content: dict = {"error": exc.code, "message": exc.message}
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind request_id, method and path to every log line of the request.

    The X-Request-ID header is honoured when the caller sends one and echoed
    back either way.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        started = time.perf_counter()
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        logger.debug(
            "request.completed",
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        return response


class DomainErrorMiddleware(BaseHTTPMiddleware):
    """Catch domain exceptions and return structured JSON error responses.

    Order of the except clauses matters: subclasses before their bases.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        try:
            return await call_next(request)
        except ValidationError as exc:
            logger.info("request.invalid", fields=exc.field_errors)
            return _error(422, exc, {"fields": exc.field_errors})
        except PermissionDeniedError as exc:
            logger.warning("request.forbidden", actor_id=exc.actor_id, action=exc.action)
            return _error(403, exc)
        except NotFoundError as exc:
            logger.info("request.not_found", error=exc.message)
            return _error(404, exc)
        except InvalidStateTransitionError as exc:
            logger.warning(
                "state_machine.invalid_transition",
                current=exc.current_state,
                attempted=exc.attempted,
            )
            return _error(409, exc)
        except StateConflictError as exc:
            logger.warning("request.conflict", error=exc.message, code=exc.code)
            return _error(409, exc)
        except WebhookSignatureError as exc:
            logger.warning("webhook.rejected", error=exc.message)
            return _error(400, exc)
        except PayoutAccountMissingError as exc:
            logger.warning("release.no_payout_account", payee_id=exc.payee_id)
            return _error(422, exc)
        except GatewayOutcomeUnknownError as exc:
            logger.error("gateway.outcome_unknown", error=exc.message)
            return _error(504, exc)
        except GatewayError as exc:
            logger.warning("gateway.rejected", error=exc.message, reason_code=exc.reason_code)
            return _error(
                402 if exc.is_decline else 502, exc, {"reason_code": exc.reason_code}
            )
        except UserDirectoryUnavailableError as exc:
            logger.error("user_directory.unavailable", error=exc.message)
            return _error(503, exc)
        except EscrowError as exc:
            logger.error("domain.error", error=exc.message, code=exc.code)
            return _error(400, exc)
        except Exception as exc:
            logger.exception("unhandled.error", error=str(exc))
            return JSONResponse(
                status_code=500,
                content={
                    "error": "INTERNAL_ERROR",
                    "message": "An unexpected error occurred",
                },
            )


def setup_middleware(app: FastAPI) -> None:
    """Register middleware. The last one added is the outermost."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_settings().cors_origin_list,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )
    app.add_middleware(DomainErrorMiddleware)
    app.add_middleware(RequestContextMiddleware)
