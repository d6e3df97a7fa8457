"""Gateway webhook endpoint.

Stripe signs the raw body, so the handler reads it unparsed. Non-2xx
responses make Stripe redeliver: 400 for a bad signature (never succeeds),
409 while the same event is in flight elsewhere.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header, Request

from judicature_escrow.api.deps import get_webhook_service
from judicature_escrow.services.webhook_service import WebhookService  # noqa: TC001

router = APIRouter(prefix="/api/v1/webhooks", tags=["Webhooks"])


@router.post("/stripe", summary="Receive a Stripe event")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None),
    svc: WebhookService = Depends(get_webhook_service),
) -> dict[str, str]:
    raw_body = await request.body()
    outcome = await svc.handle_event(raw_body, stripe_signature)
    return {"received": "true", "outcome": outcome}
