"""Spruce webhook handler — authenticates and accepts inbound notifications."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from hpi_identity.config import Settings
from hpi_identity.dependencies import get_audit_recorder, get_settings
from hpi_identity.errors import AuthError
from hpi_identity.services.audit import AuditRecorder
from hpi_identity.webhook.verifier import verify_webhook

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhook"])

SIGNATURE_HEADER = "X-Spruce-Signature"
WEBHOOK_SOURCE = "spruce"

# event name → payload field that identifies the affected entity
SPRUCE_EVENTS = {
    "message-created": "conversationId",
    "conversation-updated": "id",
    "contact-updated": "id",
}


# ──────────────────────────────────────────────────────────────
# Signature check, run before the body is parsed
# ──────────────────────────────────────────────────────────────
async def verified_webhook_body(
    request: Request,
    config: Settings = Depends(get_settings),
    audit: AuditRecorder = Depends(get_audit_recorder),
) -> bytes:
    """Return the raw body once its signature checks out, else raise ``AuthError``."""
    payload = await request.body()
    try:
        accepted = verify_webhook(
            payload,
            request.headers.get(SIGNATURE_HEADER),
            config.spruce_webhook_secret,
            policy=config.webhook_secret_policy,
            encoding=config.webhook_signature_encoding,
        )
    except AuthError:
        await audit.record(WEBHOOK_SOURCE, "webhook", AuthError.kind)
        raise
    if not accepted:
        await audit.record(WEBHOOK_SOURCE, "webhook", AuthError.kind)
        raise AuthError("Invalid signature")
    return payload


# ──────────────────────────────────────────────────────────────
# POST /webhooks/spruce/{event}: inbound notifications
# ──────────────────────────────────────────────────────────────
@router.post("/spruce/{event}")
async def receive_spruce_event(event: str, payload: bytes = Depends(verified_webhook_body)) -> dict:
    """Accept a verified Spruce notification.

    Expected payload structure (simplified)::

        {
          "type": "message.created",
          "data": { "id": "...", "conversationId": "..." }
        }
    """
    id_field = SPRUCE_EVENTS.get(event)
    if id_field is None:
        raise HTTPException(status_code=404, detail="Unknown webhook event")

    try:
        body = json.loads(payload)
    except ValueError:
        logger.warning("Spruce %s webhook carried malformed JSON", event)
        raise HTTPException(status_code=400, detail="Malformed JSON payload")

    data = body.get("data") if isinstance(body, dict) else None
    entity_id = data.get(id_field) if isinstance(data, dict) else None
    logger.info(
        "Received %s webhook: type=%s %s=%s",
        event,
        body.get("type") if isinstance(body, dict) else None,
        id_field,
        entity_id,
    )
    return {"received": True}
