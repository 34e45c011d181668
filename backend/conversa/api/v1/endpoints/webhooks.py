"""WhatsApp Cloud API webhook endpoints.

Endpoints:
    GET  /whatsapp — Subscription verification handshake
    POST /whatsapp — Message and status deliveries
"""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from conversa.core.database import get_db
from conversa.core.exceptions import SecurityError
from conversa.schemas.webhooks import WebhookAck
from conversa.services.webhooks import (
    WebhookConfig,
    enqueue_webhook,
    validate_signature,
    verify_challenge,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def get_webhook_config() -> WebhookConfig:
    return WebhookConfig.from_settings()


@router.get("/whatsapp", response_class=PlainTextResponse)
def verify_webhook(
    hub_mode: str | None = Query(None, alias="hub.mode"),
    hub_verify_token: str | None = Query(None, alias="hub.verify_token"),
    hub_challenge: str | None = Query(None, alias="hub.challenge"),
    config: WebhookConfig = Depends(get_webhook_config),
):
    try:
        challenge = verify_challenge(config, hub_mode, hub_verify_token, hub_challenge)
    except SecurityError:
        logger.warning("WhatsApp webhook verification rejected (mode=%s)", hub_mode)
        raise HTTPException(status_code=403, detail="Verification failed")
    logger.info("WhatsApp webhook verified")
    return PlainTextResponse(content=challenge)


@router.post("/whatsapp", response_model=WebhookAck)
async def receive_webhook(
    request: Request,
    db: Session = Depends(get_db),
    config: WebhookConfig = Depends(get_webhook_config),
):
    """Verify the signature and queue every message/status for the worker pool.

    A delivery that fails to enqueue is still acknowledged, so the provider
    does not retry a request the system already logged.
    """
    body = await request.body()
    try:
        validate_signature(config, body, request.headers.get("X-Hub-Signature-256"))
    except SecurityError as exc:
        logger.warning("WhatsApp webhook rejected: %s", exc)
        raise HTTPException(status_code=401, detail=str(exc))

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Body must be valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")

    try:
        enqueued = enqueue_webhook(db, payload)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to enqueue WhatsApp webhook delivery")
        return WebhookAck(status="accepted_with_errors")

    return WebhookAck(status="received", enqueued=enqueued)
