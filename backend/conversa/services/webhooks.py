"""WhatsApp webhook boundary — verification, signature check and normalisation.

The boundary does no routing itself: each message in a delivery becomes
one durable ``ingest_message`` job and each status one ``message_status``
job, so the HTTP request can be acknowledged as soon as they commit.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from conversa.core.exceptions import SecurityError
from conversa.services.jobs import enqueue
from conversa.services.messages import PROVIDER_STATUSES

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="

MEDIA_TYPES = ("image", "video", "audio", "document", "sticker")


@dataclass(frozen=True)
class WebhookConfig:
    """Secrets for the inbound boundary. An empty ``app_secret`` disables signature checks."""

    verify_token: str
    app_secret: str = ""

    @classmethod
    def from_settings(cls) -> "WebhookConfig":
        from conversa.core.config import settings

        return cls(
            verify_token=settings.WHATSAPP_VERIFY_TOKEN,
            app_secret=settings.WHATSAPP_APP_SECRET,
        )


def verify_challenge(
    config: WebhookConfig,
    mode: str | None,
    token: str | None,
    challenge: str | None,
) -> str:
    """Answer the subscription handshake: return the challenge or raise SecurityError."""
    if (
        mode == "subscribe"
        and token
        and config.verify_token
        and hmac.compare_digest(token.encode(), config.verify_token.encode())
    ):
        return challenge or ""
    raise SecurityError("Webhook verification failed")


def validate_signature(config: WebhookConfig, body: bytes, signature_header: str | None) -> None:
    """Check ``X-Hub-Signature-256`` (HMAC-SHA256 of the raw body).

    Raises SecurityError on a missing or mismatched signature.
    """
    if not config.app_secret:
        return
    if not signature_header or not signature_header.startswith(SIGNATURE_PREFIX):
        raise SecurityError("Missing webhook signature")

    expected = hmac.new(config.app_secret.encode(), body, hashlib.sha256).hexdigest()
    received = signature_header[len(SIGNATURE_PREFIX):].strip()
    if not hmac.compare_digest(expected, received):
        raise SecurityError("Invalid webhook signature")


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------


def _message_content(msg: dict) -> tuple[str, str, dict | None]:
    """Map a Cloud API message to (type, content, media)."""
    kind = msg.get("type", "text")

    if kind == "text":
        return "text", (msg.get("text") or {}).get("body", ""), None

    if kind in MEDIA_TYPES:
        item = msg.get(kind) or {}
        media = {
            "kind": kind,
            "id": item.get("id"),
            "mime_type": item.get("mime_type"),
            "sha256": item.get("sha256"),
            "caption": item.get("caption"),
            "filename": item.get("filename"),
        }
        return "media", item.get("caption") or item.get("filename") or "", media

    if kind == "location":
        loc = msg.get("location") or {}
        media = {
            "latitude": loc.get("latitude"),
            "longitude": loc.get("longitude"),
            "name": loc.get("name"),
            "address": loc.get("address"),
        }
        content = loc.get("name") or loc.get("address") or f"{loc.get('latitude')},{loc.get('longitude')}"
        return "location", content, media

    if kind == "contacts":
        shared = msg.get("contacts") or []
        names = [(c.get("name") or {}).get("formatted_name", "") for c in shared]
        return "contact", ", ".join(n for n in names if n), {"contacts": shared}

    if kind == "interactive":
        interactive = msg.get("interactive") or {}
        reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
        return "text", reply.get("title", ""), {"interactive": interactive}

    if kind == "button":
        button = msg.get("button") or {}
        return "text", button.get("text", ""), {"button": button}

    return "text", "", {"unsupported_type": kind}


def normalize_message(msg: dict, profile_name: str | None = None, channel: str = "whatsapp") -> dict:
    """Build an ``ingest_message`` job payload from a Cloud API message."""
    message_type, content, media = _message_content(msg)
    return {
        "provider_message_id": msg["id"],
        "from": msg["from"],
        "type": message_type,
        "content": content,
        "profile_name": profile_name,
        "media": media,
        "timestamp": msg.get("timestamp"),
        "channel": channel,
    }


def normalize_status(status: dict) -> dict:
    errors = status.get("errors") or []
    error = None
    if errors:
        error = errors[0].get("title") or errors[0].get("message") or str(errors[0].get("code"))
    return {
        "id": status["id"],
        "status": status.get("status"),
        "timestamp": status.get("timestamp"),
        "recipient_id": status.get("recipient_id"),
        "error": error,
    }


def extract_events(payload: dict) -> tuple[list[dict], list[dict]]:
    """Split a webhook body into (message payloads, status payloads)."""
    messages: list[dict] = []
    statuses: list[dict] = []

    for entry in payload.get("entry") or []:
        for change in entry.get("changes") or []:
            value = change.get("value") or {}
            profiles = {
                c.get("wa_id"): (c.get("profile") or {}).get("name")
                for c in value.get("contacts") or []
            }
            for msg in value.get("messages") or []:
                if "id" not in msg or "from" not in msg:
                    logger.warning("Skipping webhook message without id/from: %s", msg)
                    continue
                messages.append(normalize_message(msg, profiles.get(msg["from"])))
            for status in value.get("statuses") or []:
                if "id" not in status:
                    continue
                if status.get("status") not in PROVIDER_STATUSES:
                    logger.debug("Skipping unsupported status %s", status.get("status"))
                    continue
                statuses.append(normalize_status(status))

    return messages, statuses


def enqueue_webhook(db: Session, payload: dict) -> int:
    """Write one job per message and per status. Commits. Returns jobs enqueued."""
    messages, statuses = extract_events(payload)
    for message in messages:
        enqueue(db, "ingest_message", message)
    for status in statuses:
        enqueue(db, "message_status", status)
    db.commit()

    count = len(messages) + len(statuses)
    if count:
        logger.info(
            "Webhook accepted: %d message(s), %d status update(s)",
            len(messages),
            len(statuses),
        )
    return count
