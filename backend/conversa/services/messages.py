"""Message service — outbound sends and delivery-status tracking."""

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from conversa.core.exceptions import ConflictError, ValidationError
from conversa.models.contact import Contact
from conversa.models.conversation import Conversation
from conversa.models.message import MESSAGE_TYPES, Message
from conversa.services.channels import get_channel_engine
from conversa.services.conversations import get_conversation
from conversa.services.jobs import enqueue
from conversa.services.whatsapp import ProviderResult

logger = logging.getLogger(__name__)

# Delivery progression; a status update never moves a message backwards
STATUS_RANK: dict[str, int] = {"pending": 0, "sent": 1, "delivered": 2, "read": 3}

PROVIDER_STATUSES = ("sent", "delivered", "read", "failed")

# Types the channel engines can deliver; media upload is not wired to any provider
OUTBOUND_TYPES = ("text", "template")


def _parse_timestamp(value) -> datetime:
    if value in (None, ""):
        return datetime.now(timezone.utc)
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError):
        return datetime.fromisoformat(str(value))


# ---------------------------------------------------------------------------
# Outbound
# ---------------------------------------------------------------------------


def queue_outbound(
    db: Session,
    conversation: Conversation,
    content: str,
    *,
    type: str = "text",
    media: dict | None = None,
    sender_id: uuid.UUID | None = None,
) -> Message:
    """Persist a pending outbound message and its send job (no commit)."""
    message = Message(
        id=uuid.uuid4(),
        conversation_id=conversation.id,
        direction="outbound",
        type=type,
        content=content,
        media=media,
        status="pending",
        sender_id=sender_id,
        created_at=datetime.now(timezone.utc),
    )
    db.add(message)
    conversation.last_message_at = datetime.now(timezone.utc)
    enqueue(
        db,
        "send_message",
        {"message_id": str(message.id), "conversation_id": str(conversation.id)},
    )
    return message


def send_message(
    db: Session,
    conversation_id: uuid.UUID,
    content: str,
    *,
    type: str = "text",
    media: dict | None = None,
    sender_id: uuid.UUID | None = None,
) -> Message:
    """Record an outbound message and queue it for delivery.

    The message is returned as ``pending``; the worker pool delivers it
    and records ``sent`` or ``failed``.

    Raises:
        NotFoundError: Conversation does not exist.
        ConflictError: Conversation is closed or archived.
        ValidationError: Empty content, or a type the channel cannot send.
    """
    if not content or not content.strip():
        raise ValidationError("Message content is required")
    if type not in MESSAGE_TYPES:
        raise ValidationError(f"Invalid message type '{type}'")
    if type not in OUTBOUND_TYPES:
        raise ValidationError(f"Outbound '{type}' messages are not supported")

    conversation = get_conversation(db, conversation_id)
    if not conversation.is_active:
        raise ConflictError(
            f"Cannot send to a {conversation.status} conversation",
            current_status=conversation.status,
        )

    message = queue_outbound(db, conversation, content, type=type, media=media, sender_id=sender_id)
    db.commit()
    db.refresh(message)
    logger.info("Outbound message %s queued on conversation %s", message.id, conversation.id)
    return message


def deliver_message(db: Session, message_id: uuid.UUID) -> Message | None:
    """Send a pending outbound message through its channel engine.

    Marks the message ``sent`` (with the provider id) or ``failed`` (with
    the error). Never raises for delivery problems; already-processed
    messages are left untouched.
    """
    message = db.get(Message, message_id)
    if message is None:
        logger.warning("Delivery requested for unknown message %s", message_id)
        return None
    if message.direction != "outbound" or message.status != "pending":
        logger.info("Message %s already processed (status=%s), skipping", message.id, message.status)
        return message

    conversation = message.conversation
    contact = db.get(Contact, conversation.contact_id)
    try:
        engine = get_channel_engine(conversation.channel.type)
        result = engine.send(message, contact)
    except Exception as exc:
        logger.exception("Unexpected error delivering message %s", message.id)
        result = ProviderResult(success=False, error=str(exc))

    if result.success:
        message.status = "sent"
        message.provider_message_id = result.message_id
        message.error_message = None
        logger.info("Message %s sent (provider id %s)", message.id, result.message_id)
    else:
        message.status = "failed"
        message.error_message = result.error or "Unknown delivery error"
        logger.warning("Message %s failed: %s", message.id, message.error_message)
    db.commit()
    db.refresh(message)
    return message


def process_send_job(db: Session, payload: dict) -> None:
    deliver_message(db, uuid.UUID(payload["message_id"]))


# ---------------------------------------------------------------------------
# Delivery status
# ---------------------------------------------------------------------------


def update_delivery_status(
    db: Session,
    provider_message_id: str,
    status: str,
    timestamp=None,
    error: str | None = None,
) -> Message | None:
    """Apply a provider status update by provider message id.

    Status only advances (sent < delivered < read). ``failed`` is recorded
    with its error unless the message was already delivered.
    Returns the message, or None if no message has that provider id.
    """
    if status not in PROVIDER_STATUSES:
        raise ValidationError(f"Unknown delivery status '{status}'")

    message = db.execute(
        select(Message).where(Message.provider_message_id == provider_message_id)
    ).scalar_one_or_none()
    if message is None:
        logger.warning("Status update for unknown provider message id: %s", provider_message_id)
        return None

    at = _parse_timestamp(timestamp)
    current_rank = STATUS_RANK.get(message.status, -1)

    if status == "failed":
        if current_rank >= STATUS_RANK["delivered"]:
            logger.info("Ignoring failure for already delivered message %s", message.id)
            return message
        message.status = "failed"
        message.error_message = error or "Delivery failed"
    else:
        if STATUS_RANK[status] <= current_rank:
            logger.debug(
                "Ignoring stale status %s for message %s (current %s)",
                status,
                message.id,
                message.status,
            )
            return message
        message.status = status
        if STATUS_RANK[status] >= STATUS_RANK["delivered"]:
            message.is_delivered = True
            message.delivered_at = message.delivered_at or at
        if status == "read":
            message.is_read = True
            message.read_at = at

    db.commit()
    db.refresh(message)
    logger.info("Message status updated: provider_id=%s status=%s", provider_message_id, message.status)
    return message


def process_status_job(db: Session, payload: dict) -> None:
    if payload.get("status") not in PROVIDER_STATUSES:
        logger.info("Ignoring unsupported provider status %r", payload.get("status"))
        return
    update_delivery_status(
        db,
        payload["id"],
        payload["status"],
        timestamp=payload.get("timestamp"),
        error=payload.get("error"),
    )


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def list_messages(
    db: Session,
    conversation_id: uuid.UUID,
    *,
    page: int = 1,
    page_size: int = 50,
) -> tuple[list[Message], int]:
    """List a conversation's messages, oldest first.

    Returns (messages, total_count).
    """
    get_conversation(db, conversation_id)
    filters = (Message.conversation_id == conversation_id, Message.deleted_at.is_(None))
    total = db.execute(select(func.count()).select_from(Message).where(*filters)).scalar_one()
    messages = (
        db.execute(
            select(Message)
            .where(*filters)
            .order_by(Message.created_at.asc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        .scalars()
        .all()
    )
    return list(messages), total
