"""Message ingestion pipeline.

For every normalised inbound message:

1. Drop provider redeliveries (same ``provider_message_id``).
2. Resolve the sender to a contact.
3. Classify through the channel engine (REJECT / BOT / HUMAN).
4. Rejected: audit only, no conversation and no message.
5. Otherwise find-or-create the active conversation and, in one
   transaction, store the message, run the bot flow and write the
   follow-up jobs (events, bot reply).
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from conversa.core.exceptions import NotFoundError, ValidationError
from conversa.models.channel import Channel
from conversa.models.contact import Contact
from conversa.models.conversation import Conversation
from conversa.models.message import MESSAGE_TYPES, Message
from conversa.services.audit import record_audit
from conversa.services.bot import BotFlow, BotReply, Route
from conversa.services.channels import ChannelEngine, get_channel_engine
from conversa.services.contacts import resolve_contact
from conversa.services.conversations import (
    find_or_create_active_conversation,
    get_active_conversation,
    hand_off_to_human,
)
from conversa.services.events import EventType, emit
from conversa.services.messages import queue_outbound

logger = logging.getLogger(__name__)


@dataclass
class InboundMessage:
    """Channel-independent inbound message, as queued by the webhook boundary."""

    provider_message_id: str
    from_address: str
    type: str = "text"
    content: str = ""
    profile_name: str | None = None
    media: dict | None = None
    timestamp: datetime | None = None
    channel: str = "whatsapp"

    @classmethod
    def from_payload(cls, payload: dict) -> "InboundMessage":
        timestamp = payload.get("timestamp")
        if timestamp not in (None, ""):
            timestamp = (
                datetime.fromtimestamp(int(timestamp), tz=timezone.utc)
                if str(timestamp).isdigit()
                else datetime.fromisoformat(str(timestamp))
            )
        else:
            timestamp = None
        return cls(
            provider_message_id=payload["provider_message_id"],
            from_address=payload["from"],
            type=payload.get("type") or "text",
            content=payload.get("content") or "",
            profile_name=payload.get("profile_name"),
            media=payload.get("media"),
            timestamp=timestamp,
            channel=payload.get("channel") or "whatsapp",
        )

    def to_payload(self) -> dict:
        return {
            "provider_message_id": self.provider_message_id,
            "from": self.from_address,
            "type": self.type,
            "content": self.content,
            "profile_name": self.profile_name,
            "media": self.media,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "channel": self.channel,
        }


@dataclass
class IngestResult:
    message: Message | None = None
    conversation: Conversation | None = None
    contact: Contact | None = None
    route: Route | None = None
    duplicate: bool = False
    rejected: bool = False
    created_conversation: bool = False


def _utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _advance_last_message_at(conversation: Conversation, received_at: datetime) -> None:
    # Webhooks can arrive out of order; an older message never moves activity back
    received_at = _utc(received_at)
    current = conversation.last_message_at
    if current is None or _utc(current) < received_at:
        conversation.last_message_at = received_at


def _find_by_provider_id(db: Session, provider_message_id: str) -> Message | None:
    return db.execute(
        select(Message).where(Message.provider_message_id == provider_message_id)
    ).scalar_one_or_none()


def _duplicate(message: Message) -> IngestResult:
    logger.info("Duplicate inbound message %s ignored", message.provider_message_id)
    return IngestResult(
        message=message,
        conversation=message.conversation,
        contact=message.conversation.contact,
        duplicate=True,
    )


def _get_channel(db: Session, name: str) -> Channel:
    channel = db.execute(select(Channel).where(Channel.name == name)).scalar_one_or_none()
    if channel is None:
        raise NotFoundError("Channel", name)
    if not channel.is_active:
        raise ValidationError(f"Channel '{name}' is inactive")
    return channel


def ingest(
    db: Session,
    inbound: InboundMessage,
    *,
    engine: ChannelEngine | None = None,
    flow: BotFlow | None = None,
) -> IngestResult:
    """Route one inbound message. Idempotent on ``provider_message_id``."""
    existing = _find_by_provider_id(db, inbound.provider_message_id)
    if existing is not None:
        return _duplicate(existing)

    message_type = inbound.type if inbound.type in MESSAGE_TYPES else "text"
    contact = resolve_contact(db, inbound.from_address, inbound.profile_name)
    channel = _get_channel(db, inbound.channel)
    engine = engine or get_channel_engine(channel.type)
    flow = flow or BotFlow()

    active = get_active_conversation(db, contact.id, channel.id)
    classification = engine.classify(
        db,
        inbound.content,
        contact,
        channel_id=channel.id,
        active_conversation=active,
    )

    if classification.route == Route.REJECT:
        record_audit(
            db,
            entity_type="contact",
            entity_id=contact.id,
            action="message_rejected",
            reason=classification.reason,
            details={
                "provider_message_id": inbound.provider_message_id,
                "channel": channel.name,
            },
        )
        db.commit()
        logger.warning(
            "Rejected inbound message %s from contact %s (%s)",
            inbound.provider_message_id,
            contact.id,
            classification.reason,
        )
        return IngestResult(contact=contact, route=Route.REJECT, rejected=True)

    is_bot = classification.route == Route.BOT
    conversation, created = find_or_create_active_conversation(
        db,
        contact=contact,
        channel=channel,
        category_id=classification.category_id,
        is_bot_handled=is_bot,
    )

    message = Message(
        conversation_id=conversation.id,
        direction="inbound",
        type=message_type,
        content=inbound.content,
        media=inbound.media,
        provider_message_id=inbound.provider_message_id,
        status="received",
        created_at=datetime.now(timezone.utc),
    )
    db.add(message)
    try:
        db.flush()
    except IntegrityError:
        # A concurrent delivery of the same message won
        db.rollback()
        existing = _find_by_provider_id(db, inbound.provider_message_id)
        if existing is None:
            raise
        return _duplicate(existing)

    _advance_last_message_at(conversation, inbound.timestamp or datetime.now(timezone.utc))

    reply: BotReply | None = None
    if is_bot:
        if classification.session is None:
            _, reply = flow.start(db, contact, conversation, classification.rule, inbound.content)
            conversation.is_bot_handled = True
        else:
            reply = flow.respond(db, classification.session, contact, inbound.content, channel.id)
            if reply.handoff:
                hand_off_to_human(db, conversation, reply.reason or "max_attempts")
    elif classification.handoff:
        flow.handoff(classification.session, "handoff_keyword")
        reply = BotReply(text=flow.handoff_message, handoff=True, reason="handoff_keyword")
        hand_off_to_human(db, conversation, "handoff_keyword")
    elif conversation.is_bot_handled:
        hand_off_to_human(db, conversation, "bot_session_ended")

    if reply is not None and reply.text:
        queue_outbound(db, conversation, reply.text, type="text")

    emit(
        db,
        EventType.MESSAGE_RECEIVED,
        conversation.id,
        message_id=message.id,
        route=classification.route.value,
    )
    db.commit()
    db.refresh(message)
    db.refresh(conversation)

    logger.info(
        "Inbound message %s stored on conversation %s (route=%s, new_conversation=%s)",
        inbound.provider_message_id,
        conversation.id,
        classification.route.value,
        created,
    )
    return IngestResult(
        message=message,
        conversation=conversation,
        contact=contact,
        route=classification.route,
        created_conversation=created,
    )


def process_ingest_job(db: Session, payload: dict) -> None:
    try:
        inbound = InboundMessage.from_payload(payload)
    except (KeyError, ValueError) as exc:
        logger.warning("Dropping malformed inbound payload: %s", exc)
        return
    try:
        ingest(db, inbound)
    except ValidationError as exc:
        db.rollback()
        logger.warning("Dropping inbound message %s: %s", inbound.provider_message_id, exc)