"""Event listeners.

Each runs as its own ``event`` job (see ``conversa.services.events``), so
a failing listener is retried and eventually dead-lettered without
affecting the transition that emitted the event or the other listeners.
Listeners must tolerate running more than once.
"""

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from conversa.models.contact import Contact
from conversa.models.conversation import Conversation
from conversa.models.conversation_transfer import ConversationTransfer
from conversa.models.message import Message
from conversa.services import conversations
from conversa.services.bot import get_welcome_rule, render_reply
from conversa.services.messages import queue_outbound
from conversa.models.user import User
from conversa.services.notifications import notify_agent

logger = logging.getLogger(__name__)


def _conversation(db: Session, payload: dict) -> Conversation | None:
    conversation = db.get(Conversation, uuid.UUID(payload["conversation_id"]))
    if conversation is None:
        logger.warning("Event %s refers to unknown conversation %s", payload.get("event"), payload["conversation_id"])
    return conversation


def send_welcome_message(db: Session, payload: dict) -> None:
    """Send the ``welcome`` auto-response when a human conversation opens."""
    conversation = _conversation(db, payload)
    if conversation is None or not conversation.is_active or conversation.is_bot_handled:
        return

    already_answered = db.execute(
        select(Message.id)
        .where(Message.conversation_id == conversation.id, Message.direction == "outbound")
        .limit(1)
    ).first()
    if already_answered is not None:
        return

    rule = get_welcome_rule(db, conversation.channel_id)
    if rule is None:
        return

    contact = db.get(Contact, conversation.contact_id)
    text = render_reply(rule.response_template, {"name": contact.name or "", "phone": contact.phone})
    queue_outbound(db, conversation, text, type="text")
    db.commit()
    logger.info("Welcome message queued for conversation %s", conversation.id)


def notify_agent_assignment(db: Session, payload: dict) -> None:
    """Tell the agent a conversation is now theirs (direct assignment or accepted transfer)."""
    conversation = _conversation(db, payload)
    agent_id = payload.get("agent_id")
    if conversation is None or not agent_id:
        return
    # Stale event: conversation was reassigned or closed since
    if conversation.status != "assigned" or str(conversation.assigned_agent_id) != agent_id:
        return
    notify_agent(db, uuid.UUID(agent_id), "conversation_assigned", conversation)
    db.commit()


def _pending_transfer(db: Session, payload: dict) -> ConversationTransfer | None:
    transfer = db.get(ConversationTransfer, uuid.UUID(payload["transfer_id"]))
    if transfer is None or transfer.status != "pending":
        return None
    return transfer


def _agent_name(db: Session, agent_id: uuid.UUID | None) -> str:
    agent = db.get(User, agent_id) if agent_id else None
    return agent.name if agent is not None else "A supervisor"


def notify_transfer_request(db: Session, payload: dict) -> None:
    transfer = _pending_transfer(db, payload)
    if transfer is None:
        return
    notify_agent(
        db,
        transfer.to_user_id,
        "transfer_requested",
        transfer.conversation,
        from_agent=_agent_name(db, transfer.from_user_id),
    )
    db.commit()


def notify_transfer_rejected(db: Session, payload: dict) -> None:
    transfer = db.get(ConversationTransfer, uuid.UUID(payload["transfer_id"]))
    if transfer is None or transfer.from_user_id is None:
        return
    notify_agent(
        db,
        transfer.from_user_id,
        "transfer_rejected",
        transfer.conversation,
        to_agent=_agent_name(db, transfer.to_user_id),
    )
    db.commit()


def refresh_queue_positions(db: Session, payload: dict) -> None:
    conversations.refresh_queue_positions(db)


def log_conversation_event(db: Session, payload: dict) -> None:
    details = {k: v for k, v in payload.items() if k not in ("event", "conversation_id")}
    logger.info(
        "Conversation event %s: conversation=%s %s",
        payload.get("event"),
        payload.get("conversation_id"),
        details,
    )


LISTENERS = {
    "send_welcome_message": send_welcome_message,
    "notify_agent_assignment": notify_agent_assignment,
    "notify_transfer_request": notify_transfer_request,
    "notify_transfer_rejected": notify_transfer_rejected,
    "refresh_queue_positions": refresh_queue_positions,
    "log_conversation_event": log_conversation_event,
}
