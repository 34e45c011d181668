"""Agent inbox — notifications raised by assignment and transfer events.

Listeners call ``notify_agent``; agents read their inbox through the
notifications API and clear it per notification or per conversation.
"""

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from conversa.core.exceptions import NotFoundError
from conversa.models.contact import Contact
from conversa.models.conversation import Conversation
from conversa.models.notification import Notification

logger = logging.getLogger(__name__)

# kind -> (type, title, message template)
TEMPLATES: dict[str, tuple[str, str, str]] = {
    "conversation_assigned": (
        "info",
        "Conversation assigned",
        "A conversation with {contact} has been assigned to you.",
    ),
    "transfer_requested": (
        "warning",
        "Transfer requested",
        "{from_agent} asked you to take over the conversation with {contact}.",
    ),
    "transfer_rejected": (
        "error",
        "Transfer rejected",
        "{to_agent} declined the conversation with {contact}.",
    ),
}


def _contact_label(db: Session, conversation: Conversation) -> str:
    contact = db.get(Contact, conversation.contact_id)
    return contact.name or contact.phone


def notify_agent(
    db: Session,
    agent_id: uuid.UUID,
    kind: str,
    conversation: Conversation,
    **context: str,
) -> Notification:
    """Add an inbox entry for ``agent_id`` about ``conversation`` (no commit).

    An unread entry of the same kind for the same conversation is reused,
    so a redelivered event does not notify twice.
    """
    existing = db.execute(
        select(Notification).where(
            Notification.user_id == agent_id,
            Notification.conversation_id == conversation.id,
            Notification.kind == kind,
            Notification.is_read.is_(False),
        )
    ).scalar_one_or_none()
    if existing is not None:
        return existing

    type_, title, template = TEMPLATES[kind]
    notification = Notification(
        user_id=agent_id,
        conversation_id=conversation.id,
        kind=kind,
        type=type_,
        title=title,
        message=template.format(contact=_contact_label(db, conversation), **context),
    )
    db.add(notification)
    db.flush()
    logger.info("Agent %s notified: %s on conversation %s", agent_id, kind, conversation.id)
    return notification


def list_notifications(
    db: Session,
    agent_id: uuid.UUID,
    *,
    unread_only: bool = False,
    conversation_id: uuid.UUID | None = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[Notification], int, int]:
    """An agent's inbox, newest first.

    Returns (notifications, total_count, unread_count).
    """
    filters = [Notification.user_id == agent_id]
    if unread_only:
        filters.append(Notification.is_read.is_(False))
    if conversation_id is not None:
        filters.append(Notification.conversation_id == conversation_id)

    total = db.execute(select(func.count()).select_from(Notification).where(*filters)).scalar_one()
    unread = db.execute(
        select(func.count())
        .select_from(Notification)
        .where(Notification.user_id == agent_id, Notification.is_read.is_(False))
    ).scalar_one()
    notifications = (
        db.execute(
            select(Notification)
            .where(*filters)
            .order_by(Notification.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        .scalars()
        .all()
    )
    return list(notifications), total, unread


def mark_as_read(db: Session, notification_id: uuid.UUID, agent_id: uuid.UUID) -> Notification:
    notification = db.execute(
        select(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == agent_id,
        )
    ).scalar_one_or_none()
    if notification is None:
        raise NotFoundError("Notification", notification_id)
    if not notification.is_read:
        notification.is_read = True
        notification.read_at = datetime.now(timezone.utc)
        db.commit()
        db.refresh(notification)
    return notification


def mark_all_as_read(db: Session, agent_id: uuid.UUID, *, conversation_id: uuid.UUID | None = None) -> int:
    """Clear the agent's unread entries, or only those about one conversation.

    Returns the number of notifications updated.
    """
    query = update(Notification).where(
        Notification.user_id == agent_id,
        Notification.is_read.is_(False),
    )
    if conversation_id is not None:
        query = query.where(Notification.conversation_id == conversation_id)
    result = db.execute(query.values(is_read=True, read_at=datetime.now(timezone.utc)))
    db.commit()
    return result.rowcount
