"""Conversation service — state machine, agent queue and lifecycle.

Transitions:
    open -> assigned | closed | archived
    assigned -> closed | archived, or to another agent via an accepted
        transfer (see conversa.services.transfers)
    closed -> open (reopen)
    archived is terminal

Every transition writes an audit entry and emits its event in the same
transaction. A rejected transition raises ConflictError carrying the
conversation's current status and leaves persisted state untouched.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from conversa.core.exceptions import ConflictError, NotFoundError, ServiceError, ValidationError
from conversa.models.channel import Channel
from conversa.models.contact import Contact
from conversa.models.conversation import (
    ACTIVE_STATUSES,
    PRIORITIES,
    PRIORITY_WEIGHTS,
    Conversation,
)
from conversa.models.conversation_transfer import ConversationTransfer
from conversa.models.user import User
from conversa.services.audit import record_audit
from conversa.services.bot import complete_sessions
from conversa.services.events import EventType, emit

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

VALID_TRANSITIONS: dict[str, set[str]] = {
    "open": {"assigned", "closed", "archived"},
    "assigned": {"closed", "archived"},
    "closed": {"open"},
    "archived": set(),
}


def _assert_transition(conversation: Conversation, target: str) -> None:
    allowed = VALID_TRANSITIONS.get(conversation.status, set())
    if target not in allowed:
        raise ConflictError(
            f"Cannot transition conversation {conversation.id} from '{conversation.status}' to '{target}'",
            current_status=conversation.status,
        )


@dataclass
class BulkResult:
    """Per-item outcome of a bulk transition."""

    succeeded: list[uuid.UUID] = field(default_factory=list)
    failed: list[dict] = field(default_factory=list)


def _load(db: Session, conversation_id: uuid.UUID, *, lock: bool = False) -> Conversation:
    query = select(Conversation).where(
        Conversation.id == conversation_id,
        Conversation.deleted_at.is_(None),
    )
    if lock:
        query = query.with_for_update()
    conversation = db.execute(query).scalar_one_or_none()
    if conversation is None:
        raise NotFoundError("Conversation", conversation_id)
    return conversation


def get_active_conversation(
    db: Session, contact_id: uuid.UUID, channel_id: uuid.UUID
) -> Conversation | None:
    """Return the open/assigned conversation for a (contact, channel) pair, if any."""
    return db.execute(
        select(Conversation).where(
            Conversation.contact_id == contact_id,
            Conversation.channel_id == channel_id,
            Conversation.status.in_(ACTIVE_STATUSES),
        )
    ).scalar_one_or_none()


def _audit_transition(
    db: Session,
    conversation: Conversation,
    action: str,
    *,
    actor_id: uuid.UUID | None = None,
    reason: str | None = None,
    details: dict | None = None,
) -> None:
    record_audit(
        db,
        entity_type="conversation",
        entity_id=conversation.id,
        action=action,
        actor_id=actor_id,
        reason=reason,
        details=details,
    )


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


def _validate_new(db: Session, contact_id: uuid.UUID, channel_id: uuid.UUID, priority: str) -> None:
    contact = db.get(Contact, contact_id)
    if contact is None or contact.deleted_at is not None:
        raise NotFoundError("Contact", contact_id)
    channel = db.get(Channel, channel_id)
    if channel is None:
        raise NotFoundError("Channel", channel_id)
    if not channel.is_active:
        raise ValidationError(f"Channel '{channel.name}' is inactive")
    if contact.is_blocked:
        raise ValidationError(f"Contact {contact_id} is blocked")
    if priority not in PRIORITIES:
        raise ValidationError(f"Invalid priority '{priority}'")


def create_conversation(
    db: Session,
    *,
    contact_id: uuid.UUID,
    channel_id: uuid.UUID,
    category_id: uuid.UUID | None = None,
    subject: str | None = None,
    priority: str = "medium",
    is_bot_handled: bool = False,
    created_by_id: uuid.UUID | None = None,
) -> Conversation:
    """Open a new conversation.

    Raises:
        NotFoundError: Contact or channel does not exist.
        ValidationError: Blocked contact, inactive channel or bad priority.
        ConflictError: The pair already has an active conversation.
    """
    _validate_new(db, contact_id, channel_id, priority)

    existing = get_active_conversation(db, contact_id, channel_id)
    if existing is not None:
        raise ConflictError(
            f"Contact {contact_id} already has an active conversation {existing.id} on this channel",
            current_status=existing.status,
        )

    conversation = Conversation(
        contact_id=contact_id,
        channel_id=channel_id,
        category_id=category_id,
        subject=subject,
        priority=priority,
        status="open",
        is_bot_handled=is_bot_handled,
    )
    db.add(conversation)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        existing = get_active_conversation(db, contact_id, channel_id)
        raise ConflictError(
            f"Contact {contact_id} already has an active conversation on this channel",
            current_status=existing.status if existing else None,
        ) from None

    _audit_transition(db, conversation, "created", actor_id=created_by_id)
    emit(db, EventType.CONVERSATION_CREATED, conversation.id, is_bot_handled=is_bot_handled)
    db.commit()
    db.refresh(conversation)
    logger.info("Conversation %s created for contact %s", conversation.id, contact_id)
    return conversation


def find_or_create_active_conversation(
    db: Session,
    *,
    contact: Contact,
    channel: Channel,
    category_id: uuid.UUID | None = None,
    is_bot_handled: bool = False,
    subject: str | None = None,
) -> tuple[Conversation, bool]:
    """Return the pair's active conversation, creating it when absent.

    Returns (conversation, created). Does not commit: the caller commits
    the new conversation together with the message that triggered it.
    Concurrent creators race on the partial unique index; the loser rolls
    back and re-reads the winner's row.
    """
    existing = get_active_conversation(db, contact.id, channel.id)
    if existing is not None:
        return existing, False

    contact_id, channel_id = contact.id, channel.id
    conversation = Conversation(
        contact_id=contact_id,
        channel_id=channel_id,
        category_id=category_id,
        subject=subject,
        status="open",
        priority="medium",
        is_bot_handled=is_bot_handled,
    )
    db.add(conversation)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        existing = get_active_conversation(db, contact_id, channel_id)
        if existing is None:
            raise
        logger.info(
            "Active conversation for contact %s created concurrently, using %s",
            contact_id,
            existing.id,
        )
        return existing, False

    _audit_transition(db, conversation, "created", details={"source": "inbound"})
    emit(db, EventType.CONVERSATION_CREATED, conversation.id, is_bot_handled=is_bot_handled)
    return conversation, True


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def assign_conversation(
    db: Session,
    conversation_id: uuid.UUID,
    agent_id: uuid.UUID,
    *,
    assigned_by_id: uuid.UUID | None = None,
) -> Conversation:
    """Assign an open conversation to an active agent."""
    conversation = _load(db, conversation_id, lock=True)
    agent = db.get(User, agent_id)
    if agent is None or not agent.is_active:
        raise NotFoundError("Agent", agent_id)
    _assert_transition(conversation, "assigned")

    conversation.status = "assigned"
    conversation.assigned_agent_id = agent.id
    conversation.assigned_at = datetime.now(timezone.utc)
    conversation.is_bot_handled = False
    conversation.queue_position = None
    complete_sessions(
        db, conversation_id=conversation.id, reason="assigned_to_agent", requires_human=True
    )

    _audit_transition(
        db,
        conversation,
        "assigned",
        actor_id=assigned_by_id,
        details={"agent_id": str(agent.id)},
    )
    emit(
        db,
        EventType.CONVERSATION_ASSIGNED,
        conversation.id,
        agent_id=agent.id,
        assigned_by=assigned_by_id,
    )
    db.commit()
    db.refresh(conversation)
    logger.info("Conversation %s assigned to agent %s", conversation.id, agent.id)
    return conversation


def apply_close(
    db: Session,
    conversation: Conversation,
    *,
    closed_by_id: uuid.UUID | None = None,
    reason: str | None = None,
) -> None:
    """Close a loaded active conversation in the caller's transaction (no commit)."""
    _assert_transition(conversation, "closed")
    previous_status = conversation.status

    conversation.status = "closed"
    conversation.closed_by_id = closed_by_id
    conversation.closed_at = datetime.now(timezone.utc)
    conversation.queue_position = None
    conversation.is_bot_handled = False
    complete_sessions(db, conversation_id=conversation.id, reason=reason or "conversation_closed")
    cancel_pending_transfers(db, conversation.id)

    _audit_transition(
        db,
        conversation,
        "closed",
        actor_id=closed_by_id,
        reason=reason,
        details={"previous_status": previous_status},
    )
    emit(
        db,
        EventType.CONVERSATION_CLOSED,
        conversation.id,
        closed_by=closed_by_id,
        previous_status=previous_status,
    )


def close_conversation(
    db: Session,
    conversation_id: uuid.UUID,
    *,
    closed_by_id: uuid.UUID | None = None,
    reason: str | None = None,
) -> Conversation:
    conversation = _load(db, conversation_id, lock=True)
    apply_close(db, conversation, closed_by_id=closed_by_id, reason=reason)
    db.commit()
    db.refresh(conversation)
    logger.info("Conversation %s closed by %s", conversation.id, closed_by_id)
    return conversation


def reopen_conversation(
    db: Session,
    conversation_id: uuid.UUID,
    reason: str,
    *,
    reopened_by_id: uuid.UUID | None = None,
) -> Conversation:
    """Reopen a closed conversation.

    The assignment and close markers are cleared and the conversation goes
    back to the queue. Fails when the contact already has another active
    conversation on the same channel.
    """
    if not reason or not reason.strip():
        raise ValidationError("A reason is required to reopen a conversation")

    conversation = _load(db, conversation_id, lock=True)
    _assert_transition(conversation, "open")

    twin = get_active_conversation(db, conversation.contact_id, conversation.channel_id)
    if twin is not None:
        raise ConflictError(
            f"Contact already has an active conversation {twin.id} on this channel",
            current_status=conversation.status,
        )

    conversation.status = "open"
    conversation.assigned_agent_id = None
    conversation.assigned_at = None
    conversation.closed_by_id = None
    conversation.closed_at = None
    conversation.is_bot_handled = False
    conversation.reopened_at = datetime.now(timezone.utc)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise ConflictError(
            "Contact already has an active conversation on this channel",
            current_status="closed",
        ) from None

    _audit_transition(db, conversation, "reopened", actor_id=reopened_by_id, reason=reason.strip())
    emit(
        db,
        EventType.CONVERSATION_REOPENED,
        conversation.id,
        reason=reason.strip(),
        reopened_by=reopened_by_id,
    )
    db.commit()
    db.refresh(conversation)
    logger.info("Conversation %s reopened: %s", conversation.id, reason)
    return conversation


def archive_conversation(
    db: Session,
    conversation_id: uuid.UUID,
    *,
    reason: str = "inactive",
) -> Conversation:
    """Archive an active conversation (terminal). Used by the scheduler."""
    conversation = _load(db, conversation_id, lock=True)
    _assert_transition(conversation, "archived")
    previous_status = conversation.status

    conversation.status = "archived"
    conversation.queue_position = None
    conversation.is_bot_handled = False
    complete_sessions(db, conversation_id=conversation.id, reason="conversation_archived")
    cancel_pending_transfers(db, conversation.id)
    _audit_transition(
        db,
        conversation,
        "archived",
        reason=reason,
        details={"previous_status": previous_status},
    )
    emit(
        db,
        EventType.CONVERSATION_ARCHIVED,
        conversation.id,
        reason=reason,
        previous_status=previous_status,
    )
    db.commit()
    db.refresh(conversation)
    logger.info("Conversation %s archived (%s)", conversation.id, reason)
    return conversation


def cancel_pending_transfers(db: Session, conversation_id: uuid.UUID) -> int:
    """Cancel the conversation's pending transfer, if any (no commit)."""
    result = db.execute(
        update(ConversationTransfer)
        .where(
            ConversationTransfer.conversation_id == conversation_id,
            ConversationTransfer.status == "pending",
        )
        .values(status="cancelled", responded_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount


def hand_off_to_human(db: Session, conversation: Conversation, reason: str) -> None:
    """Move a bot-handled conversation into the agent queue (no commit)."""
    conversation.is_bot_handled = False
    _audit_transition(db, conversation, "handed_off", reason=reason)
    emit(db, EventType.CONVERSATION_HANDED_OFF, conversation.id, reason=reason)


def set_priority(
    db: Session,
    conversation_id: uuid.UUID,
    priority: str,
    *,
    changed_by_id: uuid.UUID | None = None,
) -> Conversation:
    if priority not in PRIORITIES:
        raise ValidationError(f"Invalid priority '{priority}'")
    conversation = _load(db, conversation_id, lock=True)
    if not conversation.is_active:
        raise ConflictError(
            f"Cannot change priority of a {conversation.status} conversation",
            current_status=conversation.status,
        )
    previous = conversation.priority
    if previous == priority:
        return conversation

    conversation.priority = priority
    _audit_transition(
        db,
        conversation,
        "priority_changed",
        actor_id=changed_by_id,
        details={"from": previous, "to": priority},
    )
    db.commit()
    db.refresh(conversation)
    return conversation


# ---------------------------------------------------------------------------
# Bulk operations
# ---------------------------------------------------------------------------


def _bulk(db: Session, conversation_ids: list[uuid.UUID], operation) -> BulkResult:
    result = BulkResult()
    for conversation_id in conversation_ids:
        try:
            operation(conversation_id)
        except ServiceError as exc:
            db.rollback()
            result.failed.append(
                {
                    "id": conversation_id,
                    "error": type(exc).__name__,
                    "detail": str(exc),
                    "current_status": getattr(exc, "current_status", None),
                }
            )
        else:
            result.succeeded.append(conversation_id)
    return result


def bulk_assign(
    db: Session,
    conversation_ids: list[uuid.UUID],
    agent_id: uuid.UUID,
    *,
    assigned_by_id: uuid.UUID | None = None,
) -> BulkResult:
    """Assign each conversation independently; one failure does not stop the rest."""
    return _bulk(
        db,
        conversation_ids,
        lambda cid: assign_conversation(db, cid, agent_id, assigned_by_id=assigned_by_id),
    )


def bulk_close(
    db: Session,
    conversation_ids: list[uuid.UUID],
    *,
    closed_by_id: uuid.UUID | None = None,
    reason: str | None = None,
) -> BulkResult:
    """Close each conversation independently; one failure does not stop the rest."""
    return _bulk(
        db,
        conversation_ids,
        lambda cid: close_conversation(db, cid, closed_by_id=closed_by_id, reason=reason),
    )


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def get_conversation(db: Session, conversation_id: uuid.UUID, *, lock: bool = False) -> Conversation:
    return _load(db, conversation_id, lock=lock)


def list_conversations(
    db: Session,
    *,
    status: str | None = None,
    agent_id: uuid.UUID | None = None,
    contact_id: uuid.UUID | None = None,
    channel_id: uuid.UUID | None = None,
    priority: str | None = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[Conversation], int]:
    """List conversations, most recent activity first.

    Returns (conversations, total_count).
    """
    filters = [Conversation.deleted_at.is_(None)]
    if status is not None:
        filters.append(Conversation.status == status)
    if agent_id is not None:
        filters.append(Conversation.assigned_agent_id == agent_id)
    if contact_id is not None:
        filters.append(Conversation.contact_id == contact_id)
    if channel_id is not None:
        filters.append(Conversation.channel_id == channel_id)
    if priority is not None:
        filters.append(Conversation.priority == priority)

    total = db.execute(select(func.count()).select_from(Conversation).where(*filters)).scalar_one()
    conversations = (
        db.execute(
            select(Conversation)
            .where(*filters)
            .order_by(
                func.coalesce(Conversation.last_message_at, Conversation.created_at).desc()
            )
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        .scalars()
        .all()
    )
    return list(conversations), total


_PRIORITY_WEIGHT = case(PRIORITY_WEIGHTS, value=Conversation.priority, else_=0)


def _queue_query():
    return (
        select(Conversation)
        .where(
            Conversation.status == "open",
            Conversation.assigned_agent_id.is_(None),
            Conversation.is_bot_handled.is_(False),
            Conversation.deleted_at.is_(None),
        )
        .order_by(_PRIORITY_WEIGHT.desc(), Conversation.created_at.asc(), Conversation.id.asc())
    )


def next_in_queue(db: Session, limit: int = 1) -> list[Conversation]:
    """Open, unassigned conversations waiting for an agent.

    Highest priority first; within a priority, oldest first.
    """
    return list(db.execute(_queue_query().limit(limit)).scalars().all())


def refresh_queue_positions(db: Session) -> int:
    """Renumber ``queue_position`` for the waiting queue. Returns queue length."""
    queued = db.execute(_queue_query()).scalars().all()
    queued_ids = set()
    for position, conversation in enumerate(queued, start=1):
        queued_ids.add(conversation.id)
        if conversation.queue_position != position:
            conversation.queue_position = position

    stale = db.execute(
        select(Conversation).where(Conversation.queue_position.is_not(None))
    ).scalars().all()
    for conversation in stale:
        if conversation.id not in queued_ids:
            conversation.queue_position = None

    db.commit()
    return len(queued)


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


def _start_of_day() -> datetime:
    return datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


def dashboard_statistics(db: Session) -> dict[str, int]:
    """Conversation counts per status plus today's intake and the queue length."""
    counts = dict(
        db.execute(
            select(Conversation.status, func.count())
            .where(Conversation.deleted_at.is_(None))
            .group_by(Conversation.status)
        ).all()
    )
    stats = {status: counts.get(status, 0) for status in VALID_TRANSITIONS}
    stats["total"] = sum(counts.values())
    stats["today"] = db.execute(
        select(func.count())
        .select_from(Conversation)
        .where(Conversation.deleted_at.is_(None), Conversation.created_at >= _start_of_day())
    ).scalar_one()
    stats["queued"] = db.execute(
        select(func.count()).select_from(_queue_query().order_by(None).subquery())
    ).scalar_one()
    stats["bot_handled"] = db.execute(
        select(func.count())
        .select_from(Conversation)
        .where(Conversation.status.in_(ACTIVE_STATUSES), Conversation.is_bot_handled.is_(True))
    ).scalar_one()
    return stats


def agent_statistics(db: Session, agent_id: uuid.UUID) -> dict[str, int]:
    """One agent's workload: open assignments, closures today and pending incoming transfers."""
    agent = db.get(User, agent_id)
    if agent is None:
        raise NotFoundError("Agent", agent_id)

    def count(*filters) -> int:
        return db.execute(select(func.count()).select_from(Conversation).where(*filters)).scalar_one()

    return {
        "assigned": count(Conversation.assigned_agent_id == agent_id, Conversation.status == "assigned"),
        "closed_today": count(
            Conversation.closed_by_id == agent_id,
            Conversation.status == "closed",
            Conversation.closed_at >= _start_of_day(),
        ),
        "total_handled": count(Conversation.assigned_agent_id == agent_id),
        "pending_transfers": db.execute(
            select(func.count())
            .select_from(ConversationTransfer)
            .where(ConversationTransfer.to_user_id == agent_id, ConversationTransfer.status == "pending")
        ).scalar_one(),
    }
