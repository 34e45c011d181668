"""Agent-to-agent conversation transfers.

An assigned conversation moves to another agent in two steps: the
current agent (or a supervisor) requests the transfer, then the target
agent accepts or rejects it. Until then the conversation stays with the
current agent. Closing or archiving the conversation cancels a pending
transfer (see ``conversations.cancel_pending_transfers``).
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from conversa.core.exceptions import ConflictError, NotFoundError, ValidationError
from conversa.models.conversation import Conversation
from conversa.models.conversation_transfer import TRANSFER_REASONS, ConversationTransfer
from conversa.models.user import User
from conversa.services.audit import record_audit
from conversa.services.conversations import get_conversation
from conversa.services.events import EventType, emit

logger = logging.getLogger(__name__)


def _active_agent(db: Session, agent_id: uuid.UUID) -> User:
    agent = db.get(User, agent_id)
    if agent is None or not agent.is_active or not agent.is_agent:
        raise NotFoundError("Agent", agent_id)
    return agent


def _load_transfer(db: Session, transfer_id: uuid.UUID, *, lock: bool = False) -> ConversationTransfer:
    query = select(ConversationTransfer).where(ConversationTransfer.id == transfer_id)
    if lock:
        query = query.with_for_update()
    transfer = db.execute(query).scalar_one_or_none()
    if transfer is None:
        raise NotFoundError("Transfer", transfer_id)
    return transfer


def _assert_pending(transfer: ConversationTransfer) -> None:
    if transfer.status != "pending":
        raise ConflictError(
            f"Transfer {transfer.id} is already {transfer.status}",
            current_status=transfer.status,
        )


def _audit(db: Session, transfer: ConversationTransfer, action: str, actor_id=None, reason=None) -> None:
    record_audit(
        db,
        entity_type="conversation",
        entity_id=transfer.conversation_id,
        action=action,
        actor_id=actor_id,
        reason=reason,
        details={
            "transfer_id": str(transfer.id),
            "from_agent_id": str(transfer.from_user_id) if transfer.from_user_id else None,
            "to_agent_id": str(transfer.to_user_id),
        },
    )


def request_transfer(
    db: Session,
    conversation_id: uuid.UUID,
    to_agent_id: uuid.UUID,
    *,
    reason: str = "other",
    notes: str | None = None,
    requested_by_id: uuid.UUID | None = None,
) -> ConversationTransfer:
    """Ask ``to_agent_id`` to take over an assigned conversation.

    Raises:
        NotFoundError: Conversation or target agent does not exist.
        ValidationError: Unknown reason, or the target already holds the conversation.
        ConflictError: Conversation is not assigned, or a transfer is already pending.
    """
    if reason not in TRANSFER_REASONS:
        raise ValidationError(f"Invalid transfer reason '{reason}'")

    conversation = get_conversation(db, conversation_id, lock=True)
    target = _active_agent(db, to_agent_id)
    if conversation.status != "assigned":
        raise ConflictError(
            f"Only assigned conversations can be transferred (conversation is {conversation.status})",
            current_status=conversation.status,
        )
    if conversation.assigned_agent_id == target.id:
        raise ValidationError(f"Conversation {conversation.id} is already assigned to agent {target.id}")

    transfer = ConversationTransfer(
        conversation_id=conversation.id,
        from_user_id=conversation.assigned_agent_id,
        to_user_id=target.id,
        requested_by_id=requested_by_id,
        reason=reason,
        notes=notes,
        status="pending",
        transferred_at=datetime.now(timezone.utc),
    )
    db.add(transfer)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise ConflictError(
            f"Conversation {conversation_id} already has a pending transfer",
            current_status="assigned",
        ) from None

    _audit(db, transfer, "transfer_requested", actor_id=requested_by_id, reason=reason)
    emit(
        db,
        EventType.TRANSFER_REQUESTED,
        conversation.id,
        transfer_id=transfer.id,
        from_agent_id=transfer.from_user_id,
        to_agent_id=target.id,
    )
    db.commit()
    db.refresh(transfer)
    logger.info(
        "Transfer %s requested: conversation %s from %s to %s (%s)",
        transfer.id,
        conversation.id,
        transfer.from_user_id,
        target.id,
        reason,
    )
    return transfer


def accept_transfer(db: Session, transfer_id: uuid.UUID) -> ConversationTransfer:
    """Move the conversation to the target agent.

    Fails with ConflictError when the transfer is no longer pending or the
    conversation changed hands since the request.
    """
    transfer = _load_transfer(db, transfer_id, lock=True)
    _assert_pending(transfer)
    conversation = get_conversation(db, transfer.conversation_id, lock=True)
    if conversation.status != "assigned" or conversation.assigned_agent_id != transfer.from_user_id:
        raise ConflictError(
            f"Conversation {conversation.id} changed since transfer {transfer.id} was requested",
            current_status=conversation.status,
        )
    target = _active_agent(db, transfer.to_user_id)

    now = datetime.now(timezone.utc)
    transfer.status = "accepted"
    transfer.responded_at = now
    conversation.assigned_agent_id = target.id
    conversation.assigned_at = now

    _audit(db, transfer, "transferred", actor_id=target.id, reason=transfer.reason)
    emit(
        db,
        EventType.CONVERSATION_TRANSFERRED,
        conversation.id,
        transfer_id=transfer.id,
        agent_id=target.id,
        from_agent_id=transfer.from_user_id,
    )
    db.commit()
    db.refresh(transfer)
    logger.info("Transfer %s accepted: conversation %s now with agent %s", transfer.id, conversation.id, target.id)
    return transfer


def reject_transfer(db: Session, transfer_id: uuid.UUID, *, reason: str | None = None) -> ConversationTransfer:
    """Decline a pending transfer; the conversation stays with its current agent."""
    transfer = _load_transfer(db, transfer_id, lock=True)
    _assert_pending(transfer)

    transfer.status = "rejected"
    transfer.responded_at = datetime.now(timezone.utc)
    if reason:
        transfer.notes = f"{transfer.notes}\nRejected: {reason}" if transfer.notes else f"Rejected: {reason}"

    _audit(db, transfer, "transfer_rejected", actor_id=transfer.to_user_id, reason=reason)
    emit(
        db,
        EventType.TRANSFER_REJECTED,
        transfer.conversation_id,
        transfer_id=transfer.id,
        from_agent_id=transfer.from_user_id,
        to_agent_id=transfer.to_user_id,
    )
    db.commit()
    db.refresh(transfer)
    logger.info("Transfer %s rejected by agent %s", transfer.id, transfer.to_user_id)
    return transfer


def cancel_transfer(
    db: Session,
    transfer_id: uuid.UUID,
    *,
    cancelled_by_id: uuid.UUID | None = None,
) -> ConversationTransfer:
    transfer = _load_transfer(db, transfer_id, lock=True)
    _assert_pending(transfer)
    transfer.status = "cancelled"
    transfer.responded_at = datetime.now(timezone.utc)
    _audit(db, transfer, "transfer_cancelled", actor_id=cancelled_by_id)
    db.commit()
    db.refresh(transfer)
    return transfer


def find_available_agent(db: Session, conversation: Conversation) -> User | None:
    """Active agent other than the current one with the fewest assigned conversations."""
    workload = (
        select(Conversation.assigned_agent_id, func.count().label("open_count"))
        .where(Conversation.status == "assigned")
        .group_by(Conversation.assigned_agent_id)
        .subquery()
    )
    query = (
        select(User)
        .outerjoin(workload, workload.c.assigned_agent_id == User.id)
        .where(User.is_active.is_(True), User.is_agent.is_(True))
        .order_by(func.coalesce(workload.c.open_count, 0).asc(), User.created_at.asc(), User.id.asc())
        .limit(1)
    )
    if conversation.assigned_agent_id is not None:
        query = query.where(User.id != conversation.assigned_agent_id)
    return db.execute(query).scalar_one_or_none()


def auto_transfer(
    db: Session,
    conversation_id: uuid.UUID,
    *,
    reason: str = "workload",
) -> ConversationTransfer | None:
    """Request a transfer to the least busy available agent.

    Returns None when no other agent is available.
    """
    conversation = get_conversation(db, conversation_id)
    target = find_available_agent(db, conversation)
    if target is None:
        logger.info("No agent available to take conversation %s", conversation_id)
        return None
    return request_transfer(
        db,
        conversation_id,
        target.id,
        reason=reason,
        notes="Auto-transferred by system",
    )


def list_transfers(
    db: Session,
    *,
    to_agent_id: uuid.UUID | None = None,
    from_agent_id: uuid.UUID | None = None,
    conversation_id: uuid.UUID | None = None,
    status: str | None = None,
) -> list[ConversationTransfer]:
    query = select(ConversationTransfer)
    if to_agent_id is not None:
        query = query.where(ConversationTransfer.to_user_id == to_agent_id)
    if from_agent_id is not None:
        query = query.where(ConversationTransfer.from_user_id == from_agent_id)
    if conversation_id is not None:
        query = query.where(ConversationTransfer.conversation_id == conversation_id)
    if status is not None:
        query = query.where(ConversationTransfer.status == status)
    return list(db.execute(query.order_by(ConversationTransfer.transferred_at.desc())).scalars().all())


def transfer_stats(db: Session, agent_id: uuid.UUID, days: int = 30) -> dict:
    """Transfers given and received by an agent over the last ``days`` days."""
    since = datetime.now(timezone.utc) - timedelta(days=days)

    def count(*filters) -> int:
        return db.execute(
            select(func.count())
            .select_from(ConversationTransfer)
            .where(ConversationTransfer.transferred_at >= since, *filters)
        ).scalar_one()

    received = count(ConversationTransfer.to_user_id == agent_id)
    accepted = count(ConversationTransfer.to_user_id == agent_id, ConversationTransfer.status == "accepted")
    return {
        "transfers_given": count(ConversationTransfer.from_user_id == agent_id),
        "transfers_received": received,
        "transfers_accepted": accepted,
        "transfers_rejected": count(
            ConversationTransfer.to_user_id == agent_id, ConversationTransfer.status == "rejected"
        ),
        "acceptance_rate": round(accepted / received * 100, 1) if received else 0.0,
    }
