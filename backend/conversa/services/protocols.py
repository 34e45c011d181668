"""Protocol service — support tickets with human-readable daily numbers.

Protocol numbers are ``YYYYMMDD`` followed by a 6-digit sequence that
restarts every day (UTC). The number column is unique; two creators that
pick the same next number race on the constraint and the loser retries.
"""

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from conversa.core.exceptions import ConflictError, NotFoundError, ServiceError, ValidationError
from conversa.models.contact import Contact
from conversa.models.conversation import PRIORITIES, Conversation
from conversa.models.protocol import Protocol
from conversa.models.user import User
from conversa.services.audit import record_audit

logger = logging.getLogger(__name__)

SEQUENCE_DIGITS = 6
MAX_NUMBER_ATTEMPTS = 10


class ProtocolNumberExhausted(ServiceError):
    """Raised when no unique protocol number could be allocated."""


def _next_protocol_number(db: Session, now: datetime | None = None) -> str:
    prefix = (now or datetime.now(timezone.utc)).strftime("%Y%m%d")
    last = db.execute(
        select(func.max(Protocol.protocol_number)).where(Protocol.protocol_number.like(f"{prefix}%"))
    ).scalar_one_or_none()
    sequence = int(last[len(prefix):]) + 1 if last else 1
    if sequence >= 10**SEQUENCE_DIGITS:
        raise ProtocolNumberExhausted(f"Daily protocol sequence exhausted for {prefix}")
    return f"{prefix}{sequence:0{SEQUENCE_DIGITS}d}"


def _audit(db: Session, protocol: Protocol, action: str, actor_id=None, reason=None, details=None) -> None:
    record_audit(
        db,
        entity_type="protocol",
        entity_id=protocol.id,
        action=action,
        actor_id=actor_id,
        reason=reason,
        details=details,
    )


def create_protocol(
    db: Session,
    *,
    contact_id: uuid.UUID,
    subject: str,
    description: str | None = None,
    priority: str = "medium",
    conversation_id: uuid.UUID | None = None,
    created_by_id: uuid.UUID | None = None,
    assigned_to_id: uuid.UUID | None = None,
) -> Protocol:
    """Open a protocol with the next free number of the day."""
    if not subject or not subject.strip():
        raise ValidationError("Protocol subject is required")
    if priority not in PRIORITIES:
        raise ValidationError(f"Invalid priority '{priority}'")

    contact = db.get(Contact, contact_id)
    if contact is None or contact.deleted_at is not None:
        raise NotFoundError("Contact", contact_id)
    if conversation_id is not None:
        conversation = db.get(Conversation, conversation_id)
        if conversation is None or conversation.contact_id != contact_id:
            raise NotFoundError("Conversation", conversation_id)
    if assigned_to_id is not None and db.get(User, assigned_to_id) is None:
        raise NotFoundError("User", assigned_to_id)

    for attempt in range(1, MAX_NUMBER_ATTEMPTS + 1):
        protocol = Protocol(
            protocol_number=_next_protocol_number(db),
            contact_id=contact_id,
            conversation_id=conversation_id,
            created_by_id=created_by_id,
            assigned_to_id=assigned_to_id,
            subject=subject.strip(),
            description=description,
            priority=priority,
            status="open",
            opened_at=datetime.now(timezone.utc),
        )
        db.add(protocol)
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            logger.info("Protocol number collision (attempt %d/%d), retrying", attempt, MAX_NUMBER_ATTEMPTS)
            continue

        _audit(db, protocol, "created", actor_id=created_by_id)
        db.commit()
        db.refresh(protocol)
        logger.info("Protocol %s created for contact %s", protocol.protocol_number, contact_id)
        return protocol

    raise ProtocolNumberExhausted("Could not allocate a unique protocol number")


def get_protocol(db: Session, protocol_id: uuid.UUID) -> Protocol:
    protocol = db.get(Protocol, protocol_id)
    if protocol is None:
        raise NotFoundError("Protocol", protocol_id)
    return protocol


def get_protocol_by_number(db: Session, protocol_number: str) -> Protocol:
    protocol = db.execute(
        select(Protocol).where(Protocol.protocol_number == protocol_number)
    ).scalar_one_or_none()
    if protocol is None:
        raise NotFoundError("Protocol", protocol_number)
    return protocol


def list_protocols(
    db: Session,
    *,
    status: str | None = None,
    contact_id: uuid.UUID | None = None,
    assigned_to_id: uuid.UUID | None = None,
    priority: str | None = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[Protocol], int]:
    filters = []
    if status is not None:
        filters.append(Protocol.status == status)
    if contact_id is not None:
        filters.append(Protocol.contact_id == contact_id)
    if assigned_to_id is not None:
        filters.append(Protocol.assigned_to_id == assigned_to_id)
    if priority is not None:
        filters.append(Protocol.priority == priority)

    total = db.execute(select(func.count()).select_from(Protocol).where(*filters)).scalar_one()
    protocols = (
        db.execute(
            select(Protocol)
            .where(*filters)
            .order_by(Protocol.protocol_number.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        .scalars()
        .all()
    )
    return list(protocols), total


def assign_protocol(
    db: Session,
    protocol_id: uuid.UUID,
    user_id: uuid.UUID,
    *,
    assigned_by_id: uuid.UUID | None = None,
) -> Protocol:
    protocol = get_protocol(db, protocol_id)
    if db.get(User, user_id) is None:
        raise NotFoundError("User", user_id)
    protocol.assigned_to_id = user_id
    _audit(db, protocol, "assigned", actor_id=assigned_by_id, details={"user_id": str(user_id)})
    db.commit()
    db.refresh(protocol)
    return protocol


def close_protocol(
    db: Session,
    protocol_id: uuid.UUID,
    *,
    resolution_notes: str | None = None,
    closed_by_id: uuid.UUID | None = None,
) -> Protocol:
    protocol = get_protocol(db, protocol_id)
    if protocol.status != "open":
        raise ConflictError(
            f"Protocol {protocol.protocol_number} is already closed",
            current_status=protocol.status,
        )
    protocol.status = "closed"
    protocol.closed_at = datetime.now(timezone.utc)
    if resolution_notes:
        protocol.resolution_notes = resolution_notes
    _audit(db, protocol, "closed", actor_id=closed_by_id, reason=resolution_notes)
    db.commit()
    db.refresh(protocol)
    logger.info("Protocol %s closed", protocol.protocol_number)
    return protocol


def reopen_protocol(
    db: Session,
    protocol_id: uuid.UUID,
    *,
    reason: str | None = None,
    reopened_by_id: uuid.UUID | None = None,
) -> Protocol:
    """Reopen a closed protocol; the reason is appended to its description."""
    protocol = get_protocol(db, protocol_id)
    if protocol.status != "closed":
        raise ConflictError(
            f"Only closed protocols can be reopened ({protocol.protocol_number} is {protocol.status})",
            current_status=protocol.status,
        )
    protocol.status = "open"
    protocol.closed_at = None
    if reason:
        protocol.description = f"{protocol.description or ''}\n\nReopened: {reason}".strip()
    _audit(db, protocol, "reopened", actor_id=reopened_by_id, reason=reason)
    db.commit()
    db.refresh(protocol)
    logger.info("Protocol %s reopened", protocol.protocol_number)
    return protocol


def protocol_stats(db: Session) -> dict:
    by_status = dict(db.execute(select(Protocol.status, func.count()).group_by(Protocol.status)).all())
    by_priority = dict(
        db.execute(select(Protocol.priority, func.count()).group_by(Protocol.priority)).all()
    )
    open_filter = Protocol.status == "open"
    urgent = db.execute(
        select(func.count()).select_from(Protocol).where(open_filter, Protocol.priority == "urgent")
    ).scalar_one()
    unassigned = db.execute(
        select(func.count()).select_from(Protocol).where(open_filter, Protocol.assigned_to_id.is_(None))
    ).scalar_one()
    return {
        "total": sum(by_status.values()),
        "by_status": by_status,
        "by_priority": by_priority,
        "urgent_count": urgent,
        "unassigned_count": unassigned,
    }
