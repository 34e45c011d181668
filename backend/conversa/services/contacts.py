"""Contact service — identity resolution, blocking and contact lifecycle.

``resolve_contact`` is the identity resolver used by message ingestion:
phone numbers are normalised to E.164 and contacts are created on first
contact. Creation relies on the unique ``phone`` constraint; a
concurrent creator that loses the race rolls back and reads the winner's
row, so N simultaneous first messages yield exactly one contact.
"""

import logging
import re
import uuid
from datetime import datetime, timezone

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from conversa.core.config import settings
from conversa.core.exceptions import ConflictError, NotFoundError, ValidationError
from conversa.models.contact import Contact
from conversa.models.conversation import ACTIVE_STATUSES, Conversation
from conversa.models.protocol import Protocol
from conversa.services.audit import record_audit
from conversa.services.bot import complete_sessions
from conversa.services.conversations import apply_close

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")

UPDATABLE_FIELDS = {"name", "email", "phone", "external_id", "metadata_"}


def normalize_phone(address: str) -> str:
    """Normalise a channel address to E.164 (``+<digits>``).

    Strips a ``whatsapp:`` prefix and formatting, drops an international
    ``00`` prefix and adds DEFAULT_COUNTRY_CODE to 10/11-digit national
    numbers written without ``+``.
    """
    if not address or not address.strip():
        raise ValidationError("Phone number is required")

    raw = address.strip()
    if raw.lower().startswith("whatsapp:"):
        raw = raw[len("whatsapp:"):].strip()

    digits = _NON_DIGITS.sub("", raw)
    if not raw.startswith("+"):
        if digits.startswith("00"):
            digits = digits[2:]
        elif len(digits) in (10, 11):
            digits = settings.DEFAULT_COUNTRY_CODE + digits

    if not 8 <= len(digits) <= 15:
        raise ValidationError(f"Invalid phone number: {address!r}")
    return f"+{digits}"


def _get_by_phone(db: Session, phone: str) -> Contact | None:
    return db.execute(select(Contact).where(Contact.phone == phone)).scalar_one_or_none()


def resolve_contact(db: Session, address: str, profile_name: str | None = None) -> Contact:
    """Find the contact for a channel address, creating it on first contact.

    Soft-deleted contacts are restored. A missing name is filled from the
    channel profile name. Commits.
    """
    phone = normalize_phone(address)

    contact = _get_by_phone(db, phone)
    if contact is not None:
        changed = False
        if contact.deleted_at is not None:
            contact.deleted_at = None
            changed = True
            logger.info("Restored soft-deleted contact %s on new inbound message", contact.id)
        if profile_name and not contact.name:
            contact.name = profile_name
            changed = True
        if changed:
            db.commit()
            db.refresh(contact)
        return contact

    contact = Contact(phone=phone, name=profile_name, is_blocked=False)
    db.add(contact)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        contact = _get_by_phone(db, phone)
        if contact is None:
            raise
        logger.info("Contact %s created concurrently, using existing row", phone)
        return contact

    db.refresh(contact)
    logger.info("Contact created: id=%s phone=%s", contact.id, phone)
    return contact


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------


def create_contact(
    db: Session,
    *,
    phone: str,
    name: str | None = None,
    email: str | None = None,
    external_id: str | None = None,
    metadata: dict | None = None,
) -> Contact:
    normalized = normalize_phone(phone)
    if _get_by_phone(db, normalized) is not None:
        raise ConflictError(f"Contact with phone {normalized} already exists")

    contact = Contact(
        phone=normalized,
        name=name,
        email=email,
        external_id=external_id,
        metadata_=metadata,
    )
    db.add(contact)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError(f"Contact with phone {normalized} or external id already exists") from None
    db.refresh(contact)
    return contact


def get_contact(db: Session, contact_id: uuid.UUID, *, include_deleted: bool = False) -> Contact:
    contact = db.get(Contact, contact_id)
    if contact is None or (contact.deleted_at is not None and not include_deleted):
        raise NotFoundError("Contact", contact_id)
    return contact


def list_contacts(
    db: Session,
    *,
    search: str | None = None,
    is_blocked: bool | None = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[Contact], int]:
    filters = [Contact.deleted_at.is_(None)]
    if is_blocked is not None:
        filters.append(Contact.is_blocked == is_blocked)
    if search:
        pattern = f"%{search.strip()}%"
        filters.append(
            or_(Contact.name.ilike(pattern), Contact.phone.ilike(pattern), Contact.email.ilike(pattern))
        )

    total = db.execute(select(func.count()).select_from(Contact).where(*filters)).scalar_one()
    contacts = (
        db.execute(
            select(Contact)
            .where(*filters)
            .order_by(Contact.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        .scalars()
        .all()
    )
    return list(contacts), total


def update_contact(db: Session, contact_id: uuid.UUID, **fields) -> Contact:
    contact = get_contact(db, contact_id)
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(f"Cannot update field(s): {', '.join(sorted(unknown))}")

    if fields.get("phone") is not None:
        fields["phone"] = normalize_phone(fields["phone"])
    for key, value in fields.items():
        setattr(contact, key, value)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("Another contact already uses this phone or external id") from None
    db.refresh(contact)
    return contact


# ---------------------------------------------------------------------------
# Blocking
# ---------------------------------------------------------------------------


def block_contact(
    db: Session,
    contact_id: uuid.UUID,
    *,
    reason: str,
    blocked_by_id: uuid.UUID | None = None,
) -> Contact:
    """Block a contact.

    Every active conversation of the contact is closed (closed_by the
    blocking actor) and any bot session is completed, in one transaction.
    Later inbound messages from the contact are rejected.
    """
    if not reason or not reason.strip():
        raise ValidationError("A reason is required to block a contact")

    contact = get_contact(db, contact_id)
    if contact.is_blocked:
        raise ConflictError(f"Contact {contact_id} is already blocked", current_status="blocked")

    contact.is_blocked = True
    contact.blocked_reason = reason.strip()
    contact.blocked_by_id = blocked_by_id
    contact.blocked_at = datetime.now(timezone.utc)

    active = db.execute(
        select(Conversation).where(
            Conversation.contact_id == contact.id,
            Conversation.status.in_(ACTIVE_STATUSES),
        )
    ).scalars().all()
    for conversation in active:
        apply_close(db, conversation, closed_by_id=blocked_by_id, reason="contact_blocked")
    complete_sessions(db, contact_id=contact.id, reason="contact_blocked")

    record_audit(
        db,
        entity_type="contact",
        entity_id=contact.id,
        action="blocked",
        actor_id=blocked_by_id,
        reason=contact.blocked_reason,
        details={"closed_conversations": [str(c.id) for c in active]},
    )
    db.commit()
    db.refresh(contact)
    logger.info(
        "Contact %s blocked by %s (%d conversation(s) closed)",
        contact.id,
        blocked_by_id,
        len(active),
    )
    return contact


def unblock_contact(
    db: Session,
    contact_id: uuid.UUID,
    *,
    unblocked_by_id: uuid.UUID | None = None,
    reason: str | None = None,
) -> Contact:
    contact = get_contact(db, contact_id)
    if not contact.is_blocked:
        raise ConflictError(f"Contact {contact_id} is not blocked", current_status="active")

    contact.is_blocked = False
    contact.blocked_reason = None
    contact.blocked_by_id = None
    contact.blocked_at = None
    record_audit(
        db,
        entity_type="contact",
        entity_id=contact.id,
        action="unblocked",
        actor_id=unblocked_by_id,
        reason=reason,
    )
    db.commit()
    db.refresh(contact)
    logger.info("Contact %s unblocked by %s", contact.id, unblocked_by_id)
    return contact


def delete_contact(
    db: Session,
    contact_id: uuid.UUID,
    *,
    deleted_by_id: uuid.UUID | None = None,
) -> None:
    """Soft-delete a contact with no active conversation and no open protocol."""
    contact = get_contact(db, contact_id)

    active = db.execute(
        select(func.count())
        .select_from(Conversation)
        .where(Conversation.contact_id == contact.id, Conversation.status.in_(ACTIVE_STATUSES))
    ).scalar_one()
    if active:
        raise ConflictError(f"Contact {contact_id} has an active conversation")

    open_protocols = db.execute(
        select(func.count())
        .select_from(Protocol)
        .where(Protocol.contact_id == contact.id, Protocol.status == "open")
    ).scalar_one()
    if open_protocols:
        raise ConflictError(f"Contact {contact_id} has {open_protocols} open protocol(s)")

    contact.deleted_at = datetime.now(timezone.utc)
    record_audit(
        db,
        entity_type="contact",
        entity_id=contact.id,
        action="deleted",
        actor_id=deleted_by_id,
    )
    db.commit()
    logger.info("Contact %s soft-deleted by %s", contact.id, deleted_by_id)
