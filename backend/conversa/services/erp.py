"""ERP integration — batch synchronisation of contacts and agents.

Each item is validated and written in its own transaction, so one bad
record never blocks the rest of the batch. Results follow the ERP's
``{success, errors, details}`` shape. ``dry_run`` reports what would
change without writing anything.
"""

import logging

import pydantic
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from conversa.core.exceptions import ServiceError
from conversa.models.contact import Contact
from conversa.models.user import User
from conversa.schemas.erp import ErpContactItem, ErpSyncResult, ErpUserItem
from conversa.services.contacts import normalize_phone

logger = logging.getLogger(__name__)


def _error_message(exc: Exception) -> str:
    if isinstance(exc, pydantic.ValidationError):
        return "; ".join(f"{'.'.join(map(str, e['loc']))}: {e['msg']}" for e in exc.errors())
    if isinstance(exc, IntegrityError):
        return "Conflicts with an existing record (duplicate phone, email or ERP id)"
    return str(exc)


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------


def _find_contact(db: Session, item: ErpContactItem, phone: str | None) -> Contact | None:
    contact = db.execute(
        select(Contact).where(Contact.external_id == item.businesspartner_id)
    ).scalar_one_or_none()
    if contact is None and phone:
        # Link a contact first seen on a channel to its business partner
        contact = db.execute(select(Contact).where(Contact.phone == phone)).scalar_one_or_none()
    return contact


def sync_contact(db: Session, item: ErpContactItem, *, dry_run: bool = False) -> dict:
    phone = normalize_phone(item.phone) if item.phone else None
    contact = _find_contact(db, item, phone)

    if contact is None:
        if phone is None:
            raise ServiceError("A phone number is required to create a contact")
        if dry_run:
            return {"status": "would_create", "contact_id": None}
        contact = Contact(
            phone=phone,
            name=item.name,
            email=item.email,
            external_id=item.businesspartner_id,
        )
        db.add(contact)
        db.commit()
        logger.info("New contact created from ERP: id=%s bp=%s", contact.id, item.businesspartner_id)
        return {"status": "created", "contact_id": str(contact.id)}

    if dry_run:
        return {"status": "would_update", "contact_id": str(contact.id)}

    contact.external_id = item.businesspartner_id
    if item.name:
        contact.name = item.name
    if item.email:
        contact.email = item.email
    if phone:
        contact.phone = phone
    contact.deleted_at = None
    db.commit()
    logger.info("Contact synced with ERP: id=%s bp=%s", contact.id, item.businesspartner_id)
    return {"status": "updated", "contact_id": str(contact.id)}


def batch_sync_contacts(db: Session, items: list[dict], *, dry_run: bool = False) -> ErpSyncResult:
    result = ErpSyncResult(dry_run=dry_run)
    for raw in items:
        bp_id = raw.get("businesspartner_id", "unknown") if isinstance(raw, dict) else "unknown"
        try:
            item = ErpContactItem.model_validate(raw)
            outcome = sync_contact(db, item, dry_run=dry_run)
        except (pydantic.ValidationError, ServiceError, IntegrityError) as exc:
            db.rollback()
            result.errors += 1
            result.details.append(
                {"businesspartner_id": str(bp_id), "status": "error", "message": _error_message(exc)}
            )
            logger.error("Failed to sync contact with ERP: bp=%s error=%s", bp_id, exc)
            continue
        result.success += 1
        result.details.append({"businesspartner_id": item.businesspartner_id, **outcome})
    return result


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def sync_user(db: Session, item: ErpUserItem, *, dry_run: bool = False) -> dict:
    user = db.execute(select(User).where(User.erp_user_id == item.erp_user_id)).scalar_one_or_none()
    if user is None:
        user = db.execute(select(User).where(User.email == item.email)).scalar_one_or_none()

    if user is None:
        if dry_run:
            return {"status": "would_create", "user_id": None}
        user = User(
            name=item.name,
            email=item.email,
            erp_user_id=item.erp_user_id,
            is_active=item.is_active,
            is_agent=True,
        )
        db.add(user)
        db.commit()
        logger.info("New user created from ERP: id=%s erp_user_id=%s", user.id, item.erp_user_id)
        return {"status": "created", "user_id": str(user.id)}

    if dry_run:
        return {"status": "would_update", "user_id": str(user.id)}

    user.erp_user_id = item.erp_user_id
    user.name = item.name
    user.email = item.email
    user.is_active = item.is_active
    db.commit()
    logger.info("User synced with ERP: id=%s erp_user_id=%s", user.id, item.erp_user_id)
    return {"status": "updated", "user_id": str(user.id)}


def batch_sync_users(db: Session, items: list[dict], *, dry_run: bool = False) -> ErpSyncResult:
    result = ErpSyncResult(dry_run=dry_run)
    for raw in items:
        erp_id = raw.get("erp_user_id", "unknown") if isinstance(raw, dict) else "unknown"
        try:
            item = ErpUserItem.model_validate(raw)
            outcome = sync_user(db, item, dry_run=dry_run)
        except (pydantic.ValidationError, ServiceError, IntegrityError) as exc:
            db.rollback()
            result.errors += 1
            result.details.append(
                {"erp_user_id": str(erp_id), "status": "error", "message": _error_message(exc)}
            )
            logger.error("Failed to sync user with ERP: erp_user_id=%s error=%s", erp_id, exc)
            continue
        result.success += 1
        result.details.append({"erp_user_id": item.erp_user_id, **outcome})
    return result
