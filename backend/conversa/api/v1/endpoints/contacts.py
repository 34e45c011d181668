"""Contact endpoints — CRUD and blocking."""

import uuid

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from conversa.api.errors import to_http_exception
from conversa.core.database import get_db
from conversa.core.exceptions import ServiceError
from conversa.schemas.contacts import (
    BlockRequest,
    ContactCreate,
    ContactListResponse,
    ContactResponse,
    ContactUpdate,
    UnblockRequest,
)
from conversa.services import contacts as contact_service

router = APIRouter()


@router.post("/", response_model=ContactResponse, status_code=201)
def create_contact(payload: ContactCreate, db: Session = Depends(get_db)):
    try:
        return contact_service.create_contact(
            db,
            phone=payload.phone,
            name=payload.name,
            email=payload.email,
            external_id=payload.external_id,
            metadata=payload.metadata,
        )
    except ServiceError as exc:
        raise to_http_exception(exc) from exc


@router.get("/", response_model=ContactListResponse)
def list_contacts(
    search: str | None = Query(None),
    is_blocked: bool | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    items, total = contact_service.list_contacts(
        db, search=search, is_blocked=is_blocked, page=page, page_size=page_size
    )
    return ContactListResponse(items=items, total=total, page=page, page_size=page_size)


@router.get("/{contact_id}", response_model=ContactResponse)
def get_contact(contact_id: uuid.UUID, db: Session = Depends(get_db)):
    try:
        return contact_service.get_contact(db, contact_id)
    except ServiceError as exc:
        raise to_http_exception(exc) from exc


@router.patch("/{contact_id}", response_model=ContactResponse)
def update_contact(contact_id: uuid.UUID, payload: ContactUpdate, db: Session = Depends(get_db)):
    fields = payload.model_dump(exclude_unset=True)
    if "metadata" in fields:
        fields["metadata_"] = fields.pop("metadata")
    try:
        return contact_service.update_contact(db, contact_id, **fields)
    except ServiceError as exc:
        raise to_http_exception(exc) from exc


@router.post("/{contact_id}/block", response_model=ContactResponse)
def block_contact(contact_id: uuid.UUID, payload: BlockRequest, db: Session = Depends(get_db)):
    """Block a contact; its active conversations are closed."""
    try:
        return contact_service.block_contact(
            db, contact_id, reason=payload.reason, blocked_by_id=payload.blocked_by_id
        )
    except ServiceError as exc:
        raise to_http_exception(exc) from exc


@router.post("/{contact_id}/unblock", response_model=ContactResponse)
def unblock_contact(contact_id: uuid.UUID, payload: UnblockRequest, db: Session = Depends(get_db)):
    try:
        return contact_service.unblock_contact(
            db, contact_id, unblocked_by_id=payload.unblocked_by_id, reason=payload.reason
        )
    except ServiceError as exc:
        raise to_http_exception(exc) from exc


@router.delete("/{contact_id}", status_code=204)
def delete_contact(
    contact_id: uuid.UUID,
    deleted_by_id: uuid.UUID | None = Query(None),
    db: Session = Depends(get_db),
):
    try:
        contact_service.delete_contact(db, contact_id, deleted_by_id=deleted_by_id)
    except ServiceError as exc:
        raise to_http_exception(exc) from exc
    return Response(status_code=204)
