"""Protocol (support ticket) endpoints."""

import uuid
from typing import Literal

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from conversa.api.errors import to_http_exception
from conversa.core.database import get_db
from conversa.core.exceptions import ServiceError
from conversa.schemas.protocols import (
    ProtocolAssignRequest,
    ProtocolCloseRequest,
    ProtocolCreate,
    ProtocolListResponse,
    ProtocolReopenRequest,
    ProtocolResponse,
    ProtocolStats,
)
from conversa.services import protocols as protocol_service

router = APIRouter()


@router.post("/", response_model=ProtocolResponse, status_code=201)
def create_protocol(payload: ProtocolCreate, db: Session = Depends(get_db)):
    try:
        return protocol_service.create_protocol(db, **payload.model_dump())
    except ServiceError as exc:
        raise to_http_exception(exc) from exc


@router.get("/", response_model=ProtocolListResponse)
def list_protocols(
    status: Literal["open", "closed"] | None = Query(None),
    contact_id: uuid.UUID | None = Query(None),
    assigned_to_id: uuid.UUID | None = Query(None),
    priority: str | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    items, total = protocol_service.list_protocols(
        db,
        status=status,
        contact_id=contact_id,
        assigned_to_id=assigned_to_id,
        priority=priority,
        page=page,
        page_size=page_size,
    )
    return ProtocolListResponse(items=items, total=total, page=page, page_size=page_size)


@router.get("/stats", response_model=ProtocolStats)
def protocol_stats(db: Session = Depends(get_db)):
    return protocol_service.protocol_stats(db)


@router.get("/number/{protocol_number}", response_model=ProtocolResponse)
def get_protocol_by_number(protocol_number: str, db: Session = Depends(get_db)):
    try:
        return protocol_service.get_protocol_by_number(db, protocol_number)
    except ServiceError as exc:
        raise to_http_exception(exc) from exc


@router.get("/{protocol_id}", response_model=ProtocolResponse)
def get_protocol(protocol_id: uuid.UUID, db: Session = Depends(get_db)):
    try:
        return protocol_service.get_protocol(db, protocol_id)
    except ServiceError as exc:
        raise to_http_exception(exc) from exc


@router.post("/{protocol_id}/close", response_model=ProtocolResponse)
def close_protocol(protocol_id: uuid.UUID, payload: ProtocolCloseRequest, db: Session = Depends(get_db)):
    try:
        return protocol_service.close_protocol(
            db,
            protocol_id,
            resolution_notes=payload.resolution_notes,
            closed_by_id=payload.closed_by_id,
        )
    except ServiceError as exc:
        raise to_http_exception(exc) from exc


@router.post("/{protocol_id}/reopen", response_model=ProtocolResponse)
def reopen_protocol(protocol_id: uuid.UUID, payload: ProtocolReopenRequest, db: Session = Depends(get_db)):
    try:
        return protocol_service.reopen_protocol(
            db,
            protocol_id,
            reason=payload.reason,
            reopened_by_id=payload.reopened_by_id,
        )
    except ServiceError as exc:
        raise to_http_exception(exc) from exc


@router.post("/{protocol_id}/assign", response_model=ProtocolResponse)
def assign_protocol(protocol_id: uuid.UUID, payload: ProtocolAssignRequest, db: Session = Depends(get_db)):
    try:
        return protocol_service.assign_protocol(
            db, protocol_id, payload.user_id, assigned_by_id=payload.assigned_by_id
        )
    except ServiceError as exc:
        raise to_http_exception(exc) from exc
