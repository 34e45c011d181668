"""Agent inbox endpoints.

Endpoints:
    GET   /                     — Inbox page with unread count
    PATCH /read-all             — Clear unread entries (optionally for one conversation)
    PATCH /{id}/read            — Mark one entry read
"""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from conversa.api.errors import to_http_exception
from conversa.core.database import get_db
from conversa.core.exceptions import ServiceError
from conversa.schemas.notifications import InboxResponse, MarkReadResponse, NotificationResponse
from conversa.services import notifications as notification_service

router = APIRouter()


@router.get("/", response_model=InboxResponse)
def get_inbox(
    user_id: uuid.UUID = Query(...),
    unread_only: bool = Query(False),
    conversation_id: uuid.UUID | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    items, total, unread = notification_service.list_notifications(
        db,
        user_id,
        unread_only=unread_only,
        conversation_id=conversation_id,
        page=page,
        page_size=page_size,
    )
    return InboxResponse(items=items, total=total, unread=unread, page=page, page_size=page_size)


@router.patch("/read-all", response_model=MarkReadResponse)
def mark_all_read(
    user_id: uuid.UUID = Query(...),
    conversation_id: uuid.UUID | None = Query(None),
    db: Session = Depends(get_db),
):
    updated = notification_service.mark_all_as_read(db, user_id, conversation_id=conversation_id)
    return MarkReadResponse(updated=updated)


@router.patch("/{notification_id}/read", response_model=NotificationResponse)
def mark_read(
    notification_id: uuid.UUID,
    user_id: uuid.UUID = Query(...),
    db: Session = Depends(get_db),
):
    try:
        return notification_service.mark_as_read(db, notification_id, user_id)
    except ServiceError as exc:
        raise to_http_exception(exc) from exc
