"""Conversation endpoints — lifecycle transitions, agent queue and messages.

Endpoints:
    POST /                          — Open a conversation
    GET  /                          — List conversations (filters)
    GET  /queue                     — Conversations waiting for an agent
    GET  /stats                     — Dashboard counts
    GET  /agents/{agent_id}/stats   — One agent's workload
    POST /bulk-assign               — Assign many conversations
    POST /bulk-close                — Close many conversations
    GET  /{id}                      — Conversation detail
    POST /{id}/assign               — Assign to an agent
    POST /{id}/close                — Close
    POST /{id}/reopen               — Reopen a closed conversation
    PUT  /{id}/priority             — Change priority
    POST /{id}/transfers            — Request a transfer to another agent
    POST /{id}/auto-transfer        — Transfer to the least busy agent
    GET  /{id}/messages             — Message thread
    POST /{id}/messages             — Queue an outbound message
"""

import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from conversa.api.errors import to_http_exception
from conversa.core.database import get_db
from conversa.core.exceptions import ServiceError
from conversa.schemas.conversations import (
    AgentStatsResponse,
    AssignRequest,
    BulkAssignRequest,
    BulkCloseRequest,
    BulkResultResponse,
    CloseRequest,
    ConversationCreate,
    ConversationListResponse,
    ConversationResponse,
    ConversationStatus,
    DashboardStatsResponse,
    MessageListResponse,
    MessageResponse,
    MessageSendRequest,
    Priority,
    PriorityRequest,
    ReopenRequest,
)
from conversa.schemas.transfers import AutoTransferRequest, TransferRequest, TransferResponse
from conversa.services import conversations as conversation_service
from conversa.services import messages as message_service
from conversa.services import transfers as transfer_service

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Collection
# ---------------------------------------------------------------------------


@router.post("/", response_model=ConversationResponse, status_code=201)
def create_conversation(
    payload: ConversationCreate,
    db: Session = Depends(get_db),
):
    try:
        return conversation_service.create_conversation(
            db,
            contact_id=payload.contact_id,
            channel_id=payload.channel_id,
            category_id=payload.category_id,
            subject=payload.subject,
            priority=payload.priority,
            created_by_id=payload.created_by_id,
        )
    except ServiceError as exc:
        raise to_http_exception(exc) from exc


@router.get("/", response_model=ConversationListResponse)
def list_conversations(
    status: ConversationStatus | None = Query(None),
    agent_id: uuid.UUID | None = Query(None),
    contact_id: uuid.UUID | None = Query(None),
    channel_id: uuid.UUID | None = Query(None),
    priority: Priority | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    items, total = conversation_service.list_conversations(
        db,
        status=status,
        agent_id=agent_id,
        contact_id=contact_id,
        channel_id=channel_id,
        priority=priority,
        page=page,
        page_size=page_size,
    )
    return ConversationListResponse(items=items, total=total, page=page, page_size=page_size)


@router.get("/queue", response_model=list[ConversationResponse])
def get_queue(
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    """Open, unassigned conversations: highest priority first, then oldest first."""
    return conversation_service.next_in_queue(db, limit=limit)


@router.get("/stats", response_model=DashboardStatsResponse)
def dashboard_stats(db: Session = Depends(get_db)):
    return conversation_service.dashboard_statistics(db)


@router.get("/agents/{agent_id}/stats", response_model=AgentStatsResponse)
def agent_stats(
    agent_id: uuid.UUID,
    db: Session = Depends(get_db),
):
    try:
        return conversation_service.agent_statistics(db, agent_id)
    except ServiceError as exc:
        raise to_http_exception(exc) from exc


@router.post("/bulk-assign", response_model=BulkResultResponse)
def bulk_assign(
    payload: BulkAssignRequest,
    db: Session = Depends(get_db),
):
    result = conversation_service.bulk_assign(
        db,
        payload.conversation_ids,
        payload.agent_id,
        assigned_by_id=payload.assigned_by_id,
    )
    return BulkResultResponse(succeeded=result.succeeded, failed=result.failed)


@router.post("/bulk-close", response_model=BulkResultResponse)
def bulk_close(
    payload: BulkCloseRequest,
    db: Session = Depends(get_db),
):
    result = conversation_service.bulk_close(
        db,
        payload.conversation_ids,
        closed_by_id=payload.closed_by_id,
        reason=payload.reason,
    )
    return BulkResultResponse(succeeded=result.succeeded, failed=result.failed)


# ---------------------------------------------------------------------------
# Single conversation
# ---------------------------------------------------------------------------


@router.get("/{conversation_id}", response_model=ConversationResponse)
def get_conversation(
    conversation_id: uuid.UUID,
    db: Session = Depends(get_db),
):
    try:
        return conversation_service.get_conversation(db, conversation_id)
    except ServiceError as exc:
        raise to_http_exception(exc) from exc


@router.post("/{conversation_id}/assign", response_model=ConversationResponse)
def assign_conversation(
    conversation_id: uuid.UUID,
    payload: AssignRequest,
    db: Session = Depends(get_db),
):
    try:
        return conversation_service.assign_conversation(
            db,
            conversation_id,
            payload.agent_id,
            assigned_by_id=payload.assigned_by_id,
        )
    except ServiceError as exc:
        raise to_http_exception(exc) from exc


@router.post("/{conversation_id}/close", response_model=ConversationResponse)
def close_conversation(
    conversation_id: uuid.UUID,
    payload: CloseRequest,
    db: Session = Depends(get_db),
):
    try:
        return conversation_service.close_conversation(
            db,
            conversation_id,
            closed_by_id=payload.closed_by_id,
            reason=payload.reason,
        )
    except ServiceError as exc:
        raise to_http_exception(exc) from exc


@router.post("/{conversation_id}/reopen", response_model=ConversationResponse)
def reopen_conversation(
    conversation_id: uuid.UUID,
    payload: ReopenRequest,
    db: Session = Depends(get_db),
):
    try:
        return conversation_service.reopen_conversation(
            db,
            conversation_id,
            payload.reason,
            reopened_by_id=payload.reopened_by_id,
        )
    except ServiceError as exc:
        raise to_http_exception(exc) from exc


@router.put("/{conversation_id}/priority", response_model=ConversationResponse)
def set_priority(
    conversation_id: uuid.UUID,
    payload: PriorityRequest,
    db: Session = Depends(get_db),
):
    try:
        return conversation_service.set_priority(
            db,
            conversation_id,
            payload.priority,
            changed_by_id=payload.changed_by_id,
        )
    except ServiceError as exc:
        raise to_http_exception(exc) from exc


@router.post("/{conversation_id}/transfers", response_model=TransferResponse, status_code=201)
def request_transfer(
    conversation_id: uuid.UUID,
    payload: TransferRequest,
    db: Session = Depends(get_db),
):
    """The conversation stays with its current agent until the target accepts."""
    try:
        return transfer_service.request_transfer(
            db,
            conversation_id,
            payload.to_agent_id,
            reason=payload.reason,
            notes=payload.notes,
            requested_by_id=payload.requested_by_id,
        )
    except ServiceError as exc:
        raise to_http_exception(exc) from exc


@router.post("/{conversation_id}/auto-transfer", response_model=TransferResponse, status_code=201)
def auto_transfer(
    conversation_id: uuid.UUID,
    payload: AutoTransferRequest,
    db: Session = Depends(get_db),
):
    try:
        transfer = transfer_service.auto_transfer(db, conversation_id, reason=payload.reason)
    except ServiceError as exc:
        raise to_http_exception(exc) from exc
    if transfer is None:
        raise HTTPException(
            status_code=409,
            detail={"message": "No agent available", "current_status": "assigned"},
        )
    return transfer


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@router.get("/{conversation_id}/messages", response_model=MessageListResponse)
def list_messages(
    conversation_id: uuid.UUID,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    try:
        items, total = message_service.list_messages(
            db, conversation_id, page=page, page_size=page_size
        )
    except ServiceError as exc:
        raise to_http_exception(exc) from exc
    return MessageListResponse(items=items, total=total, page=page, page_size=page_size)


@router.post("/{conversation_id}/messages", response_model=MessageResponse, status_code=202)
def send_message(
    conversation_id: uuid.UUID,
    payload: MessageSendRequest,
    db: Session = Depends(get_db),
):
    """Queue an outbound message; delivery happens in the worker pool."""
    try:
        return message_service.send_message(
            db,
            conversation_id,
            payload.content,
            type=payload.type,
            media=payload.media,
            sender_id=payload.sender_id,
        )
    except ServiceError as exc:
        raise to_http_exception(exc) from exc
