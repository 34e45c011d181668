"""Transfer endpoints — the receiving side of agent-to-agent transfers.

Endpoints:
    GET  /                          — List transfers (filters)
    GET  /agents/{agent_id}/stats   — Transfers given/received by an agent
    POST /{id}/accept               — Take over the conversation
    POST /{id}/reject               — Decline; conversation stays put
    POST /{id}/cancel               — Withdraw a pending request

Requests are created under /conversations/{id}/transfers.
"""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from conversa.api.errors import to_http_exception
from conversa.core.database import get_db
from conversa.core.exceptions import ServiceError
from conversa.schemas.transfers import (
    CancelTransferRequest,
    RejectTransferRequest,
    TransferResponse,
    TransferStatsResponse,
    TransferStatus,
)
from conversa.services import transfers as transfer_service

router = APIRouter()


@router.get("/", response_model=list[TransferResponse])
def list_transfers(
    to_agent_id: uuid.UUID | None = Query(None),
    from_agent_id: uuid.UUID | None = Query(None),
    conversation_id: uuid.UUID | None = Query(None),
    status: TransferStatus | None = Query(None),
    db: Session = Depends(get_db),
):
    return transfer_service.list_transfers(
        db,
        to_agent_id=to_agent_id,
        from_agent_id=from_agent_id,
        conversation_id=conversation_id,
        status=status,
    )


@router.get("/agents/{agent_id}/stats", response_model=TransferStatsResponse)
def transfer_stats(
    agent_id: uuid.UUID,
    days: int = Query(30, ge=1, le=365),
    db: Session = Depends(get_db),
):
    return transfer_service.transfer_stats(db, agent_id, days=days)


@router.post("/{transfer_id}/accept", response_model=TransferResponse)
def accept_transfer(transfer_id: uuid.UUID, db: Session = Depends(get_db)):
    try:
        return transfer_service.accept_transfer(db, transfer_id)
    except ServiceError as exc:
        raise to_http_exception(exc) from exc


@router.post("/{transfer_id}/reject", response_model=TransferResponse)
def reject_transfer(
    transfer_id: uuid.UUID,
    payload: RejectTransferRequest,
    db: Session = Depends(get_db),
):
    try:
        return transfer_service.reject_transfer(db, transfer_id, reason=payload.reason)
    except ServiceError as exc:
        raise to_http_exception(exc) from exc


@router.post("/{transfer_id}/cancel", response_model=TransferResponse)
def cancel_transfer(
    transfer_id: uuid.UUID,
    payload: CancelTransferRequest,
    db: Session = Depends(get_db),
):
    try:
        return transfer_service.cancel_transfer(db, transfer_id, cancelled_by_id=payload.cancelled_by_id)
    except ServiceError as exc:
        raise to_http_exception(exc) from exc
