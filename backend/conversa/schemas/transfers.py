"""Pydantic schemas for conversation transfer endpoints."""

import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

TransferReason = Literal["workload", "expertise", "unavailable", "other"]
TransferStatus = Literal["pending", "accepted", "rejected", "cancelled"]


class TransferRequest(BaseModel):
    """POST /api/v1/conversations/{id}/transfers request body."""

    to_agent_id: uuid.UUID
    reason: TransferReason = "other"
    notes: str | None = Field(None, max_length=2000)
    requested_by_id: uuid.UUID | None = None


class AutoTransferRequest(BaseModel):
    reason: TransferReason = "workload"


class RejectTransferRequest(BaseModel):
    reason: str | None = Field(None, max_length=500)


class CancelTransferRequest(BaseModel):
    cancelled_by_id: uuid.UUID | None = None


class TransferResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    conversation_id: uuid.UUID
    from_user_id: uuid.UUID | None
    to_user_id: uuid.UUID
    requested_by_id: uuid.UUID | None
    reason: TransferReason
    notes: str | None
    status: TransferStatus
    transferred_at: datetime
    responded_at: datetime | None


class TransferStatsResponse(BaseModel):
    transfers_given: int
    transfers_received: int
    transfers_accepted: int
    transfers_rejected: int
    acceptance_rate: float
