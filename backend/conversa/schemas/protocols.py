import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Priority = Literal["low", "medium", "high", "urgent"]


class ProtocolCreate(BaseModel):
    contact_id: uuid.UUID
    subject: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    priority: Priority = "medium"
    conversation_id: uuid.UUID | None = None
    created_by_id: uuid.UUID | None = None
    assigned_to_id: uuid.UUID | None = None


class ProtocolResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    protocol_number: str
    contact_id: uuid.UUID
    conversation_id: uuid.UUID | None
    created_by_id: uuid.UUID | None
    assigned_to_id: uuid.UUID | None
    status: Literal["open", "closed"]
    priority: Priority
    subject: str
    description: str | None
    resolution_notes: str | None
    opened_at: datetime
    closed_at: datetime | None
    created_at: datetime


class ProtocolListResponse(BaseModel):
    items: list[ProtocolResponse]
    total: int
    page: int
    page_size: int


class ProtocolCloseRequest(BaseModel):
    resolution_notes: str | None = None
    closed_by_id: uuid.UUID | None = None


class ProtocolReopenRequest(BaseModel):
    reason: str | None = None
    reopened_by_id: uuid.UUID | None = None


class ProtocolStats(BaseModel):
    total: int
    by_status: dict[str, int]
    by_priority: dict[str, int]
    urgent_count: int
    unassigned_count: int


class ProtocolAssignRequest(BaseModel):
    user_id: uuid.UUID
    assigned_by_id: uuid.UUID | None = None
