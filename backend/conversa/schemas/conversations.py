"""Pydantic schemas for conversation and message endpoints."""

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Priority = Literal["low", "medium", "high", "urgent"]
ConversationStatus = Literal["open", "assigned", "closed", "archived"]


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


class ConversationCreate(BaseModel):
    """POST /api/v1/conversations request body."""

    contact_id: uuid.UUID
    channel_id: uuid.UUID
    category_id: uuid.UUID | None = None
    subject: str | None = Field(None, max_length=255)
    priority: Priority = "medium"
    created_by_id: uuid.UUID | None = None


class ConversationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    contact_id: uuid.UUID
    channel_id: uuid.UUID
    category_id: uuid.UUID | None
    assigned_agent_id: uuid.UUID | None
    status: ConversationStatus
    priority: Priority
    subject: str | None
    is_bot_handled: bool
    queue_position: int | None
    last_message_at: datetime | None
    assigned_at: datetime | None
    closed_by_id: uuid.UUID | None
    closed_at: datetime | None
    reopened_at: datetime | None
    created_at: datetime
    updated_at: datetime


class ConversationListResponse(BaseModel):
    items: list[ConversationResponse]
    total: int
    page: int
    page_size: int


class AssignRequest(BaseModel):
    agent_id: uuid.UUID
    assigned_by_id: uuid.UUID | None = None


class CloseRequest(BaseModel):
    closed_by_id: uuid.UUID | None = None
    reason: str | None = None


class ReopenRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    reopened_by_id: uuid.UUID | None = None


class PriorityRequest(BaseModel):
    priority: Priority
    changed_by_id: uuid.UUID | None = None


class BulkAssignRequest(BaseModel):
    conversation_ids: list[uuid.UUID] = Field(..., min_length=1)
    agent_id: uuid.UUID
    assigned_by_id: uuid.UUID | None = None


class BulkCloseRequest(BaseModel):
    conversation_ids: list[uuid.UUID] = Field(..., min_length=1)
    closed_by_id: uuid.UUID | None = None
    reason: str | None = None


class BulkFailure(BaseModel):
    id: uuid.UUID
    error: str
    detail: str
    current_status: str | None = None


class BulkResultResponse(BaseModel):
    succeeded: list[uuid.UUID]
    failed: list[BulkFailure]


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class MessageSendRequest(BaseModel):
    """POST /api/v1/conversations/{id}/messages request body."""

    content: str = Field(..., min_length=1, max_length=4096)
    type: Literal["text", "template"] = "text"
    media: dict[str, Any] | None = Field(
        None, description="For templates: {'components': [...], 'language': 'pt_BR'}"
    )
    sender_id: uuid.UUID | None = None


class MessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    conversation_id: uuid.UUID
    direction: str
    type: str
    content: str
    media: dict[str, Any] | None
    provider_message_id: str | None
    status: str
    is_delivered: bool
    delivered_at: datetime | None
    is_read: bool
    read_at: datetime | None
    error_message: str | None
    sender_id: uuid.UUID | None
    created_at: datetime


class MessageListResponse(BaseModel):
    items: list[MessageResponse]
    total: int
    page: int
    page_size: int


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


class DashboardStatsResponse(BaseModel):
    open: int
    assigned: int
    closed: int
    archived: int
    total: int
    today: int
    queued: int
    bot_handled: int


class AgentStatsResponse(BaseModel):
    assigned: int
    closed_today: int
    total_handled: int
    pending_transfers: int
