import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict

NotificationKind = Literal["conversation_assigned", "transfer_requested", "transfer_rejected"]


class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID
    conversation_id: uuid.UUID
    kind: NotificationKind
    type: Literal["info", "warning", "success", "error"]
    title: str
    message: str
    is_read: bool
    read_at: datetime | None
    created_at: datetime


class InboxResponse(BaseModel):
    """One page of an agent's inbox plus the agent's overall unread count."""

    items: list[NotificationResponse]
    total: int
    unread: int
    page: int
    page_size: int


class MarkReadResponse(BaseModel):
    updated: int
