import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ContactCreate(BaseModel):
    phone: str = Field(..., min_length=1, max_length=30)
    name: str | None = Field(None, max_length=255)
    email: str | None = Field(None, max_length=255)
    external_id: str | None = Field(None, max_length=100)
    metadata: dict[str, Any] | None = None


class ContactUpdate(BaseModel):
    phone: str | None = Field(None, min_length=1, max_length=30)
    name: str | None = Field(None, max_length=255)
    email: str | None = Field(None, max_length=255)
    external_id: str | None = Field(None, max_length=100)
    metadata: dict[str, Any] | None = None


class ContactResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    phone: str
    name: str | None
    email: str | None
    external_id: str | None
    is_blocked: bool
    blocked_reason: str | None
    blocked_by_id: uuid.UUID | None
    blocked_at: datetime | None
    metadata: dict[str, Any] | None = Field(None, validation_alias="metadata_")
    created_at: datetime
    updated_at: datetime


class ContactListResponse(BaseModel):
    items: list[ContactResponse]
    total: int
    page: int
    page_size: int


class BlockRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    blocked_by_id: uuid.UUID | None = None


class UnblockRequest(BaseModel):
    unblocked_by_id: uuid.UUID | None = None
    reason: str | None = None
