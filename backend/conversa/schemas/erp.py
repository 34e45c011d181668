"""Pydantic schemas for ERP identity sync."""

from pydantic import BaseModel, ConfigDict, Field


class ErpContactItem(BaseModel):
    """One business partner from the ERP batch."""

    model_config = ConfigDict(coerce_numbers_to_str=True)

    businesspartner_id: str = Field(..., min_length=1, max_length=100)
    name: str | None = Field(None, max_length=255)
    email: str | None = Field(None, max_length=255)
    phone: str | None = None


class ErpUserItem(BaseModel):
    """One ERP user (agent)."""

    model_config = ConfigDict(coerce_numbers_to_str=True)

    erp_user_id: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=255)
    email: str = Field(..., min_length=3, max_length=255)
    is_active: bool = True


class ErpSyncResult(BaseModel):
    """Batch result: per-item details plus success/error counts."""

    success: int = 0
    errors: int = 0
    dry_run: bool = False
    details: list[dict] = Field(default_factory=list)
