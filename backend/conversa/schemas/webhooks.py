"""Pydantic schemas for webhook acknowledgements."""

from typing import Literal

from pydantic import BaseModel


class WebhookAck(BaseModel):
    """POST /api/v1/webhooks/whatsapp response."""

    status: Literal["received", "accepted_with_errors"]
    enqueued: int = 0
