"""WhatsApp provider models."""

from typing import Any

from pydantic import BaseModel, Field


class WhatsAppConfig(BaseModel):
    """Connection settings for the WhatsApp Cloud API."""

    api_url: str = "https://graph.facebook.com"
    api_version: str = "v20.0"
    access_token: str = ""
    phone_number_id: str = ""
    business_account_id: str = ""
    template_language: str = "pt_BR"
    timeout_seconds: float = 30.0

    @property
    def is_configured(self) -> bool:
        return bool(self.access_token and self.phone_number_id)

    @property
    def base_url(self) -> str:
        return f"{self.api_url.rstrip('/')}/{self.api_version}"

    @classmethod
    def from_settings(cls) -> "WhatsAppConfig":
        from conversa.core.config import settings

        return cls(
            api_url=settings.WHATSAPP_API_URL,
            api_version=settings.WHATSAPP_API_VERSION,
            access_token=settings.WHATSAPP_ACCESS_TOKEN,
            phone_number_id=settings.WHATSAPP_PHONE_NUMBER_ID,
            business_account_id=settings.WHATSAPP_BUSINESS_ACCOUNT_ID,
            template_language=settings.WHATSAPP_TEMPLATE_LANGUAGE,
            timeout_seconds=settings.WHATSAPP_HTTP_TIMEOUT_SECONDS,
        )


class ProviderResult(BaseModel):
    """Outcome of a provider call. Failures are reported, never raised."""

    success: bool
    status_code: int | None = None
    message_id: str | None = None
    data: dict[str, Any] | None = None
    error: str | None = None
    error_code: int | str | None = None


class TemplateComponent(BaseModel):
    type: str = Field(..., description="header, body or button")
    parameters: list[dict[str, Any]] = Field(default_factory=list)
    sub_type: str | None = None
    index: str | None = None
