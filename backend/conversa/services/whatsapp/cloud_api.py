"""WhatsApp Cloud API provider implementation (Graph API over httpx)."""

import logging
import re

import httpx

from conversa.services.whatsapp.base import BaseMessagingProvider
from conversa.services.whatsapp.models import ProviderResult, WhatsAppConfig

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")

PROFILE_FIELDS = "display_phone_number,verified_name,quality_rating"


def format_phone_number(phone: str, country_code: str = "55") -> str:
    """Digits-only recipient id; 11-digit national numbers get the country code."""
    digits = _NON_DIGITS.sub("", phone or "")
    if len(digits) == 11 and not digits.startswith(country_code):
        digits = country_code + digits
    return digits


class WhatsAppCloudProvider(BaseMessagingProvider):
    """Outbound messaging through the WhatsApp Cloud API."""

    def __init__(self, config: WhatsAppConfig, client: httpx.Client | None = None) -> None:
        self._config = config
        self._client = client or httpx.Client(timeout=config.timeout_seconds)

    @property
    def name(self) -> str:
        return "whatsapp"

    @property
    def config(self) -> WhatsAppConfig:
        return self._config

    def close(self) -> None:
        self._client.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._config.access_token}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, path: str, **kwargs) -> ProviderResult:
        if not self._config.is_configured:
            return ProviderResult(success=False, error="WhatsApp credentials not configured")

        url = f"{self._config.base_url}/{path.lstrip('/')}"
        try:
            response = self._client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("WhatsApp request %s %s failed: %s", method, path, exc)
            return ProviderResult(success=False, error=f"HTTP error: {exc}")

        try:
            data = response.json()
        except ValueError:
            data = {"raw": response.text}

        if response.is_success:
            return ProviderResult(success=True, status_code=response.status_code, data=data)

        error = data.get("error") if isinstance(data, dict) else None
        if not isinstance(error, dict):
            error = {}
        message = error.get("message") or f"HTTP {response.status_code}"
        logger.warning(
            "WhatsApp API error: status=%d code=%s message=%s",
            response.status_code,
            error.get("code"),
            message,
        )
        return ProviderResult(
            success=False,
            status_code=response.status_code,
            data=data,
            error=message,
            error_code=error.get("code"),
        )

    def _send(self, payload: dict) -> ProviderResult:
        body = {"messaging_product": "whatsapp", "recipient_type": "individual", **payload}
        result = self._request("POST", f"{self._config.phone_number_id}/messages", json=body)
        if result.success and result.data:
            messages = result.data.get("messages") or []
            if messages:
                result.message_id = messages[0].get("id")
            logger.info("WhatsApp message sent: id=%s to=%s", result.message_id, payload.get("to"))
        return result

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def send_text(self, phone: str, text: str) -> ProviderResult:
        return self._send(
            {
                "to": format_phone_number(phone),
                "type": "text",
                "text": {"preview_url": False, "body": text},
            }
        )

    def send_template(
        self,
        phone: str,
        template_name: str,
        components: list[dict] | None = None,
        language: str | None = None,
    ) -> ProviderResult:
        template: dict = {
            "name": template_name,
            "language": {"code": language or self._config.template_language},
        }
        if components:
            template["components"] = components
        return self._send(
            {
                "to": format_phone_number(phone),
                "type": "template",
                "template": template,
            }
        )

    def mark_as_read(self, message_id: str) -> ProviderResult:
        return self._request(
            "POST",
            f"{self._config.phone_number_id}/messages",
            json={"messaging_product": "whatsapp", "status": "read", "message_id": message_id},
        )

    def check_configuration(self) -> ProviderResult:
        return self._request(
            "GET",
            self._config.phone_number_id,
            params={"fields": PROFILE_FIELDS},
        )

    def get_available_templates(self) -> ProviderResult:
        if not self._config.business_account_id:
            return ProviderResult(success=False, error="WHATSAPP_BUSINESS_ACCOUNT_ID not configured")
        return self._request("GET", f"{self._config.business_account_id}/message_templates")
