"""WhatsApp service — outbound messaging via the WhatsApp Cloud API."""

import logging
import threading

from conversa.services.whatsapp.base import BaseMessagingProvider
from conversa.services.whatsapp.cloud_api import WhatsAppCloudProvider, format_phone_number
from conversa.services.whatsapp.exceptions import WhatsAppConfigurationError, WhatsAppError
from conversa.services.whatsapp.models import ProviderResult, TemplateComponent, WhatsAppConfig

logger = logging.getLogger(__name__)

__all__ = [
    "BaseMessagingProvider",
    "ProviderResult",
    "TemplateComponent",
    "WhatsAppCloudProvider",
    "WhatsAppConfig",
    "WhatsAppConfigurationError",
    "WhatsAppError",
    "format_phone_number",
    "get_whatsapp_provider",
    "reset_whatsapp_provider",
]

# Lazy-initialized provider (avoids import-time errors when creds missing)
_whatsapp_provider: WhatsAppCloudProvider | None = None
_whatsapp_lock = threading.Lock()


def get_whatsapp_provider() -> WhatsAppCloudProvider:
    """Get or create the WhatsApp provider singleton.

    Raises WhatsAppConfigurationError if credentials are not configured.
    """
    global _whatsapp_provider  # noqa: PLW0603
    if _whatsapp_provider is not None:
        return _whatsapp_provider

    with _whatsapp_lock:
        # Double-check after acquiring lock
        if _whatsapp_provider is not None:
            return _whatsapp_provider

        config = WhatsAppConfig.from_settings()
        if not config.is_configured:
            raise WhatsAppConfigurationError(
                "WhatsApp credentials not configured. "
                "Set WHATSAPP_ACCESS_TOKEN and WHATSAPP_PHONE_NUMBER_ID environment variables."
            )

        _whatsapp_provider = WhatsAppCloudProvider(config)
        logger.info("WhatsApp provider initialized (phone_number_id=%s)", config.phone_number_id)
        return _whatsapp_provider


def reset_whatsapp_provider() -> None:
    """Drop the cached provider so the next call rebuilds it from settings."""
    global _whatsapp_provider  # noqa: PLW0603
    with _whatsapp_lock:
        if _whatsapp_provider is not None:
            _whatsapp_provider.close()
        _whatsapp_provider = None
