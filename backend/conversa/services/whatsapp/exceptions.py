"""WhatsApp provider exceptions."""

from conversa.core.exceptions import ExternalServiceError


class WhatsAppError(ExternalServiceError):
    """Raised when a WhatsApp Cloud API operation cannot be completed."""

    def __init__(self, message: str, detail: object = None) -> None:
        super().__init__("whatsapp", message, detail)


class WhatsAppConfigurationError(WhatsAppError):
    """Raised when WhatsApp credentials are missing or invalid."""
