"""Abstract messaging provider interface."""

from abc import ABC, abstractmethod

from conversa.services.whatsapp.models import ProviderResult


class BaseMessagingProvider(ABC):
    """Abstract base class for outbound messaging providers.

    Implementations report every failure through ``ProviderResult`` and
    never raise from these methods.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider identifier string."""

    @abstractmethod
    def send_text(self, phone: str, text: str) -> ProviderResult:
        """Send a free-form text message.

        Args:
            phone: Destination phone number (E.164 or digits).
            text: Message body.
        """

    @abstractmethod
    def send_template(
        self,
        phone: str,
        template_name: str,
        components: list[dict] | None = None,
        language: str | None = None,
    ) -> ProviderResult:
        """Send a pre-approved template message.

        Args:
            phone: Destination phone number (E.164 or digits).
            template_name: Name of the approved template.
            components: Template parameter components.
            language: Template language code; provider default when omitted.
        """

    @abstractmethod
    def mark_as_read(self, message_id: str) -> ProviderResult:
        """Mark an inbound message as read."""

    @abstractmethod
    def check_configuration(self) -> ProviderResult:
        """Verify credentials by fetching the sender's phone profile."""

    @abstractmethod
    def get_available_templates(self) -> ProviderResult:
        """List the templates approved for the business account."""
