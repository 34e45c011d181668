"""WhatsApp channel engine."""

import logging

from conversa.models.contact import Contact
from conversa.models.message import Message
from conversa.services.bot import BotClassifier
from conversa.services.channels.base import ChannelEngine
from conversa.services.whatsapp import (
    BaseMessagingProvider,
    ProviderResult,
    WhatsAppError,
    get_whatsapp_provider,
)

logger = logging.getLogger(__name__)


class WhatsAppEngine(ChannelEngine):
    """Sends through the WhatsApp Cloud API provider.

    Template messages carry the template name in ``content`` and the
    components/language in ``media``.
    """

    def __init__(
        self,
        provider: BaseMessagingProvider | None = None,
        classifier: BotClassifier | None = None,
    ) -> None:
        super().__init__(classifier)
        self._provider = provider

    @property
    def name(self) -> str:
        return "whatsapp"

    def _get_provider(self) -> BaseMessagingProvider:
        if self._provider is None:
            self._provider = get_whatsapp_provider()
        return self._provider

    def send(self, message: Message, contact: Contact) -> ProviderResult:
        try:
            provider = self._get_provider()
        except WhatsAppError as exc:
            logger.warning("WhatsApp provider unavailable for message %s: %s", message.id, exc)
            return ProviderResult(success=False, error=str(exc))

        if message.type == "template":
            options = message.media or {}
            return provider.send_template(
                contact.phone,
                message.content,
                components=options.get("components"),
                language=options.get("language"),
            )
        return provider.send_text(contact.phone, message.content)
