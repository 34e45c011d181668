"""Abstract channel engine interface."""

import uuid
from abc import ABC, abstractmethod

from sqlalchemy.orm import Session

from conversa.models.contact import Contact
from conversa.models.conversation import Conversation
from conversa.models.message import Message
from conversa.services.bot import BotClassifier, Classification
from conversa.services.whatsapp.models import ProviderResult


class ChannelEngine(ABC):
    """Channel-specific behaviour behind a common ``classify`` / ``send`` pair.

    Classification defaults to the shared bot classifier; engines override
    it when a channel routes differently.
    """

    def __init__(self, classifier: BotClassifier | None = None) -> None:
        self._classifier = classifier or BotClassifier()

    @property
    @abstractmethod
    def name(self) -> str:
        """Channel type this engine serves."""

    def classify(
        self,
        db: Session,
        message_body: str,
        contact: Contact,
        *,
        channel_id: uuid.UUID | None = None,
        active_conversation: Conversation | None = None,
    ) -> Classification:
        return self._classifier.classify(
            db,
            message_body,
            contact,
            channel_id=channel_id,
            active_conversation=active_conversation,
        )

    @abstractmethod
    def send(self, message: Message, contact: Contact) -> ProviderResult:
        """Deliver an outbound message. Never raises; failures are in the result."""
