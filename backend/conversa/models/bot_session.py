import uuid
from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from conversa.core.database import Base


class BotSession(Base):
    """Automated-flow session for a contact.

    A session is open while ``is_completed`` is false and the last
    interaction is within BOT_SESSION_TIMEOUT_MINUTES. Completion happens
    on handoff to a human, on contact blocking, on conversation close or
    on expiry.
    """

    __tablename__ = "bot_sessions"
    __table_args__ = (
        Index("ix_bot_sessions_contact_id", "contact_id"),
        Index("ix_bot_sessions_conversation_id", "conversation_id"),
        Index("ix_bot_sessions_contact_open", "contact_id", "is_completed"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    contact_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("contacts.id"), nullable=False)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("conversations.id"), nullable=False
    )
    current_step: Mapped[str] = mapped_column(String(100), nullable=False, default="start", server_default="start")
    collected_data: Mapped[dict | None] = mapped_column(JSONB)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    is_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    requires_human: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    handoff_reason: Mapped[str | None] = mapped_column(Text)
    started_at: Mapped[datetime] = mapped_column(server_default=func.now())
    last_interaction_at: Mapped[datetime] = mapped_column(server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column()

    conversation: Mapped["Conversation"] = relationship()

    def __repr__(self) -> str:
        return f"<BotSession {self.id} step={self.current_step} completed={self.is_completed}>"
