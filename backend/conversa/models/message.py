import uuid
from datetime import datetime

from sqlalchemy import Boolean, Enum, ForeignKey, Index, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from conversa.core.database import Base

MESSAGE_TYPES = ("text", "template", "media", "location", "contact", "system")
MESSAGE_STATUSES = ("received", "pending", "sent", "delivered", "read", "failed")


class Message(Base):
    """Individual message — either inbound (received) or outbound (sent).

    ``provider_message_id`` is unique: replaying a provider event must find
    the existing row instead of inserting a duplicate. Delivery status is
    the only thing that changes after creation.
    """

    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_conversation_id", "conversation_id"),
        Index("ix_messages_direction", "direction"),
        Index("ix_messages_created_at", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("conversations.id"), nullable=False
    )
    direction: Mapped[str] = mapped_column(
        Enum("inbound", "outbound", name="message_direction"),
        nullable=False,
    )
    type: Mapped[str] = mapped_column(
        Enum(*MESSAGE_TYPES, name="message_type"),
        nullable=False,
        server_default="text",
        default="text",
    )
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    media: Mapped[dict | None] = mapped_column(JSONB)
    provider_message_id: Mapped[str | None] = mapped_column(String(128), unique=True)
    status: Mapped[str] = mapped_column(
        Enum(*MESSAGE_STATUSES, name="message_status"),
        nullable=False,
        server_default="pending",
        default="pending",
    )
    is_delivered: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="false", default=False)
    delivered_at: Mapped[datetime | None] = mapped_column()
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="false", default=False)
    read_at: Mapped[datetime | None] = mapped_column()
    error_message: Mapped[str | None] = mapped_column(Text)
    sender_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"))
    deleted_at: Mapped[datetime | None] = mapped_column()
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())

    conversation: Mapped["Conversation"] = relationship(back_populates="messages")

    def __repr__(self) -> str:
        return f"<Message {self.direction} status={self.status}>"
