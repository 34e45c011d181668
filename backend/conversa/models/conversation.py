import uuid
from datetime import datetime

from sqlalchemy import Boolean, Enum, ForeignKey, Index, Integer, String, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from conversa.core.database import Base

CONVERSATION_STATUSES = ("open", "assigned", "closed", "archived")
ACTIVE_STATUSES = ("open", "assigned")
PRIORITIES = ("low", "medium", "high", "urgent")

# Queue ordering weight (higher = served first)
PRIORITY_WEIGHTS: dict[str, int] = {"low": 1, "medium": 2, "high": 3, "urgent": 4}

_ACTIVE_PREDICATE = text("status IN ('open', 'assigned')")


class Conversation(Base):
    """One engagement thread between a contact and the organization over a channel.

    Status transitions: open -> assigned -> closed -> (reopen) -> open,
    and open|assigned -> archived (terminal, scheduler only).
    At most one active (open/assigned) conversation exists per
    (contact, channel); the partial unique index enforces it.
    """

    __tablename__ = "conversations"
    __table_args__ = (
        Index("ix_conversations_contact_id", "contact_id"),
        Index("ix_conversations_channel_id", "channel_id"),
        Index("ix_conversations_assigned_agent_id", "assigned_agent_id"),
        Index("ix_conversations_status", "status"),
        Index("ix_conversations_priority", "priority"),
        Index("ix_conversations_last_message_at", "last_message_at"),
        Index(
            "uq_conversations_active_contact_channel",
            "contact_id",
            "channel_id",
            unique=True,
            postgresql_where=_ACTIVE_PREDICATE,
            sqlite_where=_ACTIVE_PREDICATE,
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    contact_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("contacts.id"), nullable=False)
    channel_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("channels.id"), nullable=False)
    category_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("categories.id"))
    assigned_agent_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"))
    status: Mapped[str] = mapped_column(
        Enum(*CONVERSATION_STATUSES, name="conversation_status"),
        nullable=False,
        server_default="open",
        default="open",
    )
    priority: Mapped[str] = mapped_column(
        Enum(*PRIORITIES, name="conversation_priority"),
        nullable=False,
        server_default="medium",
        default="medium",
    )
    subject: Mapped[str | None] = mapped_column(String(255))
    is_bot_handled: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="false", default=False)
    queue_position: Mapped[int | None] = mapped_column(Integer)
    last_message_at: Mapped[datetime | None] = mapped_column()
    assigned_at: Mapped[datetime | None] = mapped_column()
    closed_by_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"))
    closed_at: Mapped[datetime | None] = mapped_column()
    reopened_at: Mapped[datetime | None] = mapped_column()
    deleted_at: Mapped[datetime | None] = mapped_column()
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(server_default=func.now(), onupdate=func.now())

    contact: Mapped["Contact"] = relationship(back_populates="conversations")
    channel: Mapped["Channel"] = relationship()
    category: Mapped["Category"] = relationship()
    assigned_agent: Mapped["User"] = relationship(foreign_keys=[assigned_agent_id])
    messages: Mapped[list["Message"]] = relationship(
        back_populates="conversation",
        order_by="Message.created_at",
        cascade="all, delete-orphan",
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def __repr__(self) -> str:
        return f"<Conversation {self.id} status={self.status}>"
