import uuid
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Index, Text, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from conversa.core.database import Base

TRANSFER_REASONS = ("workload", "expertise", "unavailable", "other")
TRANSFER_STATUSES = ("pending", "accepted", "rejected", "cancelled")

_PENDING_PREDICATE = text("status = 'pending'")


class ConversationTransfer(Base):
    """Hand-over of an assigned conversation from one agent to another.

    pending -> accepted | rejected | cancelled. Only one transfer per
    conversation may be pending at a time; the partial unique index
    enforces it.
    """

    __tablename__ = "conversation_transfers"
    __table_args__ = (
        Index("ix_conversation_transfers_conversation_id", "conversation_id"),
        Index("ix_conversation_transfers_from_user_id", "from_user_id"),
        Index("ix_conversation_transfers_to_user_id", "to_user_id"),
        Index("ix_conversation_transfers_transferred_at", "transferred_at"),
        Index(
            "uq_conversation_transfers_pending",
            "conversation_id",
            unique=True,
            postgresql_where=_PENDING_PREDICATE,
            sqlite_where=_PENDING_PREDICATE,
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("conversations.id"), nullable=False
    )
    from_user_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"))
    to_user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    requested_by_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"))
    reason: Mapped[str] = mapped_column(
        Enum(*TRANSFER_REASONS, name="transfer_reason"),
        nullable=False,
        server_default="other",
        default="other",
    )
    notes: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(
        Enum(*TRANSFER_STATUSES, name="transfer_status"),
        nullable=False,
        server_default="pending",
        default="pending",
    )
    transferred_at: Mapped[datetime] = mapped_column(server_default=func.now())
    responded_at: Mapped[datetime | None] = mapped_column()
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(server_default=func.now(), onupdate=func.now())

    conversation: Mapped["Conversation"] = relationship()

    def __repr__(self) -> str:
        return f"<ConversationTransfer {self.conversation_id} {self.from_user_id}->{self.to_user_id} {self.status}>"
