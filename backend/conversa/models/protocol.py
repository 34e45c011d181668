import uuid
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Index, String, Text, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from conversa.core.database import Base
from conversa.models.conversation import PRIORITIES


class Protocol(Base):
    """Support ticket identified by a human-readable number (YYYYMMDD + 6-digit sequence).

    Independent of conversation status: open -> closed -> (reopen) -> open.
    """

    __tablename__ = "protocols"
    __table_args__ = (
        Index("ix_protocols_contact_id", "contact_id"),
        Index("ix_protocols_status", "status"),
        Index("ix_protocols_assigned_to_id", "assigned_to_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    protocol_number: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    contact_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("contacts.id"), nullable=False)
    conversation_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("conversations.id"))
    created_by_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"))
    assigned_to_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"))
    status: Mapped[str] = mapped_column(
        Enum("open", "closed", name="protocol_status"),
        nullable=False,
        server_default="open",
        default="open",
    )
    priority: Mapped[str] = mapped_column(
        Enum(*PRIORITIES, name="protocol_priority"),
        nullable=False,
        server_default="medium",
        default="medium",
    )
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    resolution_notes: Mapped[str | None] = mapped_column(Text)
    opened_at: Mapped[datetime] = mapped_column(server_default=func.now())
    closed_at: Mapped[datetime | None] = mapped_column()
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(server_default=func.now(), onupdate=func.now())

    contact: Mapped["Contact"] = relationship(back_populates="protocols")

    def __repr__(self) -> str:
        return f"<Protocol {self.protocol_number} status={self.status}>"
