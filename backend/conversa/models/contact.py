import uuid
from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, Index, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from conversa.core.database import Base


class Contact(Base):
    """A customer reachable on a messaging channel.

    ``phone`` holds the normalised E.164 address and is unique; the
    identity resolver relies on that constraint for atomic find-or-create.
    Contacts are never hard-deleted: ``deleted_at`` marks removal.
    """

    __tablename__ = "contacts"
    __table_args__ = (
        Index("ix_contacts_is_blocked", "is_blocked"),
        Index("ix_contacts_deleted_at", "deleted_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    phone: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(String(255))
    email: Mapped[str | None] = mapped_column(String(255))
    external_id: Mapped[str | None] = mapped_column(String(100), unique=True)
    is_blocked: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false", nullable=False)
    blocked_reason: Mapped[str | None] = mapped_column(Text)
    blocked_by_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"))
    blocked_at: Mapped[datetime | None] = mapped_column()
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB)
    deleted_at: Mapped[datetime | None] = mapped_column()
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(server_default=func.now(), onupdate=func.now())

    conversations: Mapped[list["Conversation"]] = relationship(back_populates="contact")
    protocols: Mapped[list["Protocol"]] = relationship(back_populates="contact")

    def __repr__(self) -> str:
        return f"<Contact {self.phone}>"
