import uuid
from datetime import datetime

from sqlalchemy import Boolean, Enum, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from conversa.core.database import Base


class AutoResponseRule(Base):
    """Keyword-based bot rule for inbound messages.

    ``keyword`` rules start or continue a bot flow when an inbound message
    matches (exact or contains); the ``welcome`` rule is sent when a new
    human conversation opens. Rules are evaluated in priority order
    (lower = higher priority). ``channel_id`` scopes a rule to one channel.
    """

    __tablename__ = "auto_response_rules"
    __table_args__ = (
        Index("ix_auto_response_rules_active", "is_active"),
        Index("ix_auto_response_rules_trigger", "trigger_type", "is_active"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    channel_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("channels.id"))
    keyword: Mapped[str | None] = mapped_column(String(255))
    match_type: Mapped[str] = mapped_column(
        Enum("exact", "contains", name="auto_response_match_type"),
        nullable=False,
        server_default="contains",
        default="contains",
    )
    trigger_type: Mapped[str] = mapped_column(
        Enum("keyword", "welcome", name="auto_response_trigger_type"),
        nullable=False,
        server_default="keyword",
        default="keyword",
    )
    response_template: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="true", default=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0", default=0)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())

    def __repr__(self) -> str:
        return f"<AutoResponseRule keyword='{self.keyword}' trigger={self.trigger_type} active={self.is_active}>"
