import uuid
from datetime import datetime

from sqlalchemy import Enum, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from conversa.core.database import Base


class Job(Base):
    """Durable work-queue row.

    Holds webhook ingestion tasks, outbound sends and event-listener
    invocations (the event outbox). Status transitions:
    pending -> running -> done, running -> pending (retry / timeout),
    running -> dead (retries exhausted).
    """

    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_status_available_at", "status", "available_at"),
        Index("ix_jobs_kind", "kind"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    handler: Mapped[str | None] = mapped_column(String(100))
    payload: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(
        Enum("pending", "running", "done", "dead", name="job_status"),
        nullable=False,
        server_default="pending",
        default="pending",
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0", default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, server_default="5", default=5)
    available_at: Mapped[datetime] = mapped_column(server_default=func.now())
    locked_at: Mapped[datetime | None] = mapped_column()
    finished_at: Mapped[datetime | None] = mapped_column()
    last_error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())

    def __repr__(self) -> str:
        return f"<Job {self.kind}:{self.handler} status={self.status} attempts={self.attempts}>"
