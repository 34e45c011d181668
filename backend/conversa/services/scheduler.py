"""Conversation scheduler — periodic queue and housekeeping policies."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from conversa.core.config import settings
from conversa.core.database import SessionLocal
from conversa.core.exceptions import ConflictError
from conversa.models.conversation import ACTIVE_STATUSES, Conversation
from conversa.services.audit import record_audit
from conversa.services.bot import expire_idle_sessions
from conversa.services.conversations import archive_conversation, refresh_queue_positions
from conversa.services.jobs import requeue_stale_jobs

logger = logging.getLogger(__name__)


def escalate_waiting_conversations(db: Session) -> int:
    """Raise to ``urgent`` the queued conversations waiting longer than PRIORITY_ESCALATION_MINUTES.

    Returns the number of conversations escalated.
    """
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=settings.PRIORITY_ESCALATION_MINUTES)
    waiting = (
        db.execute(
            select(Conversation).where(
                Conversation.status == "open",
                Conversation.assigned_agent_id.is_(None),
                Conversation.is_bot_handled.is_(False),
                Conversation.priority != "urgent",
                Conversation.created_at <= cutoff,
            )
        )
        .scalars()
        .all()
    )
    if not waiting:
        return 0

    for conversation in waiting:
        record_audit(
            db,
            entity_type="conversation",
            entity_id=conversation.id,
            action="priority_escalated",
            details={"from": conversation.priority, "to": "urgent"},
        )
        conversation.priority = "urgent"
        logger.info("Conversation %s escalated to urgent", conversation.id)
    db.commit()
    refresh_queue_positions(db)
    return len(waiting)


def archive_inactive_conversations(db: Session) -> int:
    """Archive active conversations idle for ARCHIVE_AFTER_DAYS.

    Returns the number of conversations archived.
    """
    cutoff = datetime.now(timezone.utc) - timedelta(days=settings.ARCHIVE_AFTER_DAYS)
    idle_ids = (
        db.execute(
            select(Conversation.id).where(
                Conversation.status.in_(ACTIVE_STATUSES),
                func.coalesce(Conversation.last_message_at, Conversation.created_at) < cutoff,
            )
        )
        .scalars()
        .all()
    )

    archived = 0
    for conversation_id in idle_ids:
        try:
            archive_conversation(db, conversation_id, reason="inactive")
        except ConflictError:
            # Closed or archived concurrently
            db.rollback()
            continue
        archived += 1
    return archived


def run_scheduled_policies(db: Session) -> dict[str, int]:
    """Run every periodic policy once. Returns counts per policy."""
    return {
        "escalated": escalate_waiting_conversations(db),
        "archived": archive_inactive_conversations(db),
        "expired_bot_sessions": expire_idle_sessions(db),
        "requeued_jobs": requeue_stale_jobs(db),
    }


async def scheduler_loop() -> None:
    """Background loop that applies the policies every SCHEDULER_POLL_INTERVAL_SECONDS."""
    interval = settings.SCHEDULER_POLL_INTERVAL_SECONDS
    logger.info("Conversation scheduler started (poll interval: %ds)", interval)

    while True:
        try:
            db = SessionLocal()
            try:
                counts = await asyncio.to_thread(run_scheduled_policies, db)
                if any(counts.values()):
                    logger.info("Scheduler run: %s", counts)
            finally:
                db.close()
        except Exception:
            logger.exception("Error in scheduler loop")

        await asyncio.sleep(interval)
