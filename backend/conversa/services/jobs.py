"""Durable job queue backed by the ``jobs`` table.

Webhook deliveries, outbound sends and event listeners all run as jobs.
A job is claimed by exactly one worker (``FOR UPDATE SKIP LOCKED`` on
PostgreSQL plus a guarded status update), retried with backoff on
failure, and dead-lettered once ``max_attempts`` is exhausted.
"""

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from conversa.core.config import settings
from conversa.core.exceptions import ServiceError
from conversa.models.job import Job

logger = logging.getLogger(__name__)

JOB_KINDS = ("ingest_message", "message_status", "send_message", "event")

JobHandler = Callable[[Session, dict], object]


class UnknownJobHandler(ServiceError):
    """Raised when a job names a kind or listener nobody handles."""


# ---------------------------------------------------------------------------
# Producing
# ---------------------------------------------------------------------------


def enqueue(
    db: Session,
    kind: str,
    payload: dict,
    *,
    handler: str | None = None,
    delay_seconds: float = 0,
    max_attempts: int | None = None,
) -> Job:
    """Add a job to the caller's transaction (no commit)."""
    if kind not in JOB_KINDS:
        raise UnknownJobHandler(f"Unknown job kind '{kind}'")
    job = Job(
        kind=kind,
        handler=handler,
        payload=payload,
        status="pending",
        attempts=0,
        max_attempts=max_attempts or settings.JOB_MAX_ATTEMPTS,
        available_at=datetime.now(timezone.utc) + timedelta(seconds=delay_seconds),
    )
    db.add(job)
    return job


# ---------------------------------------------------------------------------
# Consuming
# ---------------------------------------------------------------------------


def _resolve_handler(job: Job) -> JobHandler:
    # Imported lazily: these modules enqueue jobs themselves
    from conversa.services import ingestion, listeners, messages

    if job.kind == "event":
        listener = listeners.LISTENERS.get(job.handler or "")
        if listener is None:
            raise UnknownJobHandler(f"Unknown listener '{job.handler}'")
        return listener

    handlers: dict[str, JobHandler] = {
        "ingest_message": ingestion.process_ingest_job,
        "message_status": messages.process_status_job,
        "send_message": messages.process_send_job,
    }
    try:
        return handlers[job.kind]
    except KeyError:
        raise UnknownJobHandler(f"Unknown job kind '{job.kind}'") from None


def claim_next_job(db: Session) -> Job | None:
    """Claim the oldest due pending job, or return None when the queue is empty.

    The claim commits immediately so other workers see the job as running.
    """
    now = datetime.now(timezone.utc)
    query = (
        select(Job)
        .where(Job.status == "pending", Job.available_at <= now)
        .order_by(Job.available_at.asc(), Job.created_at.asc())
        .limit(1)
    )
    if db.get_bind().dialect.name == "postgresql":
        query = query.with_for_update(skip_locked=True)

    job = db.execute(query).scalar_one_or_none()
    if job is None:
        db.rollback()
        return None

    result = db.execute(
        update(Job)
        .where(Job.id == job.id, Job.status == "pending")
        .values(status="running", locked_at=now, attempts=Job.attempts + 1)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount != 1:
        # Another worker won the race
        return None
    db.refresh(job)
    return job


def _backoff_seconds(attempts: int) -> int:
    schedule = settings.JOB_RETRY_BACKOFF_SECONDS
    if not schedule:
        return 0
    return schedule[min(attempts - 1, len(schedule) - 1)]


def _record_failure(db: Session, job_id: uuid.UUID, exc: Exception) -> None:
    job = db.get(Job, job_id)
    if job is None:
        return
    job.last_error = f"{type(exc).__name__}: {exc}"
    job.locked_at = None

    if job.attempts >= job.max_attempts:
        job.status = "dead"
        job.finished_at = datetime.now(timezone.utc)
        db.commit()
        payload = job.payload or {}
        logger.error(
            "Job dead-lettered: id=%s kind=%s handler=%s conversation=%s event=%s attempts=%d error=%s",
            job.id,
            job.kind,
            job.handler,
            payload.get("conversation_id"),
            payload.get("event"),
            job.attempts,
            job.last_error,
        )
        return

    delay = _backoff_seconds(job.attempts)
    job.status = "pending"
    job.available_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
    db.commit()
    logger.warning(
        "Job %s (%s/%s) failed (attempt %d/%d), retrying in %ds: %s",
        job.id,
        job.kind,
        job.handler,
        job.attempts,
        job.max_attempts,
        delay,
        exc,
    )


def execute_job(db: Session, job: Job) -> bool:
    """Run a claimed job. Returns True on success.

    Handler failures never propagate: the job is retried or dead-lettered.
    """
    job_id, kind, handler_name = job.id, job.kind, job.handler
    try:
        handler = _resolve_handler(job)
        handler(db, dict(job.payload or {}))
        db.commit()
    except Exception as exc:
        db.rollback()
        logger.exception("Job %s (%s/%s) raised", job_id, kind, handler_name)
        _record_failure(db, job_id, exc)
        return False

    db.execute(
        update(Job)
        .where(Job.id == job_id)
        .values(status="done", finished_at=datetime.now(timezone.utc), locked_at=None, last_error=None)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return True


def run_next_job(db_factory) -> bool:
    """Claim and run one job in a fresh session. Returns False when idle.

    Args:
        db_factory: A callable that returns a new DB session (e.g., SessionLocal).
    """
    db = db_factory()
    try:
        job = claim_next_job(db)
        if job is None:
            return False
        execute_job(db, job)
        return True
    finally:
        db.close()


def drain(db_factory, limit: int | None = None) -> int:
    """Run due jobs until the queue is idle (or ``limit`` jobs ran)."""
    processed = 0
    while limit is None or processed < limit:
        if not run_next_job(db_factory):
            break
        processed += 1
    return processed


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


def requeue_stale_jobs(db: Session) -> int:
    """Return jobs stuck in ``running`` past JOB_TIMEOUT_SECONDS to the queue.

    Jobs that already used all their attempts are dead-lettered instead.
    Returns the number of jobs requeued.
    """
    now = datetime.now(timezone.utc)
    cutoff = now - timedelta(seconds=settings.JOB_TIMEOUT_SECONDS)
    stale = Job.status == "running", Job.locked_at < cutoff

    dead = db.execute(
        update(Job)
        .where(*stale, Job.attempts >= Job.max_attempts)
        .values(status="dead", finished_at=now, locked_at=None, last_error="timed out")
        .execution_options(synchronize_session=False)
    ).rowcount
    requeued = db.execute(
        update(Job)
        .where(*stale, Job.attempts < Job.max_attempts)
        .values(status="pending", available_at=now, locked_at=None, last_error="timed out")
        .execution_options(synchronize_session=False)
    ).rowcount
    db.commit()

    if dead:
        logger.error("Dead-lettered %d job(s) that timed out on their last attempt", dead)
    if requeued:
        logger.warning("Requeued %d timed-out job(s)", requeued)
    return requeued


def count_jobs_by_status(db: Session) -> dict[str, int]:
    rows = db.execute(select(Job.status, func.count()).group_by(Job.status)).all()
    return {status: count for status, count in rows}
