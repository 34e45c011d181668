"""Audit trail — append-only records of blocking, transitions and rejections."""

import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from conversa.models.audit_log import AuditLog


def record_audit(
    db: Session,
    *,
    entity_type: str,
    entity_id: uuid.UUID,
    action: str,
    actor_id: uuid.UUID | None = None,
    reason: str | None = None,
    details: dict | None = None,
) -> AuditLog:
    """Add an audit entry to the caller's transaction (no commit)."""
    entry = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor_id=actor_id,
        reason=reason,
        details=details,
    )
    db.add(entry)
    return entry


def list_audit_logs(
    db: Session,
    *,
    entity_type: str | None = None,
    entity_id: uuid.UUID | None = None,
    action: str | None = None,
    limit: int = 100,
) -> list[AuditLog]:
    query = select(AuditLog)
    if entity_type is not None:
        query = query.where(AuditLog.entity_type == entity_type)
    if entity_id is not None:
        query = query.where(AuditLog.entity_id == entity_id)
    if action is not None:
        query = query.where(AuditLog.action == action)
    return list(
        db.execute(query.order_by(AuditLog.created_at.asc()).limit(limit)).scalars().all()
    )
