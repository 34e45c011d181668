"""Domain events and their outbox.

``emit`` does not call listeners. It writes one durable ``event`` job per
subscribed listener into the caller's session, so the jobs commit or roll
back together with the state change that produced them. The worker pool
then runs each listener independently (see ``conversa.services.jobs``).
"""

import logging
import uuid
from enum import Enum

from sqlalchemy.orm import Session

from conversa.models.job import Job
from conversa.services.jobs import enqueue

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    CONVERSATION_CREATED = "conversation.created"
    CONVERSATION_ASSIGNED = "conversation.assigned"
    CONVERSATION_CLOSED = "conversation.closed"
    CONVERSATION_REOPENED = "conversation.reopened"
    CONVERSATION_HANDED_OFF = "conversation.handed_off"
    CONVERSATION_ARCHIVED = "conversation.archived"
    TRANSFER_REQUESTED = "conversation.transfer_requested"
    CONVERSATION_TRANSFERRED = "conversation.transferred"
    TRANSFER_REJECTED = "conversation.transfer_rejected"
    MESSAGE_RECEIVED = "message.received"


# Listener names resolve to functions in conversa.services.listeners
SUBSCRIBERS: dict[EventType, tuple[str, ...]] = {
    EventType.CONVERSATION_CREATED: (
        "send_welcome_message",
        "refresh_queue_positions",
        "log_conversation_event",
    ),
    EventType.CONVERSATION_ASSIGNED: (
        "notify_agent_assignment",
        "refresh_queue_positions",
        "log_conversation_event",
    ),
    EventType.CONVERSATION_CLOSED: ("refresh_queue_positions", "log_conversation_event"),
    EventType.CONVERSATION_REOPENED: ("refresh_queue_positions", "log_conversation_event"),
    EventType.CONVERSATION_HANDED_OFF: ("refresh_queue_positions", "log_conversation_event"),
    EventType.CONVERSATION_ARCHIVED: ("refresh_queue_positions", "log_conversation_event"),
    EventType.TRANSFER_REQUESTED: ("notify_transfer_request", "log_conversation_event"),
    EventType.CONVERSATION_TRANSFERRED: ("notify_agent_assignment", "log_conversation_event"),
    EventType.TRANSFER_REJECTED: ("notify_transfer_rejected", "log_conversation_event"),
    EventType.MESSAGE_RECEIVED: ("log_conversation_event",),
}


def emit(
    db: Session,
    event_type: EventType,
    conversation_id: uuid.UUID,
    **data,
) -> list[Job]:
    """Write one listener job per subscriber of ``event_type`` (no commit)."""
    payload = {
        "event": event_type.value,
        "conversation_id": str(conversation_id),
        **{key: str(value) if isinstance(value, uuid.UUID) else value for key, value in data.items()},
    }
    jobs = [
        enqueue(db, "event", payload, handler=listener)
        for listener in SUBSCRIBERS.get(event_type, ())
    ]
    logger.debug(
        "Event %s for conversation %s queued for %d listener(s)",
        event_type.value,
        conversation_id,
        len(jobs),
    )
    return jobs
