"""Tests for the conversation state machine, agent queue and conversation API."""

import uuid
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select

from conversa.core.exceptions import ConflictError, NotFoundError, ValidationError
from conversa.models import AuditLog, BotSession, Contact, Conversation
from conversa.services import conversations as conversation_service
from conversa.services.conversations import (
    VALID_TRANSITIONS,
    archive_conversation,
    assign_conversation,
    bulk_assign,
    bulk_close,
    close_conversation,
    create_conversation,
    find_or_create_active_conversation,
    next_in_queue,
    refresh_queue_positions,
    reopen_conversation,
    set_priority,
)

BASE_URL = "/api/v1/conversations"


def _contact(db, phone: str) -> Contact:
    contact = Contact(phone=phone)
    db.add(contact)
    db.commit()
    db.refresh(contact)
    return contact


def _conversation(db, contact, channel, **overrides) -> Conversation:
    defaults = {"contact_id": contact.id, "channel_id": channel.id, "status": "open", "priority": "medium"}
    defaults.update(overrides)
    conversation = Conversation(**defaults)
    db.add(conversation)
    db.commit()
    db.refresh(conversation)
    return conversation


def _event_jobs(jobs, event: str):
    return [job for job in jobs(kind="event") if job.payload["event"] == event]


# ===========================================================================
# Creation
# ===========================================================================


class TestCreateConversation:
    def test_create(self, db, contact, channel, jobs):
        conversation = create_conversation(db, contact_id=contact.id, channel_id=channel.id, priority="high")
        assert conversation.status == "open"
        assert conversation.priority == "high"
        assert conversation.assigned_agent_id is None

        created = _event_jobs(jobs, "conversation.created")
        assert {job.handler for job in created} == {
            "send_welcome_message",
            "refresh_queue_positions",
            "log_conversation_event",
        }

    def test_second_active_conversation_conflicts(self, db, contact, channel):
        first = create_conversation(db, contact_id=contact.id, channel_id=channel.id)
        with pytest.raises(ConflictError) as exc_info:
            create_conversation(db, contact_id=contact.id, channel_id=channel.id)
        assert exc_info.value.current_status == "open"
        assert db.execute(select(Conversation)).scalars().all() == [first]

    def test_new_conversation_allowed_after_close(self, db, contact, channel):
        first = create_conversation(db, contact_id=contact.id, channel_id=channel.id)
        close_conversation(db, first.id)
        second = create_conversation(db, contact_id=contact.id, channel_id=channel.id)
        assert second.id != first.id

    def test_blocked_contact_rejected(self, db, contact, channel):
        contact.is_blocked = True
        db.commit()
        with pytest.raises(ValidationError):
            create_conversation(db, contact_id=contact.id, channel_id=channel.id)

    def test_unknown_contact(self, db, channel):
        with pytest.raises(NotFoundError):
            create_conversation(db, contact_id=uuid.uuid4(), channel_id=channel.id)

    def test_find_or_create_reuses_active(self, db, contact, channel):
        existing = _conversation(db, contact, channel, status="assigned")
        conversation, created = find_or_create_active_conversation(db, contact=contact, channel=channel)
        assert created is False
        assert conversation.id == existing.id

    def test_find_or_create_concurrent_creator_wins(self, db, contact, channel):
        winner = _conversation(db, contact, channel)
        calls = []
        real_lookup = conversation_service.get_active_conversation

        def stale_then_real(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                return None
            return real_lookup(*args, **kwargs)

        with patch.object(conversation_service, "get_active_conversation", side_effect=stale_then_real):
            conversation, created = find_or_create_active_conversation(db, contact=contact, channel=channel)

        assert len(calls) == 2
        assert created is False
        assert conversation.id == winner.id
        assert len(db.execute(select(Conversation)).scalars().all()) == 1

    def test_find_or_create_creates(self, db, contact, channel):
        conversation, created = find_or_create_active_conversation(
            db, contact=contact, channel=channel, is_bot_handled=True
        )
        db.commit()
        assert created is True
        assert conversation.is_bot_handled is True


# ===========================================================================
# Transitions
# ===========================================================================


class TestTransitions:
    def test_transition_table(self):
        assert VALID_TRANSITIONS["closed"] == {"open"}
        assert VALID_TRANSITIONS["archived"] == set()

    def test_assign(self, db, contact, channel, agent, jobs):
        conversation = _conversation(db, contact, channel, queue_position=1)
        assigned = assign_conversation(db, conversation.id, agent.id)

        assert assigned.status == "assigned"
        assert assigned.assigned_agent_id == agent.id
        assert assigned.assigned_at is not None
        assert assigned.queue_position is None
        handlers = {job.handler for job in _event_jobs(jobs, "conversation.assigned")}
        assert "notify_agent_assignment" in handlers

    def test_assign_completes_bot_session(self, db, contact, channel, agent):
        conversation = _conversation(db, contact, channel, is_bot_handled=True)
        session = BotSession(contact_id=contact.id, conversation_id=conversation.id)
        db.add(session)
        db.commit()

        assign_conversation(db, conversation.id, agent.id)

        db.refresh(session)
        assert session.is_completed is True
        assert session.requires_human is True

    def test_assign_unknown_agent(self, db, contact, channel):
        conversation = _conversation(db, contact, channel)
        with pytest.raises(NotFoundError):
            assign_conversation(db, conversation.id, uuid.uuid4())

    def test_assign_already_assigned_conflicts(self, db, contact, channel, agent):
        conversation = _conversation(db, contact, channel)
        assign_conversation(db, conversation.id, agent.id)
        with pytest.raises(ConflictError) as exc_info:
            assign_conversation(db, conversation.id, agent.id)
        assert exc_info.value.current_status == "assigned"

    @pytest.mark.parametrize("status", ["open", "assigned"])
    def test_close_from_active(self, db, contact, channel, agent, status):
        conversation = _conversation(db, contact, channel, status=status)
        closed = close_conversation(db, conversation.id, closed_by_id=agent.id, reason="resolved")
        assert closed.status == "closed"
        assert closed.closed_by_id == agent.id
        assert closed.closed_at is not None

    @pytest.mark.parametrize("status", ["closed", "archived"])
    def test_close_invalid_leaves_state(self, db, contact, channel, status):
        conversation = _conversation(db, contact, channel, status=status)
        with pytest.raises(ConflictError) as exc_info:
            close_conversation(db, conversation.id)
        assert exc_info.value.current_status == status
        db.expire_all()
        assert db.get(Conversation, conversation.id).status == status

    def test_close_writes_audit(self, db, contact, channel):
        conversation = _conversation(db, contact, channel)
        close_conversation(db, conversation.id, reason="resolved")
        entry = db.execute(
            select(AuditLog).where(AuditLog.entity_id == conversation.id, AuditLog.action == "closed")
        ).scalar_one()
        assert entry.reason == "resolved"
        assert entry.details == {"previous_status": "open"}

    def test_reopen(self, db, contact, channel, agent):
        conversation = _conversation(db, contact, channel)
        assign_conversation(db, conversation.id, agent.id)
        close_conversation(db, conversation.id, closed_by_id=agent.id)

        reopened = reopen_conversation(db, conversation.id, "Customer replied")

        assert reopened.status == "open"
        assert reopened.assigned_agent_id is None
        assert reopened.closed_at is None
        assert reopened.reopened_at is not None

    @pytest.mark.parametrize("reason", ["", "   "])
    def test_reopen_requires_reason(self, db, contact, channel, reason):
        conversation = _conversation(db, contact, channel, status="closed")
        with pytest.raises(ValidationError):
            reopen_conversation(db, conversation.id, reason)
        db.expire_all()
        assert db.get(Conversation, conversation.id).status == "closed"

    @pytest.mark.parametrize("status", ["open", "assigned", "archived"])
    def test_reopen_only_from_closed(self, db, contact, channel, status):
        conversation = _conversation(db, contact, channel, status=status)
        with pytest.raises(ConflictError) as exc_info:
            reopen_conversation(db, conversation.id, "why not")
        assert exc_info.value.current_status == status

    def test_reopen_with_active_twin_conflicts(self, db, contact, channel):
        old = _conversation(db, contact, channel, status="closed")
        _conversation(db, contact, channel, status="open")
        with pytest.raises(ConflictError):
            reopen_conversation(db, old.id, "Customer replied")
        db.expire_all()
        assert db.get(Conversation, old.id).status == "closed"

    def test_archive_is_terminal(self, db, contact, channel):
        conversation = _conversation(db, contact, channel)
        archive_conversation(db, conversation.id)
        with pytest.raises(ConflictError):
            close_conversation(db, conversation.id)
        with pytest.raises(ConflictError):
            reopen_conversation(db, conversation.id, "reason")

    def test_archive_renumbers_queue(self, db, channel, jobs, run_jobs):
        t0 = datetime(2026, 1, 1, 12, 0, 0)
        first = _conversation(db, _contact(db, "+5511900000001"), channel, created_at=t0)
        second = _conversation(
            db, _contact(db, "+5511900000002"), channel, created_at=t0 + timedelta(minutes=1)
        )
        refresh_queue_positions(db)

        archive_conversation(db, first.id, reason="inactive")

        archived = _event_jobs(jobs, "conversation.archived")
        assert {job.handler for job in archived} == {"refresh_queue_positions", "log_conversation_event"}
        assert archived[0].payload["previous_status"] == "open"
        run_jobs()
        assert db.get(Conversation, first.id).queue_position is None
        assert db.get(Conversation, second.id).queue_position == 1

    def test_set_priority(self, db, contact, channel):
        conversation = _conversation(db, contact, channel)
        assert set_priority(db, conversation.id, "urgent").priority == "urgent"
        with pytest.raises(ValidationError):
            set_priority(db, conversation.id, "critical")


# ===========================================================================
# Bulk operations
# ===========================================================================


class TestBulkOperations:
    def test_bulk_close_partial_failure(self, db, channel):
        c1 = _conversation(db, _contact(db, "+5511900000001"), channel)
        c2 = _conversation(db, _contact(db, "+5511900000002"), channel, status="closed")
        c3 = _conversation(db, _contact(db, "+5511900000003"), channel, status="assigned")

        result = bulk_close(db, [c1.id, c2.id, c3.id], reason="end of shift")

        assert result.succeeded == [c1.id, c3.id]
        assert len(result.failed) == 1
        assert result.failed[0]["id"] == c2.id
        assert result.failed[0]["current_status"] == "closed"
        db.expire_all()
        assert db.get(Conversation, c1.id).status == "closed"
        assert db.get(Conversation, c3.id).status == "closed"

    def test_bulk_assign_unknown_id(self, db, contact, channel, agent):
        conversation = _conversation(db, contact, channel)
        missing = uuid.uuid4()
        result = bulk_assign(db, [conversation.id, missing], agent.id)
        assert result.succeeded == [conversation.id]
        assert result.failed[0]["id"] == missing
        assert result.failed[0]["error"] == "NotFoundError"


# ===========================================================================
# Queue
# ===========================================================================


class TestQueue:
    def test_priority_then_age(self, db, channel):
        t0 = datetime(2026, 1, 1, 12, 0, 0)
        c1 = _conversation(
            db, _contact(db, "+5511900000001"), channel, priority="low", created_at=t0 + timedelta(seconds=1)
        )
        c2 = _conversation(
            db, _contact(db, "+5511900000002"), channel, priority="urgent", created_at=t0 + timedelta(seconds=2)
        )
        c3 = _conversation(db, _contact(db, "+5511900000003"), channel, priority="low", created_at=t0)

        queue = next_in_queue(db, limit=10)
        assert [c.id for c in queue] == [c2.id, c3.id, c1.id]

    def test_excludes_assigned_and_bot_handled(self, db, channel, agent):
        waiting = _conversation(db, _contact(db, "+5511900000001"), channel)
        _conversation(db, _contact(db, "+5511900000002"), channel, is_bot_handled=True)
        _conversation(
            db, _contact(db, "+5511900000003"), channel, status="assigned", assigned_agent_id=agent.id
        )
        assert [c.id for c in next_in_queue(db, limit=10)] == [waiting.id]

    def test_refresh_positions(self, db, channel):
        t0 = datetime(2026, 1, 1, 12, 0, 0)
        first = _conversation(db, _contact(db, "+5511900000001"), channel, created_at=t0)
        second = _conversation(
            db, _contact(db, "+5511900000002"), channel, created_at=t0 + timedelta(minutes=1)
        )
        closed = _conversation(db, _contact(db, "+5511900000003"), channel, status="closed", queue_position=7)

        assert refresh_queue_positions(db) == 2
        db.expire_all()
        assert db.get(Conversation, first.id).queue_position == 1
        assert db.get(Conversation, second.id).queue_position == 2
        assert db.get(Conversation, closed.id).queue_position is None


# ===========================================================================
# API
# ===========================================================================


class TestConversationApi:
    def test_create_and_get(self, client, contact, channel):
        resp = client.post(
            f"{BASE_URL}/",
            json={"contact_id": str(contact.id), "channel_id": str(channel.id), "priority": "high"},
        )
        assert resp.status_code == 201
        conversation_id = resp.json()["id"]

        resp = client.get(f"{BASE_URL}/{conversation_id}")
        assert resp.status_code == 200
        assert resp.json()["priority"] == "high"

    def test_create_duplicate_returns_409(self, client, contact, channel):
        body = {"contact_id": str(contact.id), "channel_id": str(channel.id)}
        assert client.post(f"{BASE_URL}/", json=body).status_code == 201
        resp = client.post(f"{BASE_URL}/", json=body)
        assert resp.status_code == 409
        assert resp.json()["detail"]["current_status"] == "open"

    def test_assign_close_reopen(self, client, db, contact, channel, agent):
        conversation = _conversation(db, contact, channel)
        url = f"{BASE_URL}/{conversation.id}"

        resp = client.post(f"{url}/assign", json={"agent_id": str(agent.id)})
        assert resp.status_code == 200
        assert resp.json()["status"] == "assigned"

        resp = client.post(f"{url}/close", json={"closed_by_id": str(agent.id)})
        assert resp.status_code == 200
        assert resp.json()["status"] == "closed"

        resp = client.post(f"{url}/close", json={})
        assert resp.status_code == 409
        assert resp.json()["detail"]["current_status"] == "closed"

        assert client.post(f"{url}/reopen", json={"reason": ""}).status_code == 422
        resp = client.post(f"{url}/reopen", json={"reason": "Customer replied"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "open"

    def test_bulk_close(self, client, db, channel):
        c1 = _conversation(db, _contact(db, "+5511900000001"), channel)
        c2 = _conversation(db, _contact(db, "+5511900000002"), channel, status="closed")
        c3 = _conversation(db, _contact(db, "+5511900000003"), channel)

        resp = client.post(
            f"{BASE_URL}/bulk-close",
            json={"conversation_ids": [str(c1.id), str(c2.id), str(c3.id)]},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["succeeded"] == [str(c1.id), str(c3.id)]
        assert data["failed"][0]["id"] == str(c2.id)
        assert data["failed"][0]["error"] == "ConflictError"

    def test_queue_endpoint(self, client, db, channel):
        t0 = datetime(2026, 1, 1, 12, 0, 0)
        low = _conversation(db, _contact(db, "+5511900000001"), channel, priority="low", created_at=t0)
        urgent = _conversation(
            db,
            _contact(db, "+5511900000002"),
            channel,
            priority="urgent",
            created_at=t0 + timedelta(minutes=5),
        )
        resp = client.get(f"{BASE_URL}/queue")
        assert resp.status_code == 200
        assert [c["id"] for c in resp.json()] == [str(urgent.id), str(low.id)]

    def test_priority_endpoint(self, client, db, contact, channel):
        conversation = _conversation(db, contact, channel)
        resp = client.put(f"{BASE_URL}/{conversation.id}/priority", json={"priority": "high"})
        assert resp.status_code == 200
        assert resp.json()["priority"] == "high"

    def test_list_filters_by_status(self, client, db, channel):
        _conversation(db, _contact(db, "+5511900000001"), channel)
        _conversation(db, _contact(db, "+5511900000002"), channel, status="closed")
        resp = client.get(f"{BASE_URL}/", params={"status": "closed"})
        assert resp.status_code == 200
        assert resp.json()["total"] == 1

    def test_unknown_conversation_404(self, client):
        assert client.get(f"{BASE_URL}/{uuid.uuid4()}").status_code == 404
