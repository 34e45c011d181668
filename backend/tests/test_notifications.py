"""Tests for the agent inbox.

Covers:
- notify_agent templates and redelivery dedup
- Inbox listing, unread count and conversation filter
- Mark-read (single, per conversation, all)
- Endpoints scoped by user_id
"""

import uuid
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from conversa.core.exceptions import NotFoundError
from conversa.models import Contact, Conversation, Notification, User
from conversa.services.notifications import (
    list_notifications,
    mark_all_as_read,
    mark_as_read,
    notify_agent,
)

BASE_URL = "/api/v1/notifications"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _create_user(db: Session, **overrides) -> User:
    defaults = {
        "name": "Test Agent",
        "email": f"agent-{uuid.uuid4().hex[:8]}@example.com",
    }
    defaults.update(overrides)
    user = User(**defaults)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def _conversation(db: Session, channel, phone: str = "+5511900000001", name: str | None = None) -> Conversation:
    contact = Contact(phone=phone, name=name)
    db.add(contact)
    db.flush()
    conversation = Conversation(contact_id=contact.id, channel_id=channel.id, status="assigned")
    db.add(conversation)
    db.commit()
    db.refresh(conversation)
    return conversation


def _assigned(db: Session, agent: User, conversation: Conversation) -> Notification:
    notification = notify_agent(db, agent.id, "conversation_assigned", conversation)
    db.commit()
    return notification


# ===========================================================================
# notify_agent
# ===========================================================================


class TestNotifyAgent:
    def test_assignment_message(self, db: Session, channel):
        agent = _create_user(db)
        conversation = _conversation(db, channel, name="Maria Silva")

        notification = _assigned(db, agent, conversation)

        assert notification.kind == "conversation_assigned"
        assert notification.type == "info"
        assert notification.title == "Conversation assigned"
        assert notification.message == "A conversation with Maria Silva has been assigned to you."
        assert notification.conversation_id == conversation.id
        assert notification.is_read is False

    def test_contact_without_name_uses_phone(self, db: Session, channel):
        agent = _create_user(db)
        conversation = _conversation(db, channel, phone="+5511988887777")
        assert "+5511988887777" in _assigned(db, agent, conversation).message

    def test_transfer_request_names_requesting_agent(self, db: Session, channel):
        agent = _create_user(db)
        conversation = _conversation(db, channel, name="Maria Silva")

        notification = notify_agent(db, agent.id, "transfer_requested", conversation, from_agent="Ana")
        db.commit()

        assert notification.type == "warning"
        assert notification.message == "Ana asked you to take over the conversation with Maria Silva."

    def test_redelivery_does_not_duplicate_unread(self, db: Session, channel):
        agent = _create_user(db)
        conversation = _conversation(db, channel)

        first = _assigned(db, agent, conversation)
        second = _assigned(db, agent, conversation)

        assert second.id == first.id
        assert db.execute(select(func.count()).select_from(Notification)).scalar_one() == 1

    def test_new_entry_after_previous_was_read(self, db: Session, channel):
        agent = _create_user(db)
        conversation = _conversation(db, channel)
        first = _assigned(db, agent, conversation)
        mark_as_read(db, first.id, agent.id)

        second = _assigned(db, agent, conversation)

        assert second.id != first.id


# ===========================================================================
# Inbox
# ===========================================================================


class TestInbox:
    def test_only_own_entries_with_unread_count(self, db: Session, channel):
        agent = _create_user(db)
        other = _create_user(db)
        _assigned(db, agent, _conversation(db, channel, phone="+5511900000001"))
        _assigned(db, agent, _conversation(db, channel, phone="+5511900000002"))
        _assigned(db, other, _conversation(db, channel, phone="+5511900000003"))

        items, total, unread = list_notifications(db, agent.id)

        assert total == 2
        assert unread == 2
        assert {n.user_id for n in items} == {agent.id}

    def test_newest_first(self, db: Session, channel):
        agent = _create_user(db)
        base_time = datetime(2026, 1, 1, 12, 0, 0)
        conversations = [
            _conversation(db, channel, phone=f"+551190000000{i}") for i in range(3)
        ]
        for i, conversation in enumerate(conversations):
            notification = _assigned(db, agent, conversation)
            notification.created_at = base_time + timedelta(minutes=i)
        db.commit()

        items, _, _ = list_notifications(db, agent.id)
        assert [n.conversation_id for n in items] == [c.id for c in reversed(conversations)]

    def test_unread_only_and_conversation_filter(self, db: Session, channel):
        agent = _create_user(db)
        first = _conversation(db, channel, phone="+5511900000001")
        second = _conversation(db, channel, phone="+5511900000002")
        read = _assigned(db, agent, first)
        _assigned(db, agent, second)
        mark_as_read(db, read.id, agent.id)

        items, total, unread = list_notifications(db, agent.id, unread_only=True)
        assert total == 1
        assert unread == 1
        assert items[0].conversation_id == second.id

        items, total, _ = list_notifications(db, agent.id, conversation_id=first.id)
        assert total == 1
        assert items[0].id == read.id

    def test_pagination(self, db: Session, channel):
        agent = _create_user(db)
        for i in range(5):
            _assigned(db, agent, _conversation(db, channel, phone=f"+551190000000{i}"))

        page1, total, _ = list_notifications(db, agent.id, page=1, page_size=2)
        assert total == 5
        assert len(page1) == 2
        page3, _, _ = list_notifications(db, agent.id, page=3, page_size=2)
        assert len(page3) == 1


class TestMarkAsRead:
    def test_mark_single_read(self, db: Session, channel):
        agent = _create_user(db)
        notification = _assigned(db, agent, _conversation(db, channel))

        read = mark_as_read(db, notification.id, agent.id)

        assert read.is_read is True
        assert read.read_at is not None

    def test_not_found(self, db: Session):
        agent = _create_user(db)
        with pytest.raises(NotFoundError):
            mark_as_read(db, uuid.uuid4(), agent.id)

    def test_other_agents_entry(self, db: Session, channel):
        owner = _create_user(db)
        intruder = _create_user(db)
        notification = _assigned(db, owner, _conversation(db, channel))
        with pytest.raises(NotFoundError):
            mark_as_read(db, notification.id, intruder.id)

    def test_mark_conversation_read(self, db: Session, channel):
        agent = _create_user(db)
        opened = _conversation(db, channel, phone="+5511900000001")
        untouched = _conversation(db, channel, phone="+5511900000002")
        _assigned(db, agent, opened)
        notify_agent(db, agent.id, "transfer_requested", opened, from_agent="Ana")
        _assigned(db, agent, untouched)
        db.commit()

        assert mark_all_as_read(db, agent.id, conversation_id=opened.id) == 2
        _, _, unread = list_notifications(db, agent.id)
        assert unread == 1

    def test_mark_all(self, db: Session, channel):
        agent = _create_user(db)
        other = _create_user(db)
        for i in range(3):
            _assigned(db, agent, _conversation(db, channel, phone=f"+551190000000{i}"))
        _assigned(db, other, _conversation(db, channel, phone="+5511900000009"))

        assert mark_all_as_read(db, agent.id) == 3
        assert list_notifications(db, agent.id)[2] == 0
        assert list_notifications(db, other.id)[2] == 1


# ===========================================================================
# Endpoint tests
# ===========================================================================


class TestNotificationApi:
    def test_list_requires_user_id(self, client):
        assert client.get(BASE_URL + "/").status_code == 422

    def test_inbox(self, client, db: Session, channel):
        agent = _create_user(db)
        conversation = _conversation(db, channel, name="Maria Silva")
        _assigned(db, agent, conversation)

        resp = client.get(BASE_URL + "/", params={"user_id": str(agent.id)})

        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 1
        assert data["unread"] == 1
        assert data["items"][0]["kind"] == "conversation_assigned"
        assert data["items"][0]["conversation_id"] == str(conversation.id)

    def test_mark_read(self, client, db: Session, channel):
        agent = _create_user(db)
        notification = _assigned(db, agent, _conversation(db, channel))
        resp = client.patch(f"{BASE_URL}/{notification.id}/read", params={"user_id": str(agent.id)})
        assert resp.status_code == 200
        assert resp.json()["is_read"] is True

    def test_mark_read_other_users_notification(self, client, db: Session, channel):
        owner = _create_user(db)
        notification = _assigned(db, owner, _conversation(db, channel))
        resp = client.patch(f"{BASE_URL}/{notification.id}/read", params={"user_id": str(uuid.uuid4())})
        assert resp.status_code == 404

    def test_mark_all_read_for_conversation(self, client, db: Session, channel):
        agent = _create_user(db)
        first = _conversation(db, channel, phone="+5511900000001")
        _assigned(db, agent, first)
        _assigned(db, agent, _conversation(db, channel, phone="+5511900000002"))

        resp = client.patch(
            f"{BASE_URL}/read-all",
            params={"user_id": str(agent.id), "conversation_id": str(first.id)},
        )
        assert resp.json() == {"updated": 1}
