"""Tests for agent-to-agent transfers and conversation statistics."""

import uuid

import pytest
from sqlalchemy import select

from conversa.core.exceptions import ConflictError, NotFoundError, ValidationError
from conversa.models import AuditLog, Contact, Conversation, ConversationTransfer, Notification, User
from conversa.services.conversations import (
    agent_statistics,
    archive_conversation,
    assign_conversation,
    close_conversation,
    dashboard_statistics,
)
from conversa.services.transfers import (
    accept_transfer,
    auto_transfer,
    cancel_transfer,
    reject_transfer,
    request_transfer,
    transfer_stats,
)

CONVERSATIONS_URL = "/api/v1/conversations"
TRANSFERS_URL = "/api/v1/transfers"


def _user(db, name: str, **overrides) -> User:
    user = User(name=name, email=f"{name.lower()}-{uuid.uuid4().hex[:6]}@example.com", **overrides)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def _assigned(db, contact, channel, agent) -> Conversation:
    conversation = Conversation(contact_id=contact.id, channel_id=channel.id)
    db.add(conversation)
    db.commit()
    return assign_conversation(db, conversation.id, agent.id)


@pytest.fixture
def colleague(db) -> User:
    return _user(db, "Ana")


# ===========================================================================
# Request
# ===========================================================================


class TestRequestTransfer:
    def test_request_keeps_current_agent(self, db, contact, channel, agent, colleague, jobs):
        conversation = _assigned(db, contact, channel, agent)

        transfer = request_transfer(db, conversation.id, colleague.id, reason="expertise", notes="Boleto")

        assert transfer.status == "pending"
        assert transfer.from_user_id == agent.id
        assert transfer.to_user_id == colleague.id
        db.refresh(conversation)
        assert conversation.assigned_agent_id == agent.id
        handlers = {
            job.handler
            for job in jobs(kind="event")
            if job.payload["event"] == "conversation.transfer_requested"
        }
        assert handlers == {"notify_transfer_request", "log_conversation_event"}
        entry = db.execute(select(AuditLog).where(AuditLog.action == "transfer_requested")).scalar_one()
        assert entry.entity_id == conversation.id
        assert entry.reason == "expertise"

    def test_open_conversation_cannot_be_transferred(self, db, contact, channel, colleague):
        conversation = Conversation(contact_id=contact.id, channel_id=channel.id)
        db.add(conversation)
        db.commit()
        with pytest.raises(ConflictError) as exc_info:
            request_transfer(db, conversation.id, colleague.id)
        assert exc_info.value.current_status == "open"

    def test_transfer_to_current_agent_rejected(self, db, contact, channel, agent):
        conversation = _assigned(db, contact, channel, agent)
        with pytest.raises(ValidationError):
            request_transfer(db, conversation.id, agent.id)

    def test_inactive_target(self, db, contact, channel, agent):
        conversation = _assigned(db, contact, channel, agent)
        inactive = _user(db, "Bruno", is_active=False)
        with pytest.raises(NotFoundError):
            request_transfer(db, conversation.id, inactive.id)

    def test_unknown_reason(self, db, contact, channel, agent, colleague):
        conversation = _assigned(db, contact, channel, agent)
        with pytest.raises(ValidationError):
            request_transfer(db, conversation.id, colleague.id, reason="boredom")

    def test_second_pending_transfer_conflicts(self, db, contact, channel, agent, colleague):
        conversation = _assigned(db, contact, channel, agent)
        request_transfer(db, conversation.id, colleague.id)
        with pytest.raises(ConflictError):
            request_transfer(db, conversation.id, _user(db, "Carla").id)
        assert len(db.execute(select(ConversationTransfer)).scalars().all()) == 1


# ===========================================================================
# Responses
# ===========================================================================


class TestRespondToTransfer:
    def test_accept_moves_conversation(self, db, contact, channel, agent, colleague, jobs):
        conversation = _assigned(db, contact, channel, agent)
        transfer = request_transfer(db, conversation.id, colleague.id)

        accepted = accept_transfer(db, transfer.id)

        assert accepted.status == "accepted"
        assert accepted.responded_at is not None
        db.refresh(conversation)
        assert conversation.status == "assigned"
        assert conversation.assigned_agent_id == colleague.id
        transferred = [j for j in jobs(kind="event") if j.payload["event"] == "conversation.transferred"]
        assert {j.handler for j in transferred} == {"notify_agent_assignment", "log_conversation_event"}
        assert transferred[0].payload["agent_id"] == str(colleague.id)

    def test_accept_twice_conflicts(self, db, contact, channel, agent, colleague):
        conversation = _assigned(db, contact, channel, agent)
        transfer = request_transfer(db, conversation.id, colleague.id)
        accept_transfer(db, transfer.id)
        with pytest.raises(ConflictError) as exc_info:
            accept_transfer(db, transfer.id)
        assert exc_info.value.current_status == "accepted"

    def test_reject_keeps_conversation(self, db, contact, channel, agent, colleague):
        conversation = _assigned(db, contact, channel, agent)
        transfer = request_transfer(db, conversation.id, colleague.id, notes="Cliente VIP")

        rejected = reject_transfer(db, transfer.id, reason="Sem disponibilidade")

        assert rejected.status == "rejected"
        assert rejected.notes == "Cliente VIP\nRejected: Sem disponibilidade"
        db.refresh(conversation)
        assert conversation.assigned_agent_id == agent.id

    def test_cancel_then_new_request_allowed(self, db, contact, channel, agent, colleague):
        conversation = _assigned(db, contact, channel, agent)
        transfer = request_transfer(db, conversation.id, colleague.id)

        assert cancel_transfer(db, transfer.id, cancelled_by_id=agent.id).status == "cancelled"
        assert request_transfer(db, conversation.id, colleague.id).status == "pending"

    def test_closing_cancels_pending_transfer(self, db, contact, channel, agent, colleague):
        conversation = _assigned(db, contact, channel, agent)
        transfer = request_transfer(db, conversation.id, colleague.id)

        close_conversation(db, conversation.id, closed_by_id=agent.id)

        db.refresh(transfer)
        assert transfer.status == "cancelled"
        with pytest.raises(ConflictError):
            accept_transfer(db, transfer.id)

    def test_archiving_cancels_pending_transfer(self, db, contact, channel, agent, colleague):
        conversation = _assigned(db, contact, channel, agent)
        transfer = request_transfer(db, conversation.id, colleague.id)

        archive_conversation(db, conversation.id)

        db.refresh(transfer)
        assert transfer.status == "cancelled"


# ===========================================================================
# Auto transfer
# ===========================================================================


class TestAutoTransfer:
    def test_picks_least_busy_agent(self, db, channel, agent):
        busy = _user(db, "Busy")
        idle = _user(db, "Idle")
        _user(db, "Supervisor", is_agent=False)
        conversations = []
        for i, owner in enumerate([agent, busy]):
            customer = Contact(phone=f"+551190000000{i}")
            db.add(customer)
            db.commit()
            conversations.append(_assigned(db, customer, channel, owner))
        conversation = conversations[0]

        transfer = auto_transfer(db, conversation.id)

        assert transfer is not None
        assert transfer.to_user_id == idle.id
        assert transfer.reason == "workload"
        assert transfer.notes == "Auto-transferred by system"

    def test_no_other_agent(self, db, contact, channel, agent):
        conversation = _assigned(db, contact, channel, agent)
        assert auto_transfer(db, conversation.id) is None


# ===========================================================================
# Listeners
# ===========================================================================


class TestTransferNotifications:
    def test_target_notified_of_request(self, db, contact, channel, agent, colleague, run_jobs):
        conversation = _assigned(db, contact, channel, agent)
        run_jobs()
        request_transfer(db, conversation.id, colleague.id)
        run_jobs()

        notification = db.execute(
            select(Notification).where(Notification.user_id == colleague.id)
        ).scalar_one()
        assert notification.kind == "transfer_requested"
        assert notification.message.startswith("Agent Smith asked you")

    def test_new_agent_notified_on_accept(self, db, contact, channel, agent, colleague, run_jobs):
        conversation = _assigned(db, contact, channel, agent)
        transfer = request_transfer(db, conversation.id, colleague.id)
        accept_transfer(db, transfer.id)
        run_jobs()

        kinds = set(
            db.execute(select(Notification.kind).where(Notification.user_id == colleague.id)).scalars().all()
        )
        assert "conversation_assigned" in kinds

    def test_requester_notified_on_reject(self, db, contact, channel, agent, colleague, run_jobs):
        conversation = _assigned(db, contact, channel, agent)
        transfer = request_transfer(db, conversation.id, colleague.id)
        reject_transfer(db, transfer.id)
        run_jobs()

        rejected = db.execute(
            select(Notification).where(Notification.kind == "transfer_rejected")
        ).scalar_one()
        assert rejected.user_id == agent.id
        assert rejected.message == "Ana declined the conversation with Maria Silva."


# ===========================================================================
# Statistics
# ===========================================================================


class TestStatistics:
    def test_transfer_stats(self, db, channel, agent, colleague):
        transfers = []
        for i in range(3):
            customer = Contact(phone=f"+551190000000{i}")
            db.add(customer)
            db.commit()
            conversation = _assigned(db, customer, channel, agent)
            transfers.append(request_transfer(db, conversation.id, colleague.id))
        accept_transfer(db, transfers[0].id)
        reject_transfer(db, transfers[1].id)

        given = transfer_stats(db, agent.id)
        received = transfer_stats(db, colleague.id)

        assert given["transfers_given"] == 3
        assert received["transfers_received"] == 3
        assert received["transfers_accepted"] == 1
        assert received["transfers_rejected"] == 1
        assert received["acceptance_rate"] == pytest.approx(33.3)

    def test_dashboard_statistics(self, db, channel, agent):
        statuses = ["open", "open", "closed", "archived"]
        for i, status in enumerate(statuses):
            customer = Contact(phone=f"+551190000000{i}")
            db.add(customer)
            db.flush()
            db.add(Conversation(contact_id=customer.id, channel_id=channel.id, status=status))
        db.commit()
        customer = Contact(phone="+5511900000009")
        db.add(customer)
        db.commit()
        _assigned(db, customer, channel, agent)

        stats = dashboard_statistics(db)

        assert stats["open"] == 2
        assert stats["assigned"] == 1
        assert stats["closed"] == 1
        assert stats["archived"] == 1
        assert stats["total"] == 5
        assert stats["queued"] == 2
        assert stats["bot_handled"] == 0

    def test_agent_statistics(self, db, channel, agent, colleague):
        conversations = []
        for i in range(2):
            customer = Contact(phone=f"+551190000000{i}")
            db.add(customer)
            db.commit()
            conversations.append(_assigned(db, customer, channel, agent))
        close_conversation(db, conversations[0].id, closed_by_id=agent.id)
        customer = Contact(phone="+5511900000009")
        db.add(customer)
        db.commit()
        request_transfer(db, _assigned(db, customer, channel, colleague).id, agent.id)

        stats = agent_statistics(db, agent.id)

        assert stats["assigned"] == 1
        assert stats["closed_today"] == 1
        assert stats["total_handled"] == 2
        assert stats["pending_transfers"] == 1

    def test_agent_statistics_unknown_agent(self, db):
        with pytest.raises(NotFoundError):
            agent_statistics(db, uuid.uuid4())


# ===========================================================================
# API
# ===========================================================================


class TestTransferApi:
    def test_request_and_accept(self, client, db, contact, channel, agent, colleague):
        conversation = _assigned(db, contact, channel, agent)

        resp = client.post(
            f"{CONVERSATIONS_URL}/{conversation.id}/transfers",
            json={"to_agent_id": str(colleague.id), "reason": "workload"},
        )
        assert resp.status_code == 201
        transfer_id = resp.json()["id"]

        resp = client.get(f"{TRANSFERS_URL}/", params={"to_agent_id": str(colleague.id), "status": "pending"})
        assert [t["id"] for t in resp.json()] == [transfer_id]

        resp = client.post(f"{TRANSFERS_URL}/{transfer_id}/accept")
        assert resp.status_code == 200
        assert resp.json()["status"] == "accepted"

        resp = client.post(f"{TRANSFERS_URL}/{transfer_id}/reject", json={})
        assert resp.status_code == 409
        assert resp.json()["detail"]["current_status"] == "accepted"

        resp = client.get(f"{CONVERSATIONS_URL}/{conversation.id}")
        assert resp.json()["assigned_agent_id"] == str(colleague.id)

    def test_transfer_open_conversation_409(self, client, db, contact, channel, colleague):
        conversation = Conversation(contact_id=contact.id, channel_id=channel.id)
        db.add(conversation)
        db.commit()
        resp = client.post(
            f"{CONVERSATIONS_URL}/{conversation.id}/transfers",
            json={"to_agent_id": str(colleague.id)},
        )
        assert resp.status_code == 409
        assert resp.json()["detail"]["current_status"] == "open"

    def test_auto_transfer_without_agents_409(self, client, db, contact, channel, agent):
        conversation = _assigned(db, contact, channel, agent)
        resp = client.post(f"{CONVERSATIONS_URL}/{conversation.id}/auto-transfer", json={})
        assert resp.status_code == 409

    def test_unknown_transfer_404(self, client):
        assert client.post(f"{TRANSFERS_URL}/{uuid.uuid4()}/accept").status_code == 404

    def test_stats_endpoints(self, client, db, contact, channel, agent):
        _assigned(db, contact, channel, agent)

        resp = client.get(f"{CONVERSATIONS_URL}/stats")
        assert resp.status_code == 200
        assert resp.json()["assigned"] == 1

        resp = client.get(f"{CONVERSATIONS_URL}/agents/{agent.id}/stats")
        assert resp.status_code == 200
        assert resp.json()["assigned"] == 1

        resp = client.get(f"{TRANSFERS_URL}/agents/{agent.id}/stats")
        assert resp.status_code == 200
        assert resp.json()["acceptance_rate"] == 0.0
