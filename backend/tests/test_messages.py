"""Tests for outbound messages — queueing, delivery and provider status tracking."""

import uuid
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from conversa.core.exceptions import ConflictError, NotFoundError, ValidationError
from conversa.models import Conversation, Message
from conversa.services.messages import (
    deliver_message,
    list_messages,
    process_status_job,
    send_message,
    update_delivery_status,
)

BASE_URL = "/api/v1/conversations"


@pytest.fixture
def conversation(db, contact, channel) -> Conversation:
    conv = Conversation(contact_id=contact.id, channel_id=channel.id, status="assigned")
    db.add(conv)
    db.commit()
    db.refresh(conv)
    return conv


def _sent_message(db, conversation, provider_id="wamid.OUT-A", status="sent") -> Message:
    message = Message(
        conversation_id=conversation.id,
        direction="outbound",
        content="Seu pedido foi enviado",
        provider_message_id=provider_id,
        status=status,
    )
    db.add(message)
    db.commit()
    db.refresh(message)
    return message


# ===========================================================================
# Sending
# ===========================================================================


class TestSendMessage:
    def test_queues_pending_message_and_job(self, db, conversation, jobs):
        message = send_message(db, conversation.id, "Olá! Como posso ajudar?")
        assert message.status == "pending"
        assert message.direction == "outbound"
        send_jobs = jobs(kind="send_message")
        assert len(send_jobs) == 1
        assert send_jobs[0].payload["message_id"] == str(message.id)

    def test_delivered_by_worker(self, db, conversation, provider, run_jobs):
        message = send_message(db, conversation.id, "Olá!")
        run_jobs()

        db.refresh(message)
        assert message.status == "sent"
        assert message.provider_message_id == "wamid.OUT1"
        assert provider.sent == [{"kind": "text", "phone": "+5511999990001", "text": "Olá!"}]

    def test_provider_failure_recorded_on_message(self, db, conversation, provider, run_jobs):
        provider.fail = True
        message = send_message(db, conversation.id, "Olá!")
        run_jobs()

        db.refresh(message)
        assert message.status == "failed"
        assert message.error_message == "Recipient not on WhatsApp"

    def test_template_message(self, db, conversation, provider, run_jobs):
        components = [{"type": "body", "parameters": [{"type": "text", "text": "Maria"}]}]
        send_message(
            db,
            conversation.id,
            "order_update",
            type="template",
            media={"components": components, "language": "en_US"},
        )
        run_jobs()

        assert provider.sent[0] == {
            "kind": "template",
            "phone": "+5511999990001",
            "template": "order_update",
            "components": components,
            "language": "en_US",
        }

    def test_deliver_is_idempotent(self, db, conversation, provider):
        message = send_message(db, conversation.id, "Olá!")
        deliver_message(db, message.id)
        deliver_message(db, message.id)
        assert len(provider.sent) == 1

    def test_empty_content_rejected(self, db, conversation):
        with pytest.raises(ValidationError):
            send_message(db, conversation.id, "   ")

    def test_media_message_rejected(self, db, conversation, jobs):
        with pytest.raises(ValidationError):
            send_message(db, conversation.id, "Segue o comprovante", type="media", media={"url": "https://x/y.pdf"})
        assert db.execute(select(func.count()).select_from(Message)).scalar_one() == 0
        assert jobs(kind="send_message") == []

    def test_closed_conversation_conflicts(self, db, conversation):
        conversation.status = "closed"
        db.commit()
        with pytest.raises(ConflictError) as exc_info:
            send_message(db, conversation.id, "Olá!")
        assert exc_info.value.current_status == "closed"

    def test_unknown_conversation(self, db):
        with pytest.raises(NotFoundError):
            send_message(db, uuid.uuid4(), "Olá!")


# ===========================================================================
# Delivery status
# ===========================================================================


class TestDeliveryStatus:
    def test_progression(self, db, conversation):
        message = _sent_message(db, conversation)

        update_delivery_status(db, "wamid.OUT-A", "delivered", timestamp="1767225600")
        assert message.status == "delivered"
        assert message.is_delivered is True
        assert message.delivered_at is not None

        update_delivery_status(db, "wamid.OUT-A", "read")
        assert message.status == "read"
        assert message.is_read is True
        assert message.read_at is not None

    def test_never_regresses(self, db, conversation):
        message = _sent_message(db, conversation, status="read")
        update_delivery_status(db, "wamid.OUT-A", "delivered")
        update_delivery_status(db, "wamid.OUT-A", "sent")
        assert message.status == "read"

    def test_read_before_delivered_marks_both(self, db, conversation):
        message = _sent_message(db, conversation)
        update_delivery_status(db, "wamid.OUT-A", "read")
        assert message.is_delivered is True
        assert message.is_read is True

    def test_failure_recorded(self, db, conversation):
        message = _sent_message(db, conversation)
        update_delivery_status(db, "wamid.OUT-A", "failed", error="Message undeliverable")
        assert message.status == "failed"
        assert message.error_message == "Message undeliverable"

    def test_failure_after_delivery_ignored(self, db, conversation):
        message = _sent_message(db, conversation, status="delivered")
        update_delivery_status(db, "wamid.OUT-A", "failed", error="late failure")
        assert message.status == "delivered"
        assert message.error_message is None

    def test_unknown_provider_id(self, db):
        assert update_delivery_status(db, "wamid.NOPE", "delivered") is None

    def test_invalid_status(self, db, conversation):
        _sent_message(db, conversation)
        with pytest.raises(ValidationError):
            update_delivery_status(db, "wamid.OUT-A", "deleted")

    def test_status_job_ignores_unsupported(self, db, conversation):
        message = _sent_message(db, conversation)
        process_status_job(db, {"id": "wamid.OUT-A", "status": "deleted"})
        assert message.status == "sent"

    def test_status_job_applies(self, db, conversation):
        message = _sent_message(db, conversation)
        process_status_job(db, {"id": "wamid.OUT-A", "status": "delivered", "timestamp": "1767225600"})
        assert message.status == "delivered"
        assert message.delivered_at.replace(tzinfo=None) == datetime.fromtimestamp(
            1767225600, tz=timezone.utc
        ).replace(tzinfo=None)


# ===========================================================================
# Listing and API
# ===========================================================================


class TestMessageApi:
    def test_list_oldest_first(self, db, conversation):
        first = send_message(db, conversation.id, "primeira")
        second = send_message(db, conversation.id, "segunda")
        items, total = list_messages(db, conversation.id)
        assert total == 2
        assert [m.id for m in items] == [first.id, second.id]

    def test_send_endpoint(self, client, conversation):
        resp = client.post(f"{BASE_URL}/{conversation.id}/messages", json={"content": "Olá!"})
        assert resp.status_code == 202
        data = resp.json()
        assert data["status"] == "pending"
        assert data["direction"] == "outbound"

    def test_send_to_closed_returns_409(self, client, db, conversation):
        conversation.status = "closed"
        db.commit()
        resp = client.post(f"{BASE_URL}/{conversation.id}/messages", json={"content": "Olá!"})
        assert resp.status_code == 409

    def test_list_endpoint(self, client, db, conversation):
        send_message(db, conversation.id, "Olá!")
        resp = client.get(f"{BASE_URL}/{conversation.id}/messages")
        assert resp.status_code == 200
        assert resp.json()["total"] == 1
        assert db.execute(select(Message)).scalar_one().content == "Olá!"
