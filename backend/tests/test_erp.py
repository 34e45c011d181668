"""Tests for ERP contact and agent synchronisation."""

from sqlalchemy import func, select

from conversa.models import Contact, User
from conversa.services.erp import batch_sync_contacts, batch_sync_users

BASE_URL = "/api/v1/erp"


def _count(db, model) -> int:
    return db.execute(select(func.count()).select_from(model)).scalar_one()


# ===========================================================================
# Contacts
# ===========================================================================


class TestSyncContacts:
    def test_creates_contact(self, db):
        result = batch_sync_contacts(
            db,
            [{"businesspartner_id": "BP-100", "name": "Padaria Central", "phone": "(11) 99999-0003"}],
        )

        assert result.success == 1
        assert result.errors == 0
        assert result.details[0]["status"] == "created"
        contact = db.execute(select(Contact)).scalar_one()
        assert contact.phone == "+5511999990003"
        assert contact.external_id == "BP-100"

    def test_updates_by_external_id(self, db, contact):
        contact.external_id = "BP-7"
        db.commit()

        result = batch_sync_contacts(db, [{"businesspartner_id": "BP-7", "email": "maria@example.com"}])

        assert result.details[0] == {
            "businesspartner_id": "BP-7",
            "status": "updated",
            "contact_id": str(contact.id),
        }
        db.refresh(contact)
        assert contact.email == "maria@example.com"
        assert contact.name == "Maria Silva"

    def test_links_existing_contact_by_phone(self, db, contact):
        result = batch_sync_contacts(
            db, [{"businesspartner_id": 4711, "name": "Maria S.", "phone": "+55 11 99999-0001"}]
        )

        assert result.details[0]["status"] == "updated"
        db.refresh(contact)
        assert contact.external_id == "4711"
        assert contact.name == "Maria S."
        assert _count(db, Contact) == 1

    def test_dry_run_writes_nothing(self, db, contact):
        contact.external_id = "BP-7"
        db.commit()

        result = batch_sync_contacts(
            db,
            [
                {"businesspartner_id": "BP-7", "name": "Outro nome"},
                {"businesspartner_id": "BP-8", "phone": "11999990004"},
            ],
            dry_run=True,
        )

        assert result.dry_run is True
        assert [d["status"] for d in result.details] == ["would_update", "would_create"]
        assert _count(db, Contact) == 1
        db.refresh(contact)
        assert contact.name == "Maria Silva"

    def test_bad_items_do_not_block_batch(self, db):
        result = batch_sync_contacts(
            db,
            [
                {"name": "Sem id"},
                {"businesspartner_id": "BP-1", "name": "Sem telefone"},
                {"businesspartner_id": "BP-2", "phone": "12"},
                {"businesspartner_id": "BP-3", "phone": "11999990005"},
            ],
        )

        assert result.success == 1
        assert result.errors == 3
        assert [d["status"] for d in result.details] == ["error", "error", "error", "created"]
        assert result.details[0]["businesspartner_id"] == "unknown"
        assert "phone number is required" in result.details[1]["message"]
        assert _count(db, Contact) == 1


# ===========================================================================
# Users
# ===========================================================================


class TestSyncUsers:
    def test_creates_agent(self, db):
        result = batch_sync_users(db, [{"erp_user_id": "U-1", "name": "Ana", "email": "ana@example.com"}])

        assert result.details[0]["status"] == "created"
        user = db.execute(select(User)).scalar_one()
        assert user.is_agent is True
        assert user.erp_user_id == "U-1"

    def test_matches_by_email_and_deactivates(self, db, agent):
        result = batch_sync_users(
            db, [{"erp_user_id": "U-9", "name": "Agent Smith", "email": agent.email, "is_active": False}]
        )

        assert result.details[0]["status"] == "updated"
        db.refresh(agent)
        assert agent.erp_user_id == "U-9"
        assert agent.is_active is False

    def test_invalid_item_reported(self, db):
        result = batch_sync_users(db, [{"erp_user_id": "U-1", "email": "ana@example.com"}])
        assert result.errors == 1
        assert "name" in result.details[0]["message"]

    def test_dry_run(self, db):
        result = batch_sync_users(
            db, [{"erp_user_id": "U-1", "name": "Ana", "email": "ana@example.com"}], dry_run=True
        )
        assert result.details[0]["status"] == "would_create"
        assert _count(db, User) == 0


# ===========================================================================
# API
# ===========================================================================


class TestErpApi:
    def test_sync_contacts(self, client, db):
        resp = client.post(
            f"{BASE_URL}/sync/contacts",
            json=[{"businesspartner_id": "BP-100", "phone": "11999990003"}],
        )
        assert resp.status_code == 200
        assert resp.json()["success"] == 1
        assert _count(db, Contact) == 1

    def test_sync_users_dry_run(self, client, db):
        resp = client.post(
            f"{BASE_URL}/sync/users",
            params={"dry_run": "true"},
            json=[{"erp_user_id": "U-1", "name": "Ana", "email": "ana@example.com"}],
        )
        assert resp.status_code == 200
        assert resp.json()["dry_run"] is True
        assert _count(db, User) == 0

    def test_empty_batch_rejected(self, client):
        assert client.post(f"{BASE_URL}/sync/contacts", json=[]).status_code == 422
