"""initial schema: contacts, conversations, transfers, messages, bot, protocols, jobs

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

import uuid
from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

PRIORITY = ("low", "medium", "high", "urgent")


def _timestamps(*names: str) -> list[sa.Column]:
    return [
        sa.Column(name, sa.DateTime(), server_default=sa.text("now()"), nullable=False)
        for name in names
    ]


def upgrade() -> None:
    # Users (agents)
    op.create_table(
        "users",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("erp_user_id", sa.String(length=100), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default="true", nullable=False),
        sa.Column("is_agent", sa.Boolean(), server_default="true", nullable=False),
        *_timestamps("created_at", "updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("erp_user_id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    # Channels
    channels = op.create_table(
        "channels",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("name", sa.String(length=50), nullable=False),
        sa.Column("type", sa.String(length=50), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default="true", nullable=False),
        *_timestamps("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )

    # Categories and weighted keywords
    op.create_table(
        "categories",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default="true", nullable=False),
        *_timestamps("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )
    op.create_table(
        "category_keywords",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("category_id", sa.UUID(), nullable=False),
        sa.Column("keyword", sa.String(length=255), nullable=False),
        sa.Column("weight", sa.Integer(), server_default="1", nullable=False),
        sa.Column("is_exact_match", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("is_case_sensitive", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default="true", nullable=False),
        sa.Column("match_count", sa.Integer(), server_default="0", nullable=False),
        *_timestamps("created_at"),
        sa.ForeignKeyConstraint(["category_id"], ["categories.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_category_keywords_active", "category_keywords", ["is_active"])

    # Contacts
    op.create_table(
        "contacts",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("phone", sa.String(length=20), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("external_id", sa.String(length=100), nullable=True),
        sa.Column("is_blocked", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("blocked_reason", sa.Text(), nullable=True),
        sa.Column("blocked_by_id", sa.UUID(), nullable=True),
        sa.Column("blocked_at", sa.DateTime(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        *_timestamps("created_at", "updated_at"),
        sa.ForeignKeyConstraint(["blocked_by_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("phone"),
        sa.UniqueConstraint("external_id"),
    )
    op.create_index("ix_contacts_is_blocked", "contacts", ["is_blocked"])
    op.create_index("ix_contacts_deleted_at", "contacts", ["deleted_at"])

    # Conversations
    op.create_table(
        "conversations",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("contact_id", sa.UUID(), nullable=False),
        sa.Column("channel_id", sa.UUID(), nullable=False),
        sa.Column("category_id", sa.UUID(), nullable=True),
        sa.Column("assigned_agent_id", sa.UUID(), nullable=True),
        sa.Column(
            "status",
            sa.Enum("open", "assigned", "closed", "archived", name="conversation_status"),
            server_default="open",
            nullable=False,
        ),
        sa.Column(
            "priority",
            sa.Enum(*PRIORITY, name="conversation_priority"),
            server_default="medium",
            nullable=False,
        ),
        sa.Column("subject", sa.String(length=255), nullable=True),
        sa.Column("is_bot_handled", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("queue_position", sa.Integer(), nullable=True),
        sa.Column("last_message_at", sa.DateTime(), nullable=True),
        sa.Column("assigned_at", sa.DateTime(), nullable=True),
        sa.Column("closed_by_id", sa.UUID(), nullable=True),
        sa.Column("closed_at", sa.DateTime(), nullable=True),
        sa.Column("reopened_at", sa.DateTime(), nullable=True),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        *_timestamps("created_at", "updated_at"),
        sa.ForeignKeyConstraint(["contact_id"], ["contacts.id"]),
        sa.ForeignKeyConstraint(["channel_id"], ["channels.id"]),
        sa.ForeignKeyConstraint(["category_id"], ["categories.id"]),
        sa.ForeignKeyConstraint(["assigned_agent_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["closed_by_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_conversations_contact_id", "conversations", ["contact_id"])
    op.create_index("ix_conversations_channel_id", "conversations", ["channel_id"])
    op.create_index("ix_conversations_assigned_agent_id", "conversations", ["assigned_agent_id"])
    op.create_index("ix_conversations_status", "conversations", ["status"])
    op.create_index("ix_conversations_priority", "conversations", ["priority"])
    op.create_index("ix_conversations_last_message_at", "conversations", ["last_message_at"])
    op.create_index(
        "uq_conversations_active_contact_channel",
        "conversations",
        ["contact_id", "channel_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('open', 'assigned')"),
    )

    # Messages
    op.create_table(
        "messages",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("conversation_id", sa.UUID(), nullable=False),
        sa.Column(
            "direction",
            sa.Enum("inbound", "outbound", name="message_direction"),
            nullable=False,
        ),
        sa.Column(
            "type",
            sa.Enum("text", "template", "media", "location", "contact", "system", name="message_type"),
            server_default="text",
            nullable=False,
        ),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("media", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("provider_message_id", sa.String(length=128), nullable=True),
        sa.Column(
            "status",
            sa.Enum("received", "pending", "sent", "delivered", "read", "failed", name="message_status"),
            server_default="pending",
            nullable=False,
        ),
        sa.Column("is_delivered", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("delivered_at", sa.DateTime(), nullable=True),
        sa.Column("is_read", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("read_at", sa.DateTime(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("sender_id", sa.UUID(), nullable=True),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        *_timestamps("created_at"),
        sa.ForeignKeyConstraint(["conversation_id"], ["conversations.id"]),
        sa.ForeignKeyConstraint(["sender_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider_message_id"),
    )
    op.create_index("ix_messages_conversation_id", "messages", ["conversation_id"])
    op.create_index("ix_messages_direction", "messages", ["direction"])
    op.create_index("ix_messages_created_at", "messages", ["created_at"])

    # Bot sessions
    op.create_table(
        "bot_sessions",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("contact_id", sa.UUID(), nullable=False),
        sa.Column("conversation_id", sa.UUID(), nullable=False),
        sa.Column("current_step", sa.String(length=100), server_default="start", nullable=False),
        sa.Column("collected_data", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("attempts", sa.Integer(), server_default="0", nullable=False),
        sa.Column("is_completed", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("requires_human", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("handoff_reason", sa.Text(), nullable=True),
        *_timestamps("started_at", "last_interaction_at"),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["contact_id"], ["contacts.id"]),
        sa.ForeignKeyConstraint(["conversation_id"], ["conversations.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_bot_sessions_contact_id", "bot_sessions", ["contact_id"])
    op.create_index("ix_bot_sessions_conversation_id", "bot_sessions", ["conversation_id"])
    op.create_index("ix_bot_sessions_contact_open", "bot_sessions", ["contact_id", "is_completed"])

    # Auto-response rules
    op.create_table(
        "auto_response_rules",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("channel_id", sa.UUID(), nullable=True),
        sa.Column("keyword", sa.String(length=255), nullable=True),
        sa.Column(
            "match_type",
            sa.Enum("exact", "contains", name="auto_response_match_type"),
            server_default="contains",
            nullable=False,
        ),
        sa.Column(
            "trigger_type",
            sa.Enum("keyword", "welcome", name="auto_response_trigger_type"),
            server_default="keyword",
            nullable=False,
        ),
        sa.Column("response_template", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default="true", nullable=False),
        sa.Column("priority", sa.Integer(), server_default="0", nullable=False),
        *_timestamps("created_at"),
        sa.ForeignKeyConstraint(["channel_id"], ["channels.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_auto_response_rules_active", "auto_response_rules", ["is_active"])
    op.create_index("ix_auto_response_rules_trigger", "auto_response_rules", ["trigger_type", "is_active"])

    # Protocols
    op.create_table(
        "protocols",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("protocol_number", sa.String(length=20), nullable=False),
        sa.Column("contact_id", sa.UUID(), nullable=False),
        sa.Column("conversation_id", sa.UUID(), nullable=True),
        sa.Column("created_by_id", sa.UUID(), nullable=True),
        sa.Column("assigned_to_id", sa.UUID(), nullable=True),
        sa.Column(
            "status",
            sa.Enum("open", "closed", name="protocol_status"),
            server_default="open",
            nullable=False,
        ),
        sa.Column(
            "priority",
            sa.Enum(*PRIORITY, name="protocol_priority"),
            server_default="medium",
            nullable=False,
        ),
        sa.Column("subject", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        *_timestamps("opened_at"),
        sa.Column("closed_at", sa.DateTime(), nullable=True),
        *_timestamps("created_at", "updated_at"),
        sa.ForeignKeyConstraint(["contact_id"], ["contacts.id"]),
        sa.ForeignKeyConstraint(["conversation_id"], ["conversations.id"]),
        sa.ForeignKeyConstraint(["created_by_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["assigned_to_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("protocol_number"),
    )
    op.create_index("ix_protocols_contact_id", "protocols", ["contact_id"])
    op.create_index("ix_protocols_status", "protocols", ["status"])
    op.create_index("ix_protocols_assigned_to_id", "protocols", ["assigned_to_id"])

    # Agent inbox
    op.create_table(
        "notifications",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("conversation_id", sa.UUID(), nullable=False),
        sa.Column(
            "kind",
            sa.Enum("conversation_assigned", "transfer_requested", "transfer_rejected", name="notification_kind"),
            nullable=False,
        ),
        sa.Column(
            "type",
            sa.Enum("info", "warning", "success", "error", name="notification_type"),
            server_default="info",
            nullable=False,
        ),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("is_read", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("read_at", sa.DateTime(), nullable=True),
        *_timestamps("created_at"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["conversation_id"], ["conversations.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_notifications_user_is_read", "notifications", ["user_id", "is_read"])
    op.create_index("ix_notifications_conversation_id", "notifications", ["conversation_id"])
    op.create_index("ix_notifications_created_at", "notifications", ["created_at"])

    # Agent-to-agent transfers
    op.create_table(
        "conversation_transfers",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("conversation_id", sa.UUID(), nullable=False),
        sa.Column("from_user_id", sa.UUID(), nullable=True),
        sa.Column("to_user_id", sa.UUID(), nullable=False),
        sa.Column("requested_by_id", sa.UUID(), nullable=True),
        sa.Column(
            "reason",
            sa.Enum("workload", "expertise", "unavailable", "other", name="transfer_reason"),
            server_default="other",
            nullable=False,
        ),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column(
            "status",
            sa.Enum("pending", "accepted", "rejected", "cancelled", name="transfer_status"),
            server_default="pending",
            nullable=False,
        ),
        *_timestamps("transferred_at"),
        sa.Column("responded_at", sa.DateTime(), nullable=True),
        *_timestamps("created_at", "updated_at"),
        sa.ForeignKeyConstraint(["conversation_id"], ["conversations.id"]),
        sa.ForeignKeyConstraint(["from_user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["to_user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["requested_by_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_conversation_transfers_conversation_id", "conversation_transfers", ["conversation_id"])
    op.create_index("ix_conversation_transfers_from_user_id", "conversation_transfers", ["from_user_id"])
    op.create_index("ix_conversation_transfers_to_user_id", "conversation_transfers", ["to_user_id"])
    op.create_index("ix_conversation_transfers_transferred_at", "conversation_transfers", ["transferred_at"])
    op.create_index(
        "uq_conversation_transfers_pending",
        "conversation_transfers",
        ["conversation_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )

    # Audit log
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("entity_id", sa.UUID(), nullable=False),
        sa.Column("action", sa.String(length=50), nullable=False),
        sa.Column("actor_id", sa.UUID(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("details", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        *_timestamps("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity_type", "entity_id"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"])

    # Job queue / event outbox
    op.create_table(
        "jobs",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("kind", sa.String(length=50), nullable=False),
        sa.Column("handler", sa.String(length=100), nullable=True),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "running", "done", "dead", name="job_status"),
            server_default="pending",
            nullable=False,
        ),
        sa.Column("attempts", sa.Integer(), server_default="0", nullable=False),
        sa.Column("max_attempts", sa.Integer(), server_default="5", nullable=False),
        *_timestamps("available_at"),
        sa.Column("locked_at", sa.DateTime(), nullable=True),
        sa.Column("finished_at", sa.DateTime(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        *_timestamps("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_jobs_status_available_at", "jobs", ["status", "available_at"])
    op.create_index("ix_jobs_kind", "jobs", ["kind"])

    # Inbound WhatsApp deliveries resolve to this channel by type
    op.bulk_insert(channels, [{"id": uuid.uuid4(), "name": "whatsapp", "type": "whatsapp"}])


def downgrade() -> None:
    for table in (
        "jobs",
        "audit_logs",
        "conversation_transfers",
        "notifications",
        "protocols",
        "auto_response_rules",
        "bot_sessions",
        "messages",
        "conversations",
        "contacts",
        "category_keywords",
        "categories",
        "channels",
        "users",
    ):
        op.drop_table(table)

    for enum_name in (
        "job_status",
        "transfer_status",
        "transfer_reason",
        "notification_type",
        "notification_kind",
        "protocol_priority",
        "protocol_status",
        "auto_response_trigger_type",
        "auto_response_match_type",
        "message_status",
        "message_type",
        "message_direction",
        "conversation_priority",
        "conversation_status",
    ):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
