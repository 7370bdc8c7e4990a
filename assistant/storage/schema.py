from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import expression, func

metadata = MetaData()

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _timestamps() -> list[Column]:
    return [
        Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
        Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    ]


conversations = Table(
    "conversations",
    metadata,
    Column("conversation_id", Text, primary_key=True),
    Column("user_id", Text, nullable=False),
    Column("title", Text, nullable=False),
    Column("mode", Text, nullable=False, server_default="text"),
    *_timestamps(),
    Index("ix_conversations_user_id", "user_id"),
)

conversation_messages = Table(
    "conversation_messages",
    metadata,
    Column("message_id", Integer, primary_key=True, autoincrement=True),
    Column(
        "conversation_id",
        Text,
        ForeignKey("conversations.conversation_id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("seq", Integer, nullable=False),
    Column("role", Text, nullable=False),
    Column("content", Text, nullable=False),
    Column("mode", Text, nullable=False, server_default="text"),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    UniqueConstraint("conversation_id", "seq", name="uq_conversation_messages_seq"),
    Index("ix_conversation_messages_conversation_id", "conversation_id"),
)

tasks = Table(
    "tasks",
    metadata,
    Column("task_id", Text, primary_key=True),
    Column("user_id", Text, nullable=False),
    Column("title", Text, nullable=False),
    Column("description", Text, nullable=False, server_default=""),
    Column("priority", Text, nullable=False, server_default="medium"),
    Column("due_date", DateTime(timezone=True), nullable=True),
    Column("status", Text, nullable=False, server_default="pending"),
    Column("created_by", Text, nullable=False, server_default="user"),
    Column("completed_at", DateTime(timezone=True), nullable=True),
    *_timestamps(),
    Index("ix_tasks_user_id_status", "user_id", "status"),
)

reminders = Table(
    "reminders",
    metadata,
    Column("reminder_id", Text, primary_key=True),
    Column("user_id", Text, nullable=False),
    Column("title", Text, nullable=False),
    Column("notes", Text, nullable=False, server_default=""),
    Column("reminder_time", DateTime(timezone=True), nullable=False),
    Column("is_urgent", Boolean, nullable=False, server_default=expression.false()),
    Column("status", Text, nullable=False, server_default="active"),
    *_timestamps(),
    Index("ix_reminders_user_id_status", "user_id", "status"),
    Index("ix_reminders_reminder_time", "reminder_time"),
)

notes = Table(
    "notes",
    metadata,
    Column("note_id", Text, primary_key=True),
    Column("user_id", Text, nullable=False),
    Column("title", Text, nullable=False),
    Column("content", Text, nullable=False),
    Column("category", Text, nullable=False, server_default="personal"),
    Column("tags", JSONType, nullable=False),
    Column("meta", JSONType, nullable=True),
    *_timestamps(),
    Index("ix_notes_user_id_category", "user_id", "category"),
)

events = Table(
    "events",
    metadata,
    Column("event_id", Text, primary_key=True),
    Column("user_id", Text, nullable=False),
    Column("title", Text, nullable=False),
    Column("description", Text, nullable=False, server_default=""),
    Column("start_time", DateTime(timezone=True), nullable=False),
    Column("end_time", DateTime(timezone=True), nullable=False),
    Column("location", Text, nullable=False, server_default=""),
    Column("attendees", JSONType, nullable=False),
    Column("source", Text, nullable=False, server_default="manual"),
    *_timestamps(),
    Index("ix_events_user_id_start_time", "user_id", "start_time"),
)

email_drafts = Table(
    "email_drafts",
    metadata,
    Column("draft_id", Text, primary_key=True),
    Column("user_id", Text, nullable=False),
    Column("recipients", JSONType, nullable=False),
    Column("cc", JSONType, nullable=False),
    Column("subject", Text, nullable=False, server_default=""),
    Column("body", Text, nullable=False, server_default=""),
    Column("is_draft", Boolean, nullable=False, server_default=expression.true()),
    *_timestamps(),
    Index("ix_email_drafts_user_id", "user_id"),
)

meeting_requests = Table(
    "meeting_requests",
    metadata,
    Column("meeting_id", Text, primary_key=True),
    Column("user_id", Text, nullable=False),
    Column("provider", Text, nullable=False),
    Column("title", Text, nullable=False),
    Column("start_time", DateTime(timezone=True), nullable=False),
    Column("duration_minutes", Integer, nullable=False, server_default="60"),
    Column("description", Text, nullable=False, server_default=""),
    Column("attendees", JSONType, nullable=False),
    Column("status", Text, nullable=False, server_default="pending_provider"),
    *_timestamps(),
    Index("ix_meeting_requests_user_id", "user_id"),
)

search_requests = Table(
    "search_requests",
    metadata,
    Column("search_id", Text, primary_key=True),
    Column("user_id", Text, nullable=False),
    Column("query", Text, nullable=False),
    Column("search_type", Text, nullable=False, server_default="web"),
    *_timestamps(),
    Index("ix_search_requests_user_id", "user_id"),
)

assignments = Table(
    "assignments",
    metadata,
    Column("assignment_id", Text, primary_key=True),
    Column("user_id", Text, nullable=False),
    Column("title", Text, nullable=False),
    Column("description", Text, nullable=False, server_default=""),
    Column("query", Text, nullable=False),
    Column("type", Text, nullable=False, server_default="research"),
    Column("priority", Text, nullable=False, server_default="medium"),
    Column("status", Text, nullable=False),
    Column("findings", Text, nullable=False, server_default=""),
    Column("last_error", Text, nullable=True),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("notification_sent", Boolean, nullable=False, server_default=expression.false()),
    Column("viewed", Boolean, nullable=False, server_default=expression.false()),
    Column("viewed_at", DateTime(timezone=True), nullable=True),
    Column("claimed_by", Text, nullable=True),
    Column("lease_expires_at", DateTime(timezone=True), nullable=True),
    Column("completed_at", DateTime(timezone=True), nullable=True),
    *_timestamps(),
    Index("ix_assignments_user_id_status", "user_id", "status"),
    Index("ix_assignments_status_updated_at", "status", "updated_at"),
)

notifications = Table(
    "notifications",
    metadata,
    Column("notification_id", Text, primary_key=True),
    Column("user_id", Text, nullable=False),
    Column("type", Text, nullable=False),
    Column("title", Text, nullable=False),
    Column("message", Text, nullable=False),
    Column("priority", Text, nullable=False, server_default="medium"),
    Column("related_id", Text, nullable=True),
    Column("related_model", Text, nullable=True),
    Column("action_url", Text, nullable=True),
    Column("meta", JSONType, nullable=True),
    Column("is_read", Boolean, nullable=False, server_default=expression.false()),
    *_timestamps(),
    Index("ix_notifications_user_id_is_read", "user_id", "is_read"),
    Index("ix_notifications_related_id", "related_id"),
)

rate_limit_counters = Table(
    "rate_limit_counters",
    metadata,
    Column("user_id", Text, nullable=False),
    Column("action_type", Text, nullable=False),
    Column("count", Integer, nullable=False),
    Column("window_reset_at", DateTime(timezone=True), nullable=False),
    PrimaryKeyConstraint("user_id", "action_type", name="pk_rate_limit_counters"),
)

user_integrations = Table(
    "user_integrations",
    metadata,
    Column("user_id", Text, nullable=False),
    Column("provider", Text, nullable=False),
    Column("kind", Text, nullable=False),
    Column("connected", Boolean, nullable=False, server_default=expression.true()),
    Column("account_email", Text, nullable=True),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    PrimaryKeyConstraint("user_id", "provider", name="pk_user_integrations"),
    Index("ix_user_integrations_user_id_kind", "user_id", "kind"),
)
