from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from assistant.context import CONTEXT_UNAVAILABLE, ContextAccumulator, to_spoken_text
from assistant.errors import ConversationNotFoundError
from assistant.integrations import StaticIntegrationStatusProvider
from assistant.storage import db
from assistant.storage.schema import conversations
from assistant.storage.stores import Stores
from tests.conftest import OTHER_USER_ID, USER_ID, FrozenClock


@pytest.fixture
def accumulator(engine, stores: Stores, clock: FrozenClock) -> ContextAccumulator:
    return ContextAccumulator(
        engine,
        stores,
        StaticIntegrationStatusProvider({USER_ID: ["gmail"]}),
        window=3,
        user_timezone="Europe/London",
        assistant_name="Yo!",
        clock=clock,
    )


def test_to_spoken_text_strips_markdown() -> None:
    reply = "## Your day\n- **Dentist** at 10\n- Call [Sam](https://example.com)\n\nSee https://example.com/x"

    assert to_spoken_text(reply) == "Your day. Dentist at 10. Call Sam. See"


def test_new_conversation_takes_title_from_first_message(engine, accumulator: ContextAccumulator) -> None:
    text = "Can you help me plan a surprise birthday party for my sister next month?"

    context = accumulator.open(USER_ID, None, "text", text)

    assert context.created
    assert context.conversation_id.startswith("conv_")
    with engine.connect() as conn:
        row = db.select_row(conn, conversations, conversations.c.conversation_id == context.conversation_id)
    assert row["title"] == text[:50]
    assert row["user_id"] == USER_ID
    assert accumulator.list_messages(USER_ID, context.conversation_id) == []


def test_messages_are_ordered_and_window_is_bounded(accumulator: ContextAccumulator) -> None:
    context = accumulator.open(USER_ID, None, "text", "hello")
    for index in range(5):
        accumulator.append(context, "user" if index % 2 == 0 else "assistant", f"message {index}")

    recent = accumulator.recent_messages(context.conversation_id)
    everything = accumulator.list_messages(USER_ID, context.conversation_id)

    assert [row["content"] for row in recent] == ["message 2", "message 3", "message 4"]
    assert [row["seq"] for row in everything] == [1, 2, 3, 4, 5]


def test_conversation_is_scoped_to_owner(accumulator: ContextAccumulator) -> None:
    context = accumulator.open(USER_ID, None, "text", "hello")

    with pytest.raises(ConversationNotFoundError):
        accumulator.open(OTHER_USER_ID, context.conversation_id, "text", "hi")
    with pytest.raises(ConversationNotFoundError):
        accumulator.list_messages(OTHER_USER_ID, context.conversation_id)
    with pytest.raises(ConversationNotFoundError):
        accumulator.open(USER_ID, "conv_missing", "text", "hi")


def test_reopening_keeps_id_and_switches_mode(accumulator: ContextAccumulator) -> None:
    context = accumulator.open(USER_ID, None, "text", "hello")

    reopened = accumulator.open(USER_ID, context.conversation_id, "voice", "again")
    accumulator.append(reopened, "user", "spoken")

    assert reopened.conversation_id == context.conversation_id
    assert not reopened.created
    [row] = accumulator.list_messages(USER_ID, context.conversation_id)
    assert row["mode"] == "voice"


def test_context_summary_counts_user_data(accumulator: ContextAccumulator, stores: Stores, clock: FrozenClock) -> None:
    now = clock()
    stores.tasks.create({"user_id": USER_ID, "title": "Overdue", "priority": "high", "due_date": now - timedelta(days=1)})
    stores.tasks.create({"user_id": USER_ID, "title": "Today", "due_date": now + timedelta(hours=2)})
    stores.tasks.create({"user_id": USER_ID, "title": "Done", "status": "completed"})
    stores.tasks.create({"user_id": OTHER_USER_ID, "title": "Not mine"})
    stores.reminders.create(
        {"user_id": USER_ID, "title": "Call", "reminder_time": now + timedelta(hours=1), "is_urgent": True}
    )
    stores.notes.create({"user_id": USER_ID, "title": "Idea", "content": "x", "category": "idea", "tags": []})
    stores.events.create(
        {
            "user_id": USER_ID,
            "title": "Dentist",
            "start_time": datetime(2026, 10, 14, 13, 0, tzinfo=timezone.utc),
            "end_time": datetime(2026, 10, 14, 14, 0, tzinfo=timezone.utc),
            "attendees": [],
        }
    )
    stores.assignments.create(
        {"user_id": USER_ID, "title": "Boots", "query": "boots", "status": "completed", "findings": "done"}
    )
    stores.notifications.create_notification(user_id=USER_ID, type="assignment_complete", title="Done", message="m")

    summary = accumulator.build_context_summary(USER_ID)

    assert summary.startswith("CURRENT USER CONTEXT:")
    assert "- Pending: 2" in summary
    assert "- Overdue: 1" in summary
    assert "- Due Today: 1" in summary
    assert "- High Priority: 1" in summary
    assert "- Urgent: 1" in summary
    assert "- Idea: 1" in summary
    assert "14:00 Dentist" in summary
    assert "- Completed, not yet viewed: 1" in summary
    assert "- Unread: 1" in summary
    assert "- gmail (email): Connected" in summary
    assert "- zoom (meetings): Not connected" in summary


def test_context_summary_degrades_when_store_fails(
    accumulator: ContextAccumulator, stores: Stores, monkeypatch
) -> None:
    def broken(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(stores.tasks, "count_for_user", broken)

    assert accumulator.build_context_summary(USER_ID) == CONTEXT_UNAVAILABLE


def test_reply_messages_layout(accumulator: ContextAccumulator) -> None:
    context = accumulator.open(USER_ID, None, "voice", "hello")
    accumulator.append(context, "user", "hello")

    messages = accumulator.build_reply_messages(context, turn_instruction="You just created a task.")

    assert messages[0]["role"] == "system"
    assert "Yo!" in messages[0]["content"]
    assert "spoken aloud" in messages[0]["content"]
    assert messages[1] == {"role": "user", "content": "hello"}
    assert messages[-1] == {"role": "system", "content": "You just created a task."}
