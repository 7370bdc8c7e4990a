from __future__ import annotations

from datetime import datetime, timezone
from typing import List

import pytest

from assistant.guardrails import GuardrailEngine, InMemoryRateLimitStore
from assistant.integrations import StaticIntegrationStatusProvider
from assistant.materializer import ActionMaterializer
from assistant.models.envelope import IntentEnvelope
from assistant.storage.stores import Stores
from tests.conftest import USER_ID, FrozenClock


@pytest.fixture
def queued() -> List[str]:
    return []


@pytest.fixture
def materializer(stores: Stores, guardrails: GuardrailEngine, clock: FrozenClock, queued: List[str]) -> ActionMaterializer:
    return ActionMaterializer(
        stores,
        guardrails,
        user_timezone="Europe/London",
        default_meeting_provider="google-meet",
        queue_assignment=queued.append,
        clock=clock,
    )


def build_envelope(**fields) -> IntentEnvelope:
    return IntentEnvelope.model_validate({"hasActions": True, **fields})


def test_one_bad_item_does_not_block_siblings(materializer: ActionMaterializer, stores: Stores) -> None:
    result = materializer.materialize(
        USER_ID,
        build_envelope(tasks=[{"title": "Buy milk"}, {"description": "no title"}, {"title": "Book MOT"}]),
    )

    assert [summary.title for summary in result.created] == ["Buy milk", "Book MOT"]
    assert result.failed == 1
    assert stores.tasks.count_for_user(USER_ID) == 2


def test_task_defaults_and_provenance(materializer: ActionMaterializer, stores: Stores) -> None:
    result = materializer.materialize(
        USER_ID,
        build_envelope(tasks=[{"title": "Renew passport", "priority": "sometime", "dueDate": "2026-10-20"}]),
        created_by="voice",
    )

    task = stores.tasks.find_by_id(result.created[0].id)
    assert task["priority"] == "medium"
    assert task["status"] == "pending"
    assert task["created_by"] == "voice"
    assert task["due_date"] == datetime(2026, 10, 19, 23, 0, tzinfo=timezone.utc)


def test_task_with_unresolvable_due_date_is_still_created(materializer: ActionMaterializer, stores: Stores) -> None:
    result = materializer.materialize(USER_ID, build_envelope(tasks=[{"title": "Taxes", "dueDate": "soon"}]))

    assert len(result.created) == 1
    assert stores.tasks.find_by_id(result.created[0].id)["due_date"] is None


def test_reminder_time_is_resolved_in_user_timezone(materializer: ActionMaterializer, stores: Stores) -> None:
    result = materializer.materialize(
        USER_ID,
        build_envelope(reminders=[{"title": "Call mum", "reminderTime": "tomorrow at 3pm"}]),
    )

    reminder = stores.reminders.find_by_id(result.created[0].id)
    assert reminder["reminder_time"] == datetime(2026, 10, 15, 14, 0, tzinfo=timezone.utc)
    assert reminder["status"] == "active"
    assert reminder["is_urgent"] is False


def test_reminder_without_clock_time_is_refused(materializer: ActionMaterializer, stores: Stores) -> None:
    result = materializer.materialize(
        USER_ID,
        build_envelope(reminders=[{"title": "Call mum", "reminderTime": "tomorrow"}]),
    )

    assert result.created == []
    assert result.failed == 1
    assert result.notices[0].reason == "Invalid date/time"
    assert stores.reminders.count_for_user(USER_ID) == 0


def test_reminder_far_in_past_is_created_with_advisory(materializer: ActionMaterializer) -> None:
    result = materializer.materialize(
        USER_ID,
        build_envelope(reminders=[{"title": "Old thing", "reminderTime": "2026-08-01T09:00:00"}]),
    )

    assert len(result.created) == 1
    assert result.notices[0].allowed
    assert result.notices[0].reason == "Date is in the past"


def test_clarification_envelope_creates_nothing(materializer: ActionMaterializer, stores: Stores) -> None:
    result = materializer.materialize(
        USER_ID,
        build_envelope(
            needsClarification=True,
            clarificationNeeded="What time?",
            reminders=[{"title": "Call mum", "reminderTime": "2026-10-15T15:00:00"}],
        ),
    )

    assert result.created == []
    assert stores.reminders.count_for_user(USER_ID) == 0


def test_sensitive_note_is_refused_with_notice(materializer: ActionMaterializer, stores: Stores) -> None:
    result = materializer.materialize(
        USER_ID,
        build_envelope(notes=[{"content": "my card number is 4111 1111 1111 1111"}]),
    )

    assert result.created == []
    notice = result.notices[0]
    assert notice.type == "note"
    assert not notice.allowed
    assert notice.severity == "critical"
    assert stores.notes.count_for_user(USER_ID) == 0


def test_sensitive_value_in_any_field_is_refused(materializer: ActionMaterializer, stores: Stores) -> None:
    result = materializer.materialize(
        USER_ID,
        build_envelope(emails=[{"to": ["4111 1111 1111 1111"], "subject": "Hi", "body": "hello"}]),
    )

    assert result.created == []
    assert result.notices[0].severity == "critical"
    assert stores.email_drafts.count_for_user(USER_ID) == 0


def test_note_defaults(materializer: ActionMaterializer, stores: Stores) -> None:
    content = "The gate code for the allotment changes every month, ask Pat"
    result = materializer.materialize(USER_ID, build_envelope(notes=[{"content": content, "tags": "garden, codes"}]))

    note = stores.notes.find_by_id(result.created[0].id)
    assert note["title"] == content[:50] + "..."
    assert note["category"] == "personal"
    assert note["tags"] == ["garden", "codes"]
    assert note["meta"] == {"source": "ai"}


def test_assignment_is_created_in_progress_and_queued(
    materializer: ActionMaterializer, stores: Stores, queued: List[str]
) -> None:
    result = materializer.materialize(
        USER_ID,
        build_envelope(assignments=[{"title": "Best hiking boots", "type": "comparison"}]),
    )

    assignment = stores.assignments.find_by_id(result.created[0].id)
    assert assignment["status"] == "in_progress"
    assert assignment["findings"] == ""
    assert assignment["query"] == "Best hiking boots"
    assert assignment["type"] == "comparison"
    assert queued == [assignment["assignment_id"]]
    assert result.queued_assignments == queued


def test_event_creation_and_conflict_advisory(materializer: ActionMaterializer, stores: Stores) -> None:
    first = materializer.materialize(
        USER_ID,
        build_envelope(
            calendarEvents=[
                {"title": "Dentist", "startTime": "2026-10-15T10:00:00", "endTime": "2026-10-15T11:00:00"}
            ]
        ),
    )
    second = materializer.materialize(
        USER_ID,
        build_envelope(
            calendarEvents=[
                {"title": "Haircut", "startTime": "2026-10-15T10:30:00", "endTime": "2026-10-15T11:30:00"}
            ]
        ),
    )

    event = stores.events.find_by_id(first.created[0].id)
    assert event["source"] == "manual"
    assert event["start_time"] == datetime(2026, 10, 15, 9, 0, tzinfo=timezone.utc)
    assert len(second.created) == 1
    assert second.notices[0].reason == "Calendar conflict detected"
    assert "Dentist" in second.notices[0].suggestion


def test_event_ending_before_start_is_refused(materializer: ActionMaterializer, stores: Stores) -> None:
    result = materializer.materialize(
        USER_ID,
        build_envelope(
            calendarEvents=[
                {"title": "Backwards", "startTime": "2026-10-15T11:00:00", "endTime": "2026-10-15T10:00:00"}
            ]
        ),
    )

    assert result.created == []
    assert stores.events.count_for_user(USER_ID) == 0


def test_email_draft_is_saved_as_draft(materializer: ActionMaterializer, stores: Stores) -> None:
    result = materializer.materialize(
        USER_ID,
        build_envelope(emails=[{"to": "ana@example.com; bo@example.com", "subject": "Dinner", "body": "Friday?"}]),
    )

    draft = stores.email_drafts.find_by_id(result.created[0].id)
    assert draft["recipients"] == ["ana@example.com", "bo@example.com"]
    assert draft["is_draft"] is True
    assert result.created[0].title == "Dinner"


def test_email_draft_with_invalid_recipient_is_refused(materializer: ActionMaterializer, stores: Stores) -> None:
    result = materializer.materialize(
        USER_ID,
        build_envelope(emails=[{"to": ["ana-at-example"], "subject": "Dinner", "body": "Friday?"}]),
    )

    assert result.created == []
    assert result.notices[0].reason == "Invalid email addresses"
    assert stores.email_drafts.count_for_user(USER_ID) == 0


def test_email_draft_without_integration_is_refused(stores: Stores, clock: FrozenClock) -> None:
    materializer = ActionMaterializer(
        stores,
        GuardrailEngine(
            rate_limits=InMemoryRateLimitStore(),
            integrations=StaticIntegrationStatusProvider(),
            clock=clock,
        ),
        user_timezone="Europe/London",
        default_meeting_provider="google-meet",
        queue_assignment=lambda assignment_id: None,
        clock=clock,
    )

    result = materializer.materialize(
        USER_ID,
        build_envelope(emails=[{"to": ["ana@example.com"], "subject": "Dinner", "body": "Friday?"}]),
    )

    assert result.created == []
    assert result.notices[0].severity == "info"
    assert result.notices[0].suggestion.startswith("Please connect")


def test_meeting_request_defaults(materializer: ActionMaterializer, stores: Stores) -> None:
    result = materializer.materialize(
        USER_ID,
        build_envelope(meetings=[{"title": "Sync with Sam", "startTime": "3pm friday"}]),
    )

    meeting = stores.meetings.find_by_id(result.created[0].id)
    assert meeting["provider"] == "google-meet"
    assert meeting["duration_minutes"] == 60
    assert meeting["status"] == "pending_provider"
    assert meeting["start_time"] == datetime(2026, 10, 16, 14, 0, tzinfo=timezone.utc)


def test_search_request_is_recorded(materializer: ActionMaterializer, stores: Stores) -> None:
    result = materializer.materialize(USER_ID, build_envelope(search={"query": "weather in Leeds", "type": "weather"}))

    search = stores.searches.find_by_id(result.created[0].id)
    assert search["query"] == "weather in Leeds"
    assert search["search_type"] == "web"


def test_dispatch_order_follows_envelope_families(materializer: ActionMaterializer) -> None:
    result = materializer.materialize(
        USER_ID,
        build_envelope(
            notes=[{"content": "idea"}],
            tasks=[{"title": "task"}],
            search={"query": "news"},
        ),
    )

    assert [summary.type for summary in result.created] == ["task", "note", "search"]
