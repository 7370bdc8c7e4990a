from __future__ import annotations

from assistant.classification import IntentClassifier, parse_envelope_json, strip_code_fences
from assistant.completion import StubCompletionClient
from assistant.errors import CompletionError
from assistant.models.envelope import IntentEnvelope
from tests.conftest import envelope

NOW_ISO = "2026-10-14T09:00:00+00:00"


def classify(*responses) -> IntentEnvelope:
    classifier = IntentClassifier(StubCompletionClient(list(responses)), timeout_seconds=15)
    return classifier.classify("remind me to call mum tomorrow at 3pm", NOW_ISO)


def test_fenced_json_is_parsed() -> None:
    raw = "```json\n" + envelope(hasActions=True, tasks=[{"title": "Buy milk"}]) + "\n```"

    result = classify(raw)

    assert result.has_actions
    assert result.declared_actions() == [("task", {"title": "Buy milk"})]


def test_json_wrapped_in_prose_is_extracted() -> None:
    raw = "Sure! Here you go: " + envelope(hasActions=True, notes=[{"content": "gate code"}]) + " Hope that helps."

    assert parse_envelope_json(raw) == {"hasActions": True, "notes": [{"content": "gate code"}]}
    assert classify(raw).declared_actions() == [("note", {"content": "gate code"})]


def test_unparseable_output_yields_neutral_envelope() -> None:
    result = classify("I think the user wants a reminder.")

    assert result == IntentEnvelope.neutral()
    assert result.declared_actions() == []


def test_non_object_json_yields_neutral_envelope() -> None:
    assert classify('[{"title": "Buy milk"}]') == IntentEnvelope.neutral()


def test_completion_failure_yields_neutral_envelope() -> None:
    assert classify(CompletionError("timed out")) == IntentEnvelope.neutral()


def test_unexpected_client_error_yields_neutral_envelope() -> None:
    assert classify(RuntimeError("socket closed")) == IntentEnvelope.neutral()


def test_clarification_discards_declared_actions() -> None:
    result = classify(
        envelope(
            hasActions=True,
            needsClarification=True,
            clarificationNeeded="What time tomorrow?",
            reminders=[{"title": "Call mum", "reminderTime": "tomorrow"}],
        )
    )

    assert result.needs_clarification
    assert result.clarification_needed == "What time tomorrow?"
    assert not result.has_actions
    assert result.reminders == []
    assert result.declared_actions() == []


def test_permission_request_discards_declared_actions() -> None:
    result = classify(
        envelope(
            hasActions=True,
            needsPermission=True,
            permissionsNeeded=["Location", "telepathy", "location"],
            permissionReason="To find coffee near you",
            search={"query": "coffee near me"},
        )
    )

    assert result.permissions_needed == ["location"]
    assert result.search is None
    assert result.declared_actions() == []


def test_loose_field_shapes_are_normalised() -> None:
    result = classify(
        envelope(
            hasActions="true",
            tasks={"title": "Single task"},
            notes=["not an object", {"content": "kept"}],
            search=[{"query": "weather"}],
        )
    )

    assert result.has_actions
    assert result.tasks == [{"title": "Single task"}]
    assert result.notes == [{"content": "kept"}]
    assert result.search == {"query": "weather"}


def test_actions_are_ignored_without_has_actions() -> None:
    assert classify(envelope(tasks=[{"title": "Buy milk"}])).declared_actions() == []


def test_prompt_carries_utterance_time_and_timeout() -> None:
    client = StubCompletionClient([envelope(hasActions=False)])
    IntentClassifier(client, timeout_seconds=15).classify("book the dentist", NOW_ISO)

    call = client.calls[0]
    prompt = call["messages"][0]["content"]
    assert call["timeout_seconds"] == 15
    assert "book the dentist" in prompt
    assert NOW_ISO in prompt


def test_prompt_names_user_timezone() -> None:
    client = StubCompletionClient([envelope(hasActions=False)])
    IntentClassifier(client, timeout_seconds=15).classify(
        "call mum tomorrow at 3pm", "2026-10-14T05:00:00-04:00", "America/New_York"
    )

    prompt = client.calls[0]["messages"][0]["content"]
    assert "Current time: 2026-10-14T05:00:00-04:00 (America/New_York)" in prompt
    assert "User timezone: America/New_York" in prompt
    assert "without a UTC offset" in prompt


def test_strip_code_fences_leaves_plain_text() -> None:
    assert strip_code_fences('  {"a": 1}  ') == '{"a": 1}'
    assert strip_code_fences('```\n{"a": 1}\n```') == '{"a": 1}'
