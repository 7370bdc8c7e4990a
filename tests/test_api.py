from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

import assistant.__main__ as entry_point
import assistant.completion as completion_module
from assistant.completion import HttpCompletionClient, StubCompletionClient
from assistant.errors import CompletionError
from assistant.main import create_app
from assistant.storage.schema import metadata
from tests.conftest import OTHER_USER_ID, USER_ID, FrozenClock, InlineExecutor, build_settings, envelope


def build_app(database_url: str, completion: StubCompletionClient | None, clock: FrozenClock, **overrides: Any) -> FastAPI:
    settings = build_settings(database_url, **overrides)
    app = create_app(settings, completion_client=completion, executor=InlineExecutor(), clock=clock)
    metadata.create_all(app.state.engine)
    return app


def auth_headers(user_id: str = USER_ID) -> Dict[str, str]:
    return {"Authorization": "Bearer test-token", "X-User-Id": user_id}


@pytest.fixture
def client(database_url: str, completion: StubCompletionClient, clock: FrozenClock) -> TestClient:
    return TestClient(build_app(database_url, completion, clock))


class DummyResponse:
    def __init__(self, status_code: int, json_data: Any = None, text: str = "") -> None:
        self.status_code = status_code
        self._json_data = json_data
        self.text = text

    def json(self) -> Any:
        if self._json_data is None:
            raise ValueError("No JSON")
        return self._json_data


def chat_response(content: str) -> DummyResponse:
    return DummyResponse(200, json_data={"choices": [{"message": {"role": "assistant", "content": content}}]})


def test_auth_required(client: TestClient) -> None:
    response = client.post("/v1/conversations/messages", json={"text": "hello"})

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "unauthorized"


def test_wrong_token_rejected(client: TestClient) -> None:
    headers = {"Authorization": "Bearer nope", "X-User-Id": USER_ID}

    response = client.get("/v1/assignments", headers=headers)

    assert response.status_code == 401


def test_user_header_required(client: TestClient) -> None:
    response = client.get("/v1/assignments", headers={"Authorization": "Bearer test-token"})

    assert response.status_code == 400
    assert response.json()["error"]["message"] == "Missing X-User-Id header"


def test_health_and_version(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok"}
    assert client.get("/version").json() == {"version": "0.0.0", "git_sha": "test"}


def test_health_returns_503_when_db_unavailable(tmp_path: Path, clock: FrozenClock) -> None:
    settings = build_settings(f"sqlite:///{tmp_path / 'missing' / 'nested' / 'assistant.db'}")
    app = create_app(settings, completion_client=StubCompletionClient(), clock=clock)
    client = TestClient(app)

    response = client.get("/health")

    assert response.status_code == 503
    assert response.json()["error"]["message"] == "Database unavailable"


def test_message_creates_task_and_logs_conversation(client: TestClient, completion: StubCompletionClient) -> None:
    completion.push(
        envelope(hasActions=True, tasks=[{"title": "Buy milk", "priority": "high"}]),
        "Added Buy milk to your tasks.",
    )

    response = client.post("/v1/conversations/messages", json={"text": "add buy milk, urgent"}, headers=auth_headers())

    assert response.status_code == 200
    data = response.json()
    assert data["reply_text"] == "Added Buy milk to your tasks."
    assert [action["type"] for action in data["created_actions"]] == ["task"]
    assert data["clarification"] is None
    assert data["audio"] is None

    history = client.get(f"/v1/conversations/{data['conversation_id']}/messages", headers=auth_headers())
    assert history.status_code == 200
    assert [(row["seq"], row["role"]) for row in history.json()] == [(1, "user"), (2, "assistant")]


def test_follow_up_message_reuses_conversation(client: TestClient, completion: StubCompletionClient) -> None:
    completion.push(envelope(), "Hi!", envelope(), "Still here.")

    first = client.post("/v1/conversations/messages", json={"text": "hello"}, headers=auth_headers()).json()
    second = client.post(
        "/v1/conversations/messages",
        json={"text": "you there?", "conversationId": first["conversation_id"]},
        headers=auth_headers(),
    ).json()

    assert second["conversation_id"] == first["conversation_id"]


def test_empty_message_rejected(client: TestClient) -> None:
    response = client.post("/v1/conversations/messages", json={"text": "  "}, headers=auth_headers())

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "empty_utterance"


def test_unknown_conversation_is_404(client: TestClient) -> None:
    response = client.post(
        "/v1/conversations/messages",
        json={"text": "hello", "conversationId": "conv_missing"},
        headers=auth_headers(),
    )

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "conversation_not_found"


def test_other_users_conversation_is_hidden(client: TestClient, completion: StubCompletionClient) -> None:
    completion.push(envelope(), "Hi!")
    data = client.post("/v1/conversations/messages", json={"text": "hello"}, headers=auth_headers()).json()

    response = client.get(
        f"/v1/conversations/{data['conversation_id']}/messages",
        headers=auth_headers(OTHER_USER_ID),
    )

    assert response.status_code == 404


def test_reply_failure_returns_502_with_created_actions(client: TestClient, completion: StubCompletionClient) -> None:
    completion.push(
        envelope(hasActions=True, tasks=[{"title": "Buy milk"}]),
        CompletionError("Completion service timed out"),
    )

    response = client.post("/v1/conversations/messages", json={"text": "add buy milk"}, headers=auth_headers())

    assert response.status_code == 502
    error = response.json()["error"]
    assert error["code"] == "reply_generation_failed"
    assert error["details"]["conversation_id"]
    assert [action["title"] for action in error["details"]["created_actions"]] == ["Buy milk"]


def test_assignment_failure_retry_and_force(client: TestClient, completion: StubCompletionClient) -> None:
    completion.push(
        envelope(hasActions=True, assignments=[{"title": "Compare e-bikes", "type": "comparison"}]),
        CompletionError("Completion service returned 500"),
        "I've started looking into e-bikes.",
    )
    data = client.post("/v1/conversations/messages", json={"text": "compare e-bikes"}, headers=auth_headers()).json()
    assignment_id = data["created_actions"][0]["id"]

    failed = client.get("/v1/assignments", params={"status": "failed"}, headers=auth_headers()).json()
    assert failed["total"] == 1
    assert failed["items"][0]["last_error"] == "Completion service returned 500"

    completion.push("E-bike A has the longer range.")
    retried = client.post(f"/v1/assignments/{assignment_id}/retry", headers=auth_headers())
    assert retried.status_code == 200
    assert retried.json()["status"] == "completed"
    assert retried.json()["findings"] == "E-bike A has the longer range."

    conflict = client.post(f"/v1/assignments/{assignment_id}/retry", headers=auth_headers())
    assert conflict.status_code == 409
    assert conflict.json()["error"]["details"]["current_status"] == "completed"

    completion.push("E-bike B is cheaper now.")
    forced = client.post(f"/v1/assignments/{assignment_id}/retry", json={"force": True}, headers=auth_headers())
    assert forced.status_code == 200
    assert forced.json()["findings"] == "E-bike B is cheaper now."


def test_assignment_read_view_stats_and_delete(client: TestClient, completion: StubCompletionClient) -> None:
    completion.push(
        envelope(hasActions=True, assignments=[{"title": "Best tents", "type": "recommendation"}]),
        "Tent X for wind, Tent Y for weight.",
        "On it.",
    )
    data = client.post("/v1/conversations/messages", json={"text": "recommend a tent"}, headers=auth_headers()).json()
    assignment_id = data["created_actions"][0]["id"]

    fetched = client.get(f"/v1/assignments/{assignment_id}", headers=auth_headers()).json()
    assert fetched["status"] == "completed"
    assert fetched["notification_sent"] is True
    assert fetched["viewed"] is False

    by_type = client.get("/v1/assignments", params={"type": "recommendation"}, headers=auth_headers()).json()
    assert [item["assignment_id"] for item in by_type["items"]] == [assignment_id]
    assert client.get("/v1/assignments", params={"type": "analysis"}, headers=auth_headers()).json()["total"] == 0

    viewed = client.post(f"/v1/assignments/{assignment_id}/viewed", headers=auth_headers()).json()
    assert viewed["viewed"] is True
    assert viewed["viewed_at"]

    stats = client.get("/v1/assignments/stats", headers=auth_headers()).json()
    assert stats["total"] == 1
    assert stats["completed"] == 1
    assert [item["assignment_id"] for item in stats["recent_completed"]] == [assignment_id]

    assert client.get(f"/v1/assignments/{assignment_id}", headers=auth_headers(OTHER_USER_ID)).status_code == 404
    assert client.delete(f"/v1/assignments/{assignment_id}", headers=auth_headers(OTHER_USER_ID)).status_code == 404
    assert client.delete(f"/v1/assignments/{assignment_id}", headers=auth_headers()).status_code == 204
    missing = client.get(f"/v1/assignments/{assignment_id}", headers=auth_headers())
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "assignment_not_found"


def test_notifications_listing(client: TestClient, completion: StubCompletionClient) -> None:
    completion.push(
        envelope(hasActions=True, assignments=[{"title": "Rainy day ideas"}]),
        "Museums, cinema, board games.",
        "I'll look into it.",
    )
    client.post("/v1/conversations/messages", json={"text": "research rainy day ideas"}, headers=auth_headers())

    notifications = client.get("/v1/notifications", params={"unread_only": True}, headers=auth_headers()).json()

    [notification] = notifications
    assert notification["type"] == "assignment_complete"
    assert notification["title"] == "Research Complete: Rainy day ideas"
    assert notification["metadata"]["assignmentType"] == "research"
    assert client.get("/v1/notifications", headers=auth_headers(OTHER_USER_ID)).json() == []


def test_email_draft_needs_connected_integration(client: TestClient, completion: StubCompletionClient) -> None:
    draft = {"to": ["ana@example.com"], "subject": "Dinner", "body": "Friday?"}
    completion.push(
        envelope(hasActions=True, emails=[draft]),
        "Please connect your email first.",
        envelope(hasActions=True, emails=[draft]),
        "Draft saved.",
    )

    refused = client.post("/v1/conversations/messages", json={"text": "email ana"}, headers=auth_headers()).json()
    assert refused["created_actions"] == []
    assert refused["notices"][0]["severity"] == "info"

    connected = client.put(
        "/v1/integrations/gmail",
        json={"account_email": "me@example.com"},
        headers=auth_headers(),
    )
    assert connected.status_code == 200
    assert connected.json() == {
        "provider": "gmail",
        "kind": "email",
        "connected": True,
        "account_email": "me@example.com",
    }

    saved = client.post("/v1/conversations/messages", json={"text": "email ana"}, headers=auth_headers()).json()
    assert [action["type"] for action in saved["created_actions"]] == ["email_draft"]

    disconnected = client.delete("/v1/integrations/gmail", headers=auth_headers())
    assert disconnected.json()["connected"] is False


def test_unknown_integration_provider_is_404(client: TestClient) -> None:
    response = client.put("/v1/integrations/myspace", headers=auth_headers())

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "not_found"


def test_http_completion_client_drives_a_turn(
    monkeypatch, database_url: str, clock: FrozenClock
) -> None:
    responses = [
        chat_response(envelope(hasActions=True, notes=[{"content": "Parking is on level 3"}])),
        chat_response("Noted, level 3."),
    ]
    calls: List[Dict[str, Any]] = []

    def fake_post(url: str, json: Dict[str, Any], headers: Dict[str, str], timeout: float) -> DummyResponse:
        calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if not responses:
            raise AssertionError("Completion service called more times than expected")
        return responses.pop(0)

    monkeypatch.setattr(completion_module.httpx, "post", fake_post)
    app = build_app(
        database_url,
        None,
        clock,
        completion_base_url="http://llm.internal/",
        completion_api_key="secret",
    )
    client = TestClient(app)

    response = client.post("/v1/conversations/messages", json={"text": "parked on level 3"}, headers=auth_headers())

    assert response.status_code == 200
    assert response.json()["reply_text"] == "Noted, level 3."
    assert [call["url"] for call in calls] == ["http://llm.internal/v1/chat/completions"] * 2
    assert calls[0]["timeout"] == 15
    assert calls[0]["headers"]["Authorization"] == "Bearer secret"
    assert calls[1]["json"]["max_tokens"] == 500


@pytest.mark.parametrize(
    "outcome,message",
    [
        (DummyResponse(500, text="boom"), "Completion service returned 500"),
        (DummyResponse(200, json_data={"choices": []}), "Completion service returned no choices"),
        (DummyResponse(200, text="<html>"), "Completion service returned invalid JSON"),
        (httpx.ReadTimeout("slow"), "Completion service timed out"),
        (httpx.ConnectError("refused"), "Completion service unreachable"),
    ],
)
def test_http_completion_client_failures(monkeypatch, outcome: Any, message: str) -> None:
    def fake_post(*args: Any, **kwargs: Any) -> DummyResponse:
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(completion_module.httpx, "post", fake_post)
    client = HttpCompletionClient(base_url="http://llm.internal", model="test-model")

    with pytest.raises(CompletionError) as excinfo:
        client.complete([{"role": "user", "content": "hi"}], timeout_seconds=1)

    assert str(excinfo.value) == message


def test_module_entry_point_serves_the_app(monkeypatch) -> None:
    calls = []
    monkeypatch.setattr(entry_point.uvicorn, "run", lambda target, **kwargs: calls.append((target, kwargs)))

    entry_point.main()

    [(target, kwargs)] = calls
    assert target == "assistant.main:app"
    assert kwargs["port"] == entry_point.settings.port
