from __future__ import annotations

import json
from concurrent.futures import Executor, Future
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Tuple

import pytest
from sqlalchemy import Engine

from assistant.completion import StubCompletionClient
from assistant.config import Settings
from assistant.guardrails import GuardrailEngine, InMemoryRateLimitStore
from assistant.integrations import StaticIntegrationStatusProvider
from assistant.storage.db import create_db_engine
from assistant.storage.schema import metadata
from assistant.storage.stores import Stores, build_stores

# Wednesday 2026-10-14 10:00 in Europe/London (BST, UTC+1).
FIXED_NOW = datetime(2026, 10, 14, 9, 0, tzinfo=timezone.utc)
USER_ID = "user-1"
OTHER_USER_ID = "user-2"


class FrozenClock:
    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class InlineExecutor(Executor):
    """Runs submitted work immediately on the calling thread."""

    def submit(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Future:
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except BaseException as exc:
            future.set_exception(exc)
        return future


class DeferredExecutor(Executor):
    """Holds submitted work until ``run_pending`` is called."""

    def __init__(self) -> None:
        self.pending: List[Tuple[Callable[..., Any], tuple, dict]] = []

    def submit(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Future:
        self.pending.append((fn, args, kwargs))
        return Future()

    def run_pending(self) -> None:
        while self.pending:
            fn, args, kwargs = self.pending.pop(0)
            fn(*args, **kwargs)


def envelope(**fields: Any) -> str:
    return json.dumps(fields)


def build_settings(database_url: str, **overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "database_url": database_url,
        "assistant_service_token": "test-token",
        "user_timezone": "Europe/London",
        "assistant_name": "Yo!",
        "completion_base_url": None,
        "classification_timeout_seconds": 15,
        "reply_timeout_seconds": 30,
        "assignment_timeout_seconds": 120,
        "reply_max_tokens": 500,
        "voice_reply_max_tokens": 150,
        "context_window_messages": 10,
        "default_meeting_provider": "google-meet",
        "assignment_workers": 1,
        "assignment_lease_seconds": 300,
        "assignment_stale_after_seconds": 600,
        "assignment_recovery_interval_seconds": 0,
        "rate_limit_window_seconds": 3600,
        "log_level": "INFO",
        "version": "0.0.0",
        "git_sha": "test",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'assistant.db'}"


@pytest.fixture
def engine(database_url: str) -> Engine:
    engine = create_db_engine(database_url)
    metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def stores(engine: Engine, clock: FrozenClock) -> Stores:
    return build_stores(engine, clock=clock)


@pytest.fixture
def completion() -> StubCompletionClient:
    return StubCompletionClient()


@pytest.fixture
def integrations() -> StaticIntegrationStatusProvider:
    return StaticIntegrationStatusProvider({USER_ID: ["gmail", "google_calendar"]})


@pytest.fixture
def guardrails(engine: Engine, integrations: StaticIntegrationStatusProvider, clock: FrozenClock) -> GuardrailEngine:
    return GuardrailEngine(
        rate_limits=InMemoryRateLimitStore(),
        integrations=integrations,
        engine=engine,
        clock=clock,
    )
