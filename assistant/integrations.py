from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import Engine, and_, select

from assistant.storage import db
from assistant.storage.schema import user_integrations
from assistant.util.timeparse import utc_now

PROVIDER_KINDS: Dict[str, str] = {
    "gmail": "email",
    "outlook": "email",
    "yahoo": "email",
    "icloud": "email",
    "google_calendar": "calendar",
    "outlook_calendar": "calendar",
    "apple_calendar": "calendar",
    "zoom": "meetings",
    "google_meet": "meetings",
    "teams": "meetings",
}


class IntegrationStatusProvider:
    def is_connected(self, user_id: str, kind: str) -> bool:
        raise NotImplementedError

    def connected_providers(self, user_id: str) -> List[Dict[str, Optional[str]]]:
        raise NotImplementedError


class StaticIntegrationStatusProvider(IntegrationStatusProvider):
    def __init__(self, connected: Optional[Dict[str, List[str]]] = None) -> None:
        self._connected = connected or {}

    def is_connected(self, user_id: str, kind: str) -> bool:
        return any(PROVIDER_KINDS.get(provider) == kind for provider in self._connected.get(user_id, []))

    def connected_providers(self, user_id: str) -> List[Dict[str, Optional[str]]]:
        return [
            {"provider": provider, "kind": PROVIDER_KINDS.get(provider), "account_email": None}
            for provider in self._connected.get(user_id, [])
        ]


class DatabaseIntegrationStatusProvider(IntegrationStatusProvider):
    def __init__(self, engine: Engine, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._engine = engine
        self._clock = clock

    def is_connected(self, user_id: str, kind: str) -> bool:
        stmt = select(user_integrations.c.provider).where(
            user_integrations.c.user_id == user_id,
            user_integrations.c.kind == kind,
            user_integrations.c.connected.is_(True),
        )
        with self._engine.connect() as conn:
            return conn.execute(stmt.limit(1)).first() is not None

    def connected_providers(self, user_id: str) -> List[Dict[str, Optional[str]]]:
        with self._engine.connect() as conn:
            rows = db.select_rows(
                conn,
                user_integrations,
                user_integrations.c.user_id == user_id,
                user_integrations.c.connected.is_(True),
                order_by=[user_integrations.c.provider.asc()],
            )
        return [
            {"provider": row["provider"], "kind": row["kind"], "account_email": row.get("account_email")}
            for row in rows
        ]

    def set_connected(
        self,
        user_id: str,
        provider: str,
        *,
        connected: bool,
        account_email: Optional[str] = None,
    ) -> Dict[str, Any]:
        kind = PROVIDER_KINDS.get(provider)
        if kind is None:
            raise ValueError(f"Unsupported integration provider: {provider}")
        key = and_(user_integrations.c.user_id == user_id, user_integrations.c.provider == provider)
        values = {"connected": connected, "account_email": account_email, "updated_at": self._clock()}
        with self._engine.begin() as conn:
            if not db.update_rows(conn, user_integrations, values, key):
                db.insert_row(conn, user_integrations, {"user_id": user_id, "provider": provider, "kind": kind, **values})
        return {"provider": provider, "kind": kind, "account_email": account_email, "connected": connected}
