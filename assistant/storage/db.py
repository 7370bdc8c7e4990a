from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import Connection, Engine, Table, and_, create_engine, func, insert, or_, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from assistant.storage.schema import (
    assignments,
    conversation_messages,
    conversations,
    events,
    rate_limit_counters,
)
from assistant.util.timeparse import ensure_utc

_CONTENTION_RETRIES = 5


def create_db_engine(database_url: str) -> Engine:
    connect_args: Dict[str, Any] = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(database_url, pool_pre_ping=True, future=True, connect_args=connect_args)


def check_db(engine: Engine) -> None:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


@contextmanager
def transaction(engine: Engine, conn: Optional[Connection] = None) -> Iterator[Connection]:
    """Join ``conn`` when the caller already holds a transaction, else open one."""
    if conn is not None:
        yield conn
        return
    with engine.begin() as opened:
        yield opened


def row_to_dict(row: Any) -> Dict[str, Any]:
    data = dict(row)
    for key, value in data.items():
        if isinstance(value, datetime):
            data[key] = ensure_utc(value)
    return data


def _utc_values(values: Dict[str, Any]) -> Dict[str, Any]:
    return {key: ensure_utc(value) if isinstance(value, datetime) else value for key, value in values.items()}


def insert_row(conn: Connection, table: Table, values: Dict[str, Any]) -> None:
    conn.execute(insert(table).values(**_utc_values(values)))


def select_row(conn: Connection, table: Table, *conditions: Any) -> Optional[Dict[str, Any]]:
    row = conn.execute(select(table).where(*conditions)).mappings().first()
    return row_to_dict(row) if row else None


def select_rows(
    conn: Connection,
    table: Table,
    *conditions: Any,
    order_by: Sequence[Any] = (),
    limit: Optional[int] = None,
    offset: int = 0,
) -> List[Dict[str, Any]]:
    stmt = select(table).where(*conditions).order_by(*order_by)
    if limit is not None:
        stmt = stmt.limit(limit)
    if offset:
        stmt = stmt.offset(offset)
    return [row_to_dict(row) for row in conn.execute(stmt).mappings().all()]


def update_rows(conn: Connection, table: Table, values: Dict[str, Any], *conditions: Any) -> int:
    result = conn.execute(update(table).where(*conditions).values(**_utc_values(values)))
    return result.rowcount


def count_rows(engine: Engine, table: Table, *conditions: Any) -> int:
    with engine.connect() as conn:
        return int(conn.execute(select(func.count()).select_from(table).where(*conditions)).scalar_one())


def increment_rate_limit_counter(
    engine: Engine,
    *,
    user_id: str,
    action_type: str,
    limit: int,
    window_seconds: int,
    now: datetime,
) -> Tuple[bool, int, datetime]:
    """Atomically admit one action against a fixed window counter.

    Returns ``(allowed, count, window_reset_at)``. The increment and the
    ceiling comparison happen in one conditional UPDATE, so concurrent callers
    never push the stored count past ``limit``.
    """
    now = ensure_utc(now)
    fresh_reset_at = now + timedelta(seconds=window_seconds)
    key = and_(rate_limit_counters.c.user_id == user_id, rate_limit_counters.c.action_type == action_type)
    if limit <= 0:
        return False, 0, fresh_reset_at
    for _ in range(_CONTENTION_RETRIES):
        try:
            with engine.begin() as conn:
                admitted = conn.execute(
                    update(rate_limit_counters)
                    .where(
                        key,
                        rate_limit_counters.c.window_reset_at > now,
                        rate_limit_counters.c.count < limit,
                    )
                    .values(count=rate_limit_counters.c.count + 1)
                ).rowcount
                if admitted:
                    row = select_row(conn, rate_limit_counters, key)
                    return True, row["count"], row["window_reset_at"]
                restarted = conn.execute(
                    update(rate_limit_counters)
                    .where(key, rate_limit_counters.c.window_reset_at <= now)
                    .values(count=1, window_reset_at=fresh_reset_at)
                ).rowcount
                if restarted:
                    return True, 1, fresh_reset_at
                existing = select_row(conn, rate_limit_counters, key)
                if existing:
                    return False, existing["count"], existing["window_reset_at"]
                insert_row(
                    conn,
                    rate_limit_counters,
                    {
                        "user_id": user_id,
                        "action_type": action_type,
                        "count": 1,
                        "window_reset_at": fresh_reset_at,
                    },
                )
                return True, 1, fresh_reset_at
        except IntegrityError:
            continue
    raise SQLAlchemyError("Rate limit counter update kept conflicting")


def append_conversation_message(
    engine: Engine,
    *,
    conversation_id: str,
    role: str,
    content: str,
    mode: str,
    created_at: datetime,
) -> Dict[str, Any]:
    for _ in range(_CONTENTION_RETRIES):
        try:
            with engine.begin() as conn:
                last_seq = conn.execute(
                    select(func.max(conversation_messages.c.seq)).where(
                        conversation_messages.c.conversation_id == conversation_id
                    )
                ).scalar_one()
                seq = (last_seq or 0) + 1
                insert_row(
                    conn,
                    conversation_messages,
                    {
                        "conversation_id": conversation_id,
                        "seq": seq,
                        "role": role,
                        "content": content,
                        "mode": mode,
                        "created_at": created_at,
                    },
                )
                update_rows(
                    conn,
                    conversations,
                    {"updated_at": created_at},
                    conversations.c.conversation_id == conversation_id,
                )
                return select_row(
                    conn,
                    conversation_messages,
                    conversation_messages.c.conversation_id == conversation_id,
                    conversation_messages.c.seq == seq,
                )
        except IntegrityError:
            continue
    raise SQLAlchemyError("Conversation append kept conflicting")


def list_recent_messages(engine: Engine, conversation_id: str, limit: int) -> List[Dict[str, Any]]:
    with engine.connect() as conn:
        rows = select_rows(
            conn,
            conversation_messages,
            conversation_messages.c.conversation_id == conversation_id,
            order_by=[conversation_messages.c.seq.desc()],
            limit=limit,
        )
    rows.reverse()
    return rows


def transition_assignment_status(
    conn: Connection,
    *,
    assignment_id: str,
    from_statuses: Sequence[str],
    to_status: str,
    now: datetime,
    values: Optional[Dict[str, Any]] = None,
    claimed_by: Optional[str] = None,
) -> bool:
    """Compare-and-set the status column.

    False when the row was not in ``from_statuses`` or, with ``claimed_by``,
    is no longer held by that worker.
    """
    payload = dict(values or {})
    payload.update({"status": to_status, "updated_at": now})
    conditions = [
        assignments.c.assignment_id == assignment_id,
        assignments.c.status.in_(list(from_statuses)),
    ]
    if claimed_by is not None:
        conditions.append(assignments.c.claimed_by == claimed_by)
    return update_rows(conn, assignments, payload, *conditions) == 1


def claim_assignment(
    engine: Engine,
    *,
    assignment_id: str,
    worker_id: str,
    now: datetime,
    lease_seconds: int,
) -> bool:
    with engine.begin() as conn:
        claimed = update_rows(
            conn,
            assignments,
            {
                "claimed_by": worker_id,
                "lease_expires_at": now + timedelta(seconds=lease_seconds),
                "attempts": assignments.c.attempts + 1,
            },
            assignments.c.assignment_id == assignment_id,
            assignments.c.status == "in_progress",
            or_(
                assignments.c.claimed_by.is_(None),
                assignments.c.lease_expires_at.is_(None),
                assignments.c.lease_expires_at < ensure_utc(now),
            ),
        )
    return claimed == 1


def list_stale_assignment_ids(
    engine: Engine,
    *,
    now: datetime,
    updated_before: Optional[datetime] = None,
) -> List[str]:
    """In-progress assignments with no live lease, optionally only those idle since ``updated_before``."""
    conditions = [
        assignments.c.status == "in_progress",
        or_(
            assignments.c.lease_expires_at.is_(None),
            assignments.c.lease_expires_at < ensure_utc(now),
        ),
    ]
    if updated_before is not None:
        conditions.append(assignments.c.updated_at < ensure_utc(updated_before))
    stmt = select(assignments.c.assignment_id).where(*conditions).order_by(assignments.c.created_at.asc())
    with engine.connect() as conn:
        return [row[0] for row in conn.execute(stmt).fetchall()]


def find_overlapping_events(
    engine: Engine,
    *,
    user_id: str,
    start_time: datetime,
    end_time: datetime,
) -> List[Dict[str, Any]]:
    with engine.connect() as conn:
        return select_rows(
            conn,
            events,
            events.c.user_id == user_id,
            events.c.start_time <= ensure_utc(end_time),
            events.c.end_time >= ensure_utc(start_time),
            order_by=[events.c.start_time.asc()],
        )
