from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import Connection, Engine, Table

from assistant.storage import db
from assistant.storage.schema import (
    assignments,
    email_drafts,
    events,
    meeting_requests,
    notes,
    notifications,
    reminders,
    search_requests,
    tasks,
)
from assistant.util.ids import new_id
from assistant.util.timeparse import utc_now

Clock = Callable[[], datetime]


class EntityStore:
    """Owner-scoped CRUD over one entity table."""

    def __init__(
        self,
        engine: Engine,
        table: Table,
        *,
        id_column: str,
        id_prefix: str,
        clock: Clock = utc_now,
    ) -> None:
        self.engine = engine
        self.table = table
        self.id_column = table.c[id_column]
        self.id_prefix = id_prefix
        self.clock = clock

    def _scope(self, entity_id: str, user_id: Optional[str]) -> List[Any]:
        conditions = [self.id_column == entity_id]
        if user_id is not None:
            conditions.append(self.table.c.user_id == user_id)
        return conditions

    def create(self, record: Dict[str, Any], *, conn: Optional[Connection] = None) -> Dict[str, Any]:
        if not record.get("user_id"):
            raise ValueError(f"{self.table.name} record requires user_id")
        values = dict(record)
        values.setdefault(self.id_column.name, new_id(self.id_prefix))
        now = self.clock()
        for column in ("created_at", "updated_at"):
            if column in self.table.c:
                values.setdefault(column, now)
        with db.transaction(self.engine, conn) as active:
            db.insert_row(active, self.table, values)
            return db.select_row(active, self.table, self.id_column == values[self.id_column.name])

    def find_by_id(
        self,
        entity_id: str,
        *,
        user_id: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> Optional[Dict[str, Any]]:
        with db.transaction(self.engine, conn) as active:
            return db.select_row(active, self.table, *self._scope(entity_id, user_id))

    def update(
        self,
        entity_id: str,
        values: Dict[str, Any],
        *,
        user_id: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> Optional[Dict[str, Any]]:
        payload = dict(values)
        if "updated_at" in self.table.c:
            payload.setdefault("updated_at", self.clock())
        with db.transaction(self.engine, conn) as active:
            if not db.update_rows(active, self.table, payload, *self._scope(entity_id, user_id)):
                return None
            return db.select_row(active, self.table, self.id_column == entity_id)

    def delete(self, entity_id: str, *, user_id: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(self.table.delete().where(*self._scope(entity_id, user_id)))
        return result.rowcount == 1

    def list_for_user(
        self,
        user_id: str,
        *conditions: Any,
        order_by: Sequence[Any] = (),
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        with self.engine.connect() as conn:
            return db.select_rows(
                conn,
                self.table,
                self.table.c.user_id == user_id,
                *conditions,
                order_by=order_by or [self.table.c.created_at.desc()],
                limit=limit,
                offset=offset,
            )

    def count_for_user(self, user_id: str, *conditions: Any) -> int:
        return db.count_rows(self.engine, self.table, self.table.c.user_id == user_id, *conditions)


class AssignmentStore(EntityStore):
    def __init__(self, engine: Engine, *, clock: Clock = utc_now) -> None:
        super().__init__(engine, assignments, id_column="assignment_id", id_prefix="asg", clock=clock)

    def transition(
        self,
        assignment_id: str,
        *,
        from_statuses: Sequence[str],
        to_status: str,
        values: Optional[Dict[str, Any]] = None,
        claimed_by: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> bool:
        with db.transaction(self.engine, conn) as active:
            return db.transition_assignment_status(
                active,
                assignment_id=assignment_id,
                from_statuses=from_statuses,
                to_status=to_status,
                now=self.clock(),
                values=values,
                claimed_by=claimed_by,
            )

    def mark_viewed(self, assignment_id: str, *, user_id: str) -> Optional[Dict[str, Any]]:
        now = self.clock()
        return self.update(assignment_id, {"viewed": True, "viewed_at": now}, user_id=user_id)

    def claim(self, assignment_id: str, *, worker_id: str, lease_seconds: int) -> bool:
        return db.claim_assignment(
            self.engine,
            assignment_id=assignment_id,
            worker_id=worker_id,
            now=self.clock(),
            lease_seconds=lease_seconds,
        )

    def stale_ids(self, *, stale_after_seconds: Optional[int] = None) -> List[str]:
        now = self.clock()
        updated_before = None
        if stale_after_seconds is not None:
            updated_before = now - timedelta(seconds=stale_after_seconds)
        return db.list_stale_assignment_ids(self.engine, now=now, updated_before=updated_before)

    def stats(self, user_id: str) -> Dict[str, Any]:
        column = self.table.c.status
        return {
            "total": self.count_for_user(user_id),
            "in_progress": self.count_for_user(user_id, column == "in_progress"),
            "completed": self.count_for_user(user_id, column == "completed"),
            "failed": self.count_for_user(user_id, column == "failed"),
            "recent_completed": self.list_for_user(
                user_id,
                column == "completed",
                order_by=[self.table.c.completed_at.desc()],
                limit=5,
            ),
        }


class NotificationEmitter(EntityStore):
    def __init__(self, engine: Engine, *, clock: Clock = utc_now) -> None:
        super().__init__(engine, notifications, id_column="notification_id", id_prefix="ntf", clock=clock)

    def create_notification(
        self,
        *,
        user_id: str,
        type: str,
        title: str,
        message: str,
        priority: str = "medium",
        related_id: Optional[str] = None,
        related_model: Optional[str] = None,
        action_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        conn: Optional[Connection] = None,
    ) -> Dict[str, Any]:
        return self.create(
            {
                "user_id": user_id,
                "type": type,
                "title": title,
                "message": message,
                "priority": priority,
                "related_id": related_id,
                "related_model": related_model,
                "action_url": action_url,
                "meta": metadata or {},
            },
            conn=conn,
        )


@dataclass
class Stores:
    tasks: EntityStore
    reminders: EntityStore
    notes: EntityStore
    events: EntityStore
    email_drafts: EntityStore
    meetings: EntityStore
    searches: EntityStore
    assignments: AssignmentStore
    notifications: NotificationEmitter


def build_stores(engine: Engine, *, clock: Clock = utc_now) -> Stores:
    return Stores(
        tasks=EntityStore(engine, tasks, id_column="task_id", id_prefix="tsk", clock=clock),
        reminders=EntityStore(engine, reminders, id_column="reminder_id", id_prefix="rem", clock=clock),
        notes=EntityStore(engine, notes, id_column="note_id", id_prefix="note", clock=clock),
        events=EntityStore(engine, events, id_column="event_id", id_prefix="evt", clock=clock),
        email_drafts=EntityStore(engine, email_drafts, id_column="draft_id", id_prefix="eml", clock=clock),
        meetings=EntityStore(engine, meeting_requests, id_column="meeting_id", id_prefix="mtg", clock=clock),
        searches=EntityStore(engine, search_requests, id_column="search_id", id_prefix="srch", clock=clock),
        assignments=AssignmentStore(engine, clock=clock),
        notifications=NotificationEmitter(engine, clock=clock),
    )
