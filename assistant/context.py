from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import Engine
from sqlalchemy.exc import SQLAlchemyError

from assistant.completion import Message
from assistant.errors import ConversationNotFoundError
from assistant.integrations import PROVIDER_KINDS, IntegrationStatusProvider
from assistant.prompts import build_system_prompt
from assistant.storage import db
from assistant.storage.schema import conversation_messages, conversations
from assistant.storage.stores import Stores
from assistant.util.ids import new_conversation_id
from assistant.util.timeparse import utc_now

logger = logging.getLogger("assistant.context")

CONTEXT_UNAVAILABLE = "Unable to retrieve context at this time."
TITLE_CHARS = 50
NOTE_CATEGORIES = ("personal", "work", "idea", "urgent", "research")

_CODE_FENCE = re.compile(r"```.*?```", re.DOTALL)
_LINK = re.compile(r"\[([^\]]+)\]\([^)]+\)")
_URL = re.compile(r"https?://\S+")
_EMPHASIS = re.compile(r"(\*\*|__|\*|_|`|~~)")
_HEADING = re.compile(r"^\s{0,3}#{1,6}\s*", re.MULTILINE)
_BULLET = re.compile(r"^\s*(?:[-*+•]|\d+[.)])\s+", re.MULTILINE)


def to_spoken_text(text: str) -> str:
    """Flatten a markdown-ish reply into plain sentences for speech."""
    spoken = _CODE_FENCE.sub(" ", text)
    spoken = _LINK.sub(r"\1", spoken)
    spoken = _URL.sub("", spoken)
    spoken = _HEADING.sub("", spoken)
    spoken = _BULLET.sub("", spoken)
    spoken = _EMPHASIS.sub("", spoken)
    lines = [line.strip() for line in spoken.splitlines() if line.strip()]
    joined = ""
    for line in lines:
        if joined and joined[-1] not in ".!?:;,":
            joined += "."
        joined = f"{joined} {line}" if joined else line
    return re.sub(r"\s+", " ", joined).strip()


@dataclass
class ConversationContext:
    conversation_id: str
    user_id: str
    mode: str
    created: bool = False


class ContextAccumulator:
    """Owns the per-conversation message log and the per-turn context digest."""

    def __init__(
        self,
        engine: Engine,
        stores: Stores,
        integrations: IntegrationStatusProvider,
        *,
        window: int,
        user_timezone: str,
        assistant_name: str,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._engine = engine
        self._stores = stores
        self._integrations = integrations
        self._window = window
        self._user_timezone = user_timezone
        self._assistant_name = assistant_name
        self._clock = clock

    def open(self, user_id: str, conversation_id: Optional[str], mode: str, first_text: str) -> ConversationContext:
        now = self._clock()
        if conversation_id:
            with self._engine.begin() as conn:
                key = (conversations.c.conversation_id == conversation_id, conversations.c.user_id == user_id)
                row = db.select_row(conn, conversations, *key)
                if row is None:
                    raise ConversationNotFoundError(f"Conversation not found: {conversation_id}")
                if row["mode"] != mode:
                    db.update_rows(conn, conversations, {"mode": mode, "updated_at": now}, *key)
            return ConversationContext(conversation_id=conversation_id, user_id=user_id, mode=mode)

        conversation_id = new_conversation_id()
        title = first_text.strip()[:TITLE_CHARS] or "New conversation"
        with self._engine.begin() as conn:
            db.insert_row(
                conn,
                conversations,
                {
                    "conversation_id": conversation_id,
                    "user_id": user_id,
                    "title": title,
                    "mode": mode,
                    "created_at": now,
                    "updated_at": now,
                },
            )
        logger.info("conversation_created conversation_id=%s user_id=%s mode=%s", conversation_id, user_id, mode)
        return ConversationContext(conversation_id=conversation_id, user_id=user_id, mode=mode, created=True)

    def append(self, context: ConversationContext, role: str, content: str) -> Dict[str, Any]:
        return db.append_conversation_message(
            self._engine,
            conversation_id=context.conversation_id,
            role=role,
            content=content,
            mode=context.mode,
            created_at=self._clock(),
        )

    def recent_messages(self, conversation_id: str) -> List[Dict[str, Any]]:
        return db.list_recent_messages(self._engine, conversation_id, self._window)

    def list_messages(self, user_id: str, conversation_id: str, *, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        with self._engine.connect() as conn:
            owner = db.select_row(
                conn,
                conversations,
                conversations.c.conversation_id == conversation_id,
                conversations.c.user_id == user_id,
            )
            if owner is None:
                raise ConversationNotFoundError(f"Conversation not found: {conversation_id}")
            return db.select_rows(
                conn,
                conversation_messages,
                conversation_messages.c.conversation_id == conversation_id,
                order_by=[conversation_messages.c.seq.asc()],
                limit=limit,
                offset=offset,
            )

    def _day_bounds(self, now: datetime) -> tuple:
        zone = ZoneInfo(self._user_timezone)
        today = now.astimezone(zone).date()
        start = datetime.combine(today, time(0, 0), tzinfo=zone).astimezone(timezone.utc)
        return start, start + timedelta(days=1)

    def build_context_summary(self, user_id: str) -> str:
        try:
            return self._summarise(user_id)
        except SQLAlchemyError:
            logger.exception("context_summary_failed user_id=%s", user_id)
            return CONTEXT_UNAVAILABLE

    def _summarise(self, user_id: str) -> str:
        stores = self._stores
        now = self._clock()
        day_start, day_end = self._day_bounds(now)

        task = stores.tasks.table.c
        pending = task.status == "pending"
        reminder = stores.reminders.table.c
        active = reminder.status == "active"
        event = stores.events.table.c
        assignment = stores.assignments.table.c
        notification = stores.notifications.table.c

        todays_events = stores.events.list_for_user(
            user_id,
            event.start_time >= day_start,
            event.start_time < day_end,
            order_by=[event.start_time.asc()],
            limit=5,
        )
        zone = ZoneInfo(self._user_timezone)
        event_lines = [
            f"  - {row['start_time'].astimezone(zone).strftime('%H:%M')} {row['title']}" for row in todays_events
        ]

        connected = self._integrations.connected_providers(user_id)
        connected_names = {row["provider"] for row in connected}
        integration_lines = []
        for provider, kind in PROVIDER_KINDS.items():
            entry = next((row for row in connected if row["provider"] == provider), None)
            if entry is None:
                status = "Not connected"
            elif entry.get("account_email"):
                status = f"Connected ({entry['account_email']})"
            else:
                status = "Connected"
            integration_lines.append(f"- {provider} ({kind}): {status}")

        lines = [
            "CURRENT USER CONTEXT:",
            "",
            f"Current time: {now.astimezone(zone).strftime('%A %d %B %Y %H:%M')} ({self._user_timezone})",
            "",
            "TASKS:",
            f"- Pending: {stores.tasks.count_for_user(user_id, pending)}",
            f"- Overdue: {stores.tasks.count_for_user(user_id, pending, task.due_date < now)}",
            f"- Due Today: {stores.tasks.count_for_user(user_id, pending, task.due_date >= day_start, task.due_date < day_end)}",
            f"- High Priority: {stores.tasks.count_for_user(user_id, pending, task.priority == 'high')}",
            "",
            "REMINDERS:",
            f"- Active: {stores.reminders.count_for_user(user_id, active)}",
            f"- Urgent: {stores.reminders.count_for_user(user_id, active, reminder.is_urgent.is_(True))}",
            "- Due Today: "
            f"{stores.reminders.count_for_user(user_id, active, reminder.reminder_time >= day_start, reminder.reminder_time < day_end)}",
            "",
            "NOTES:",
            f"- Total: {stores.notes.count_for_user(user_id)}",
        ]
        for category in NOTE_CATEGORIES:
            count = stores.notes.count_for_user(user_id, stores.notes.table.c.category == category)
            lines.append(f"- {category.capitalize()}: {count}")
        lines += [
            "",
            "CALENDAR EVENTS:",
            f"- Today: {stores.events.count_for_user(user_id, event.start_time >= day_start, event.start_time < day_end)}",
            *event_lines,
            f"- Upcoming (7 days): {stores.events.count_for_user(user_id, event.start_time >= now, event.start_time < now + timedelta(days=7))}",
            "",
            "ASSIGNMENTS:",
            f"- In Progress: {stores.assignments.count_for_user(user_id, assignment.status == 'in_progress')}",
            "- Completed, not yet viewed: "
            f"{stores.assignments.count_for_user(user_id, assignment.status == 'completed', assignment.viewed.is_(False))}",
            "",
            "NOTIFICATIONS:",
            f"- Unread: {stores.notifications.count_for_user(user_id, notification.is_read.is_(False))}",
            "",
            f"INTEGRATIONS ({len(connected_names)} connected):",
            *integration_lines,
            "",
            "Use this context to answer questions and personalise your help.",
        ]
        return "\n".join(lines)

    def build_reply_messages(
        self,
        context: ConversationContext,
        *,
        turn_instruction: Optional[str] = None,
    ) -> List[Message]:
        summary = self.build_context_summary(context.user_id)
        messages: List[Message] = [
            {"role": "system", "content": build_system_prompt(self._assistant_name, summary, context.mode)}
        ]
        for row in self.recent_messages(context.conversation_id):
            messages.append({"role": row["role"], "content": row["content"]})
        if turn_instruction:
            messages.append({"role": "system", "content": turn_instruction})
        return messages
