from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from assistant.guardrails import ActionContext, GuardrailEngine, GuardrailResult
from assistant.models.actions import (
    PAYLOAD_MODELS,
    ActionNotice,
    ActionPayload,
    ActionSummary,
    AssignmentPayload,
    CalendarEventPayload,
    EmailDraftPayload,
    MeetingRequestPayload,
    NotePayload,
    ReminderPayload,
    SearchPayload,
    TaskPayload,
)
from assistant.models.envelope import IntentEnvelope
from assistant.storage.stores import Stores
from assistant.util.timeparse import resolve_instant, utc_now

logger = logging.getLogger("assistant.materializer")


class ActionDenied(Exception):
    """A follow-up check refused an item after the main guardrail pass."""

    def __init__(self, result: GuardrailResult) -> None:
        super().__init__(result.reason or "denied")
        self.result = result


@dataclass
class MaterializationResult:
    created: List[ActionSummary] = field(default_factory=list)
    notices: List[ActionNotice] = field(default_factory=list)
    failed: int = 0
    queued_assignments: List[str] = field(default_factory=list)


def _notice(action_type: str, title: str, result: GuardrailResult) -> ActionNotice:
    return ActionNotice(
        type=action_type,
        title=title,
        allowed=result.allowed,
        reason=result.reason,
        suggestion=result.suggestion,
        severity=result.severity,
    )


def _guardrail_text(action_type: str, payload: ActionPayload) -> str:
    if isinstance(payload, TaskPayload):
        parts = [payload.title, payload.description]
    elif isinstance(payload, AssignmentPayload):
        parts = [payload.title, payload.description, payload.query or ""]
    elif isinstance(payload, ReminderPayload):
        parts = [payload.title, payload.notes]
    elif isinstance(payload, NotePayload):
        parts = [payload.title or "", payload.content]
    elif isinstance(payload, CalendarEventPayload):
        parts = [payload.title, payload.description, payload.location]
    elif isinstance(payload, EmailDraftPayload):
        parts = [payload.subject, payload.body]
    elif isinstance(payload, MeetingRequestPayload):
        parts = [payload.title, payload.description]
    elif isinstance(payload, SearchPayload):
        parts = [payload.query]
    else:
        raise ValueError(f"Unsupported action type: {action_type}")
    return "\n".join(part for part in parts if part)


def _display_title(payload: ActionPayload) -> str:
    if isinstance(payload, NotePayload):
        return payload.display_title
    if isinstance(payload, EmailDraftPayload):
        return payload.subject or f"Email to {', '.join(payload.to)}"
    if isinstance(payload, SearchPayload):
        return payload.query
    return getattr(payload, "title", "")


def _flatten_text(value: Any) -> str:
    if isinstance(value, dict):
        return "\n".join(_flatten_text(item) for item in value.values())
    if isinstance(value, list):
        return "\n".join(_flatten_text(item) for item in value)
    return "" if value is None else str(value)


def _raw_title(item: Dict[str, Any]) -> str:
    for key in ("title", "subject", "query", "content"):
        value = item.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()[:80]
    return ""


class ActionMaterializer:
    """Turns an envelope's declared actions into stored entities, one item at a time.

    An item that fails validation, time resolution, a guardrail or its store
    write is skipped; its siblings are still attempted. Created assignments are
    handed to ``queue_assignment`` after they are committed.
    """

    def __init__(
        self,
        stores: Stores,
        guardrails: GuardrailEngine,
        *,
        user_timezone: str,
        default_meeting_provider: str,
        queue_assignment: Callable[[str], None],
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._stores = stores
        self._guardrails = guardrails
        self._user_timezone = user_timezone
        self._default_meeting_provider = default_meeting_provider
        self._queue_assignment = queue_assignment
        self._clock = clock
        self._handlers: Dict[str, Callable[[str, Any, str, MaterializationResult], ActionSummary]] = {
            "task": self._create_task,
            "assignment": self._create_assignment,
            "reminder": self._create_reminder,
            "note": self._create_note,
            "calendar_event": self._create_event,
            "email_draft": self._create_email_draft,
            "meeting_request": self._create_meeting,
            "search": self._create_search,
        }

    def materialize(self, user_id: str, envelope: IntentEnvelope, *, created_by: str = "ai") -> MaterializationResult:
        result = MaterializationResult()
        for action_type, item in envelope.declared_actions():
            summary = self.materialize_item(user_id, action_type, item, created_by=created_by, result=result)
            if summary is None:
                continue
            result.created.append(summary)
            if action_type == "assignment":
                result.queued_assignments.append(summary.id)
                self._queue_assignment(summary.id)
        logger.info(
            "actions_materialized user_id=%s created=%s notices=%s failed=%s",
            user_id,
            len(result.created),
            len(result.notices),
            result.failed,
        )
        return result

    def materialize_item(
        self,
        user_id: str,
        action_type: str,
        item: Dict[str, Any],
        *,
        created_by: str,
        result: MaterializationResult,
    ) -> Optional[ActionSummary]:
        model = PAYLOAD_MODELS.get(action_type)
        if model is None:
            logger.warning("action_type_unknown user_id=%s action_type=%s", user_id, action_type)
            result.failed += 1
            return None
        try:
            payload = model.model_validate(item)
        except ValidationError as exc:
            logger.warning(
                "action_payload_invalid user_id=%s action_type=%s title=%s errors=%s",
                user_id,
                action_type,
                _raw_title(item),
                exc.error_count(),
            )
            result.failed += 1
            return None

        title = _display_title(payload)
        context = ActionContext(user_id=user_id, action_type=action_type, content=_guardrail_text(action_type, payload))
        screened = self._guardrails.check_sensitive_data(_flatten_text(item))
        if not screened.allowed:
            self._guardrails.log_guardrail_action(screened, context)
            result.notices.append(_notice(action_type, title, screened))
            return None
        verdict = self._guardrails.check(context)
        if not verdict.allowed:
            result.notices.append(_notice(action_type, title, verdict))
            return None
        if verdict.advisory:
            result.notices.append(_notice(action_type, title, verdict))

        try:
            return self._handlers[action_type](user_id, payload, created_by, result)
        except ActionDenied as denied:
            self._guardrails.log_guardrail_action(
                denied.result, ActionContext(user_id=user_id, action_type=action_type, content=title)
            )
            result.notices.append(_notice(action_type, title, denied.result))
        except ValueError as exc:
            logger.warning(
                "action_time_unresolved user_id=%s action_type=%s title=%s error=%s",
                user_id,
                action_type,
                title,
                exc,
            )
            result.notices.append(
                ActionNotice(
                    type=action_type,
                    title=title,
                    allowed=False,
                    reason="Invalid date/time",
                    suggestion='I need a specific time for this. Try something like "tomorrow at 3pm".',
                    severity="error",
                )
            )
        except SQLAlchemyError:
            logger.exception("action_store_failed user_id=%s action_type=%s title=%s", user_id, action_type, title)
        result.failed += 1
        return None

    def _resolve(self, value: str, *, allow_date_only: bool = False) -> datetime:
        return resolve_instant(
            value,
            user_timezone=self._user_timezone,
            now=self._clock(),
            allow_date_only=allow_date_only,
        )

    def _check_time(self, action_type: str, title: str, when: datetime, result: MaterializationResult) -> None:
        verdict = self._guardrails.validate_datetime(when)
        if not verdict.allowed:
            raise ActionDenied(verdict)
        if verdict.advisory:
            result.notices.append(_notice(action_type, title, verdict))

    def _create_task(
        self, user_id: str, payload: TaskPayload, created_by: str, result: MaterializationResult
    ) -> ActionSummary:
        due_date: Optional[datetime] = None
        if payload.due_date:
            try:
                due_date = self._resolve(payload.due_date, allow_date_only=True)
            except ValueError as exc:
                logger.info("task_due_date_dropped user_id=%s title=%s error=%s", user_id, payload.title, exc)
        record = self._stores.tasks.create(
            {
                "user_id": user_id,
                "title": payload.title,
                "description": payload.description,
                "priority": payload.priority,
                "due_date": due_date,
                "status": "pending",
                "created_by": created_by,
            }
        )
        return ActionSummary(type="task", id=record["task_id"], title=record["title"])

    def _create_assignment(
        self, user_id: str, payload: AssignmentPayload, created_by: str, result: MaterializationResult
    ) -> ActionSummary:
        record = self._stores.assignments.create(
            {
                "user_id": user_id,
                "title": payload.title,
                "description": payload.description,
                "query": payload.research_query,
                "type": payload.type,
                "priority": payload.priority,
                "status": "in_progress",
                "findings": "",
                "attempts": 0,
                "notification_sent": False,
                "viewed": False,
            }
        )
        return ActionSummary(type="assignment", id=record["assignment_id"], title=record["title"])

    def _create_reminder(
        self, user_id: str, payload: ReminderPayload, created_by: str, result: MaterializationResult
    ) -> ActionSummary:
        reminder_time = self._resolve(payload.reminder_time)
        self._check_time("reminder", payload.title, reminder_time, result)
        record = self._stores.reminders.create(
            {
                "user_id": user_id,
                "title": payload.title,
                "notes": payload.notes,
                "reminder_time": reminder_time,
                "is_urgent": payload.is_urgent,
                "status": "active",
            }
        )
        return ActionSummary(type="reminder", id=record["reminder_id"], title=record["title"])

    def _create_note(
        self, user_id: str, payload: NotePayload, created_by: str, result: MaterializationResult
    ) -> ActionSummary:
        record = self._stores.notes.create(
            {
                "user_id": user_id,
                "title": payload.display_title,
                "content": payload.content,
                "category": payload.category,
                "tags": payload.tags,
                "meta": {"source": created_by},
            }
        )
        return ActionSummary(type="note", id=record["note_id"], title=record["title"])

    def _create_event(
        self, user_id: str, payload: CalendarEventPayload, created_by: str, result: MaterializationResult
    ) -> ActionSummary:
        start_time = self._resolve(payload.start_time)
        end_time = self._resolve(payload.end_time)
        if end_time < start_time:
            raise ValueError("Event ends before it starts")
        self._check_time("calendar_event", payload.title, start_time, result)
        conflict = self._guardrails.check_conflicts(
            ActionContext(
                user_id=user_id,
                action_type="calendar_event",
                content=payload.title,
                metadata={"start_time": start_time, "end_time": end_time},
            )
        )
        if conflict.advisory:
            result.notices.append(_notice("calendar_event", payload.title, conflict))
        record = self._stores.events.create(
            {
                "user_id": user_id,
                "title": payload.title,
                "description": payload.description,
                "start_time": start_time,
                "end_time": end_time,
                "location": payload.location,
                "attendees": payload.attendees,
                "source": "manual",
            }
        )
        return ActionSummary(type="calendar_event", id=record["event_id"], title=record["title"])

    def _create_email_draft(
        self, user_id: str, payload: EmailDraftPayload, created_by: str, result: MaterializationResult
    ) -> ActionSummary:
        verdict = self._guardrails.validate_email_recipients(payload.to + payload.cc)
        if not verdict.allowed:
            raise ActionDenied(verdict)
        record = self._stores.email_drafts.create(
            {
                "user_id": user_id,
                "recipients": payload.to,
                "cc": payload.cc,
                "subject": payload.subject,
                "body": payload.body,
                "is_draft": True,
            }
        )
        return ActionSummary(type="email_draft", id=record["draft_id"], title=_display_title(payload))

    def _create_meeting(
        self, user_id: str, payload: MeetingRequestPayload, created_by: str, result: MaterializationResult
    ) -> ActionSummary:
        start_time = self._resolve(payload.start_time)
        self._check_time("meeting_request", payload.title, start_time, result)
        record = self._stores.meetings.create(
            {
                "user_id": user_id,
                "provider": payload.provider or self._default_meeting_provider,
                "title": payload.title,
                "start_time": start_time,
                "duration_minutes": payload.duration,
                "description": payload.description,
                "attendees": payload.attendees,
                "status": "pending_provider",
            }
        )
        return ActionSummary(type="meeting_request", id=record["meeting_id"], title=record["title"])

    def _create_search(
        self, user_id: str, payload: SearchPayload, created_by: str, result: MaterializationResult
    ) -> ActionSummary:
        record = self._stores.searches.create(
            {"user_id": user_id, "query": payload.query, "search_type": payload.type}
        )
        return ActionSummary(type="search", id=record["search_id"], title=record["query"])
