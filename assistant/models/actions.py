from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

Priority = Literal["low", "medium", "high"]
NoteCategory = Literal["personal", "work", "idea", "urgent"]
AssignmentType = Literal["research", "comparison", "recommendation", "investigation", "analysis"]
SearchType = Literal["web", "email", "calendar", "tasks"]


def _default_choice(value: Any, allowed: set, default: str) -> str:
    if isinstance(value, str) and value.strip().lower() in allowed:
        return value.strip().lower()
    return default


def _string_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [part for part in value.replace(";", ",").split(",")]
    if not isinstance(value, list):
        raise ValueError("Expected a list of strings")
    return [str(item).strip() for item in value if item is not None and str(item).strip()]


class ActionPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", str_strip_whitespace=True)


class TaskPayload(ActionPayload):
    title: str = Field(min_length=1)
    description: str = ""
    priority: Priority = "medium"
    due_date: Optional[str] = Field(default=None, alias="dueDate")

    @field_validator("priority", mode="before")
    @classmethod
    def _priority(cls, value: Any) -> str:
        return _default_choice(value, {"low", "medium", "high"}, "medium")

    @field_validator("description", mode="before")
    @classmethod
    def _description(cls, value: Any) -> str:
        return "" if value is None else value

    @field_validator("due_date", mode="before")
    @classmethod
    def _due_date(cls, value: Any) -> Optional[str]:
        if value is None or (isinstance(value, str) and value.strip().lower() in {"", "null", "none"}):
            return None
        return value


class AssignmentPayload(ActionPayload):
    title: str = Field(min_length=1)
    description: str = ""
    query: Optional[str] = None
    type: AssignmentType = "research"
    priority: Priority = "medium"

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, value: Any) -> str:
        return _default_choice(
            value, {"research", "comparison", "recommendation", "investigation", "analysis"}, "research"
        )

    @field_validator("priority", mode="before")
    @classmethod
    def _priority(cls, value: Any) -> str:
        return _default_choice(value, {"low", "medium", "high"}, "medium")

    @field_validator("description", mode="before")
    @classmethod
    def _description(cls, value: Any) -> str:
        return "" if value is None else value

    @property
    def research_query(self) -> str:
        return self.query or self.title


class ReminderPayload(ActionPayload):
    title: str = Field(min_length=1)
    notes: str = ""
    reminder_time: str = Field(min_length=1, alias="reminderTime")
    is_urgent: bool = Field(default=False, alias="isUrgent")

    @field_validator("notes", mode="before")
    @classmethod
    def _notes(cls, value: Any) -> str:
        return "" if value is None else value

    @field_validator("is_urgent", mode="before")
    @classmethod
    def _urgent(cls, value: Any) -> bool:
        return bool(value) if not isinstance(value, str) else value.strip().lower() in {"true", "yes", "1"}


class NotePayload(ActionPayload):
    title: Optional[str] = None
    content: str = Field(min_length=1)
    category: NoteCategory = "personal"
    tags: List[str] = Field(default_factory=list)

    @field_validator("category", mode="before")
    @classmethod
    def _category(cls, value: Any) -> str:
        return _default_choice(value, {"personal", "work", "idea", "urgent"}, "personal")

    @field_validator("tags", mode="before")
    @classmethod
    def _tags(cls, value: Any) -> List[str]:
        return _string_list(value)

    @property
    def display_title(self) -> str:
        if self.title:
            return self.title
        return self.content[:50] + ("..." if len(self.content) > 50 else "")


class CalendarEventPayload(ActionPayload):
    title: str = Field(min_length=1)
    description: str = ""
    start_time: str = Field(min_length=1, alias="startTime")
    end_time: str = Field(min_length=1, alias="endTime")
    location: str = ""
    attendees: List[str] = Field(default_factory=list)

    @field_validator("description", "location", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return "" if value is None else value

    @field_validator("attendees", mode="before")
    @classmethod
    def _attendees(cls, value: Any) -> List[str]:
        return _string_list(value)


class EmailDraftPayload(ActionPayload):
    to: List[str] = Field(min_length=1)
    cc: List[str] = Field(default_factory=list)
    subject: str = ""
    body: str = ""

    @field_validator("to", "cc", mode="before")
    @classmethod
    def _recipients(cls, value: Any) -> List[str]:
        return _string_list(value)

    @field_validator("subject", "body", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return "" if value is None else value


class MeetingRequestPayload(ActionPayload):
    provider: Optional[str] = None
    title: str = Field(min_length=1)
    start_time: str = Field(min_length=1, alias="startTime")
    duration: int = Field(default=60, gt=0, le=24 * 60)
    description: str = ""
    attendees: List[str] = Field(default_factory=list)

    @field_validator("duration", mode="before")
    @classmethod
    def _duration(cls, value: Any) -> Any:
        return 60 if value is None or value == "" else value

    @field_validator("description", mode="before")
    @classmethod
    def _description(cls, value: Any) -> str:
        return "" if value is None else value

    @field_validator("attendees", mode="before")
    @classmethod
    def _attendees(cls, value: Any) -> List[str]:
        return _string_list(value)


class SearchPayload(ActionPayload):
    query: str = Field(min_length=1)
    type: SearchType = "web"

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, value: Any) -> str:
        return _default_choice(value, {"web", "email", "calendar", "tasks"}, "web")


PAYLOAD_MODELS: Dict[str, type] = {
    "task": TaskPayload,
    "assignment": AssignmentPayload,
    "reminder": ReminderPayload,
    "note": NotePayload,
    "calendar_event": CalendarEventPayload,
    "email_draft": EmailDraftPayload,
    "meeting_request": MeetingRequestPayload,
    "search": SearchPayload,
}


class ActionSummary(BaseModel):
    type: str
    id: str
    title: str


class ActionNotice(BaseModel):
    type: str
    title: str
    allowed: bool
    reason: Optional[str] = None
    suggestion: Optional[str] = None
    severity: Optional[str] = None
