from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

PermissionKind = Literal["location", "contacts", "calendar", "photos", "microphone", "camera", "notifications"]
PERMISSION_KINDS = {"location", "contacts", "calendar", "photos", "microphone", "camera", "notifications"}

# Envelope list field -> action type, in dispatch order.
ACTION_FAMILIES: Tuple[Tuple[str, str], ...] = (
    ("tasks", "task"),
    ("assignments", "assignment"),
    ("reminders", "reminder"),
    ("notes", "note"),
    ("calendar_events", "calendar_event"),
    ("emails", "email_draft"),
    ("meetings", "meeting_request"),
)


class IntentEnvelope(BaseModel):
    """Classifier output. Action items stay loosely typed here and are
    validated one at a time when they are materialized."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    has_actions: bool = Field(default=False, alias="hasActions")
    needs_clarification: bool = Field(default=False, alias="needsClarification")
    clarification_needed: Optional[str] = Field(default=None, alias="clarificationNeeded")
    needs_permission: bool = Field(default=False, alias="needsPermission")
    permissions_needed: List[PermissionKind] = Field(default_factory=list, alias="permissionsNeeded")
    permission_reason: Optional[str] = Field(default=None, alias="permissionReason")
    tasks: List[Dict[str, Any]] = Field(default_factory=list)
    assignments: List[Dict[str, Any]] = Field(default_factory=list)
    reminders: List[Dict[str, Any]] = Field(default_factory=list)
    notes: List[Dict[str, Any]] = Field(default_factory=list)
    calendar_events: List[Dict[str, Any]] = Field(default_factory=list, alias="calendarEvents")
    emails: List[Dict[str, Any]] = Field(default_factory=list)
    meetings: List[Dict[str, Any]] = Field(default_factory=list)
    search: Optional[Dict[str, Any]] = None

    @field_validator("has_actions", "needs_clarification", "needs_permission", mode="before")
    @classmethod
    def _coerce_flag(cls, value: Any) -> bool:
        if isinstance(value, str):
            return value.strip().lower() in {"true", "yes", "1"}
        return bool(value)

    @field_validator("clarification_needed", "permission_reason", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @field_validator("permissions_needed", mode="before")
    @classmethod
    def _known_permissions(cls, value: Any) -> List[str]:
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list):
            return []
        kinds: List[str] = []
        for item in value:
            if isinstance(item, str) and item.lower() in PERMISSION_KINDS and item.lower() not in kinds:
                kinds.append(item.lower())
        return kinds

    @field_validator("tasks", "assignments", "reminders", "notes", "calendar_events", "emails", "meetings", mode="before")
    @classmethod
    def _action_items(cls, value: Any) -> List[Dict[str, Any]]:
        if value is None:
            return []
        if isinstance(value, dict):
            return [value]
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, dict)]

    @field_validator("search", mode="before")
    @classmethod
    def _search_request(cls, value: Any) -> Optional[Dict[str, Any]]:
        if isinstance(value, list):
            value = next((item for item in value if isinstance(item, dict)), None)
        if not isinstance(value, dict) or not value.get("query"):
            return None
        return value

    @model_validator(mode="after")
    def _short_circuit_excludes_actions(self) -> "IntentEnvelope":
        if self.needs_clarification or self.needs_permission:
            self.has_actions = False
            for field_name, _ in ACTION_FAMILIES:
                setattr(self, field_name, [])
            self.search = None
        return self

    @classmethod
    def neutral(cls) -> "IntentEnvelope":
        return cls()

    @property
    def short_circuited(self) -> bool:
        return self.needs_clarification or self.needs_permission

    def declared_actions(self) -> List[Tuple[str, Dict[str, Any]]]:
        if not self.has_actions:
            return []
        declared: List[Tuple[str, Dict[str, Any]]] = []
        for field_name, action_type in ACTION_FAMILIES:
            for item in getattr(self, field_name):
                declared.append((action_type, item))
        if self.search:
            declared.append(("search", self.search))
        return declared
