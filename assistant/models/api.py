from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from assistant.models.actions import ActionNotice, ActionSummary


class MessageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    mode: Literal["text", "voice"] = "text"


class MessageResponse(BaseModel):
    conversation_id: str
    reply_text: str
    created_actions: List[ActionSummary]
    notices: List[ActionNotice] = Field(default_factory=list)
    clarification: Optional[str] = None
    permissions_requested: List[str] = Field(default_factory=list)
    audio: Optional[str] = None


class ConversationMessage(BaseModel):
    seq: int
    role: Literal["user", "assistant"]
    content: str
    mode: str
    created_at: datetime


class Assignment(BaseModel):
    assignment_id: str
    title: str
    description: str
    query: str
    type: str
    priority: str
    status: Literal["in_progress", "completed", "failed"]
    findings: str
    last_error: Optional[str] = None
    attempts: int
    notification_sent: bool
    viewed: bool
    viewed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None


class AssignmentList(BaseModel):
    items: List[Assignment]
    total: int
    limit: int
    offset: int


class AssignmentStats(BaseModel):
    total: int
    in_progress: int
    completed: int
    failed: int
    recent_completed: List[Assignment]


class RetryRequest(BaseModel):
    force: bool = False


class Notification(BaseModel):
    notification_id: str
    type: str
    title: str
    message: str
    priority: str
    related_id: Optional[str] = None
    related_model: Optional[str] = None
    action_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    is_read: bool
    created_at: datetime


class IntegrationRequest(BaseModel):
    account_email: Optional[str] = None


class IntegrationStatus(BaseModel):
    provider: str
    kind: str
    connected: bool
    account_email: Optional[str] = None
