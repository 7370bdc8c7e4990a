from __future__ import annotations

from typing import Any, Dict, List, Optional


class AssistantError(Exception):
    code = "assistant_error"


class EmptyUtteranceError(AssistantError):
    code = "empty_utterance"


class CompletionError(AssistantError):
    code = "completion_failed"


class ReplyGenerationError(AssistantError):
    code = "reply_generation_failed"

    def __init__(
        self,
        message: str,
        *,
        conversation_id: Optional[str] = None,
        created_actions: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        super().__init__(message)
        self.conversation_id = conversation_id
        self.created_actions = created_actions or []


class InvalidTransitionError(AssistantError):
    code = "invalid_transition"

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Cannot move assignment from {current} to {target}")
        self.current = current
        self.target = target


class AssignmentNotFoundError(AssistantError):
    code = "assignment_not_found"


class ConversationNotFoundError(AssistantError):
    code = "conversation_not_found"
