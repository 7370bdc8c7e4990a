from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Literal, Optional
from zoneinfo import ZoneInfo

from assistant.classification import IntentClassifier
from assistant.completion import CompletionClient
from assistant.context import ContextAccumulator, to_spoken_text
from assistant.errors import CompletionError, EmptyUtteranceError, ReplyGenerationError
from assistant.materializer import ActionMaterializer
from assistant.models.actions import ActionNotice, ActionSummary
from assistant.prompts import build_turn_outcome_prompt
from assistant.util.timeparse import utc_now

logger = logging.getLogger("assistant.orchestrator")

Mode = Literal["text", "voice"]


@dataclass
class UtteranceResult:
    conversation_id: str
    reply_text: str
    created_actions: List[ActionSummary] = field(default_factory=list)
    notices: List[ActionNotice] = field(default_factory=list)
    clarification: Optional[str] = None
    permissions_requested: List[str] = field(default_factory=list)
    audio: Optional[str] = None


def _describe_refusal(notice: ActionNotice) -> str:
    text = f"{notice.type} '{notice.title}': {notice.reason}"
    if notice.suggestion:
        text += f" ({notice.suggestion})"
    return text


class Orchestrator:
    """Runs one utterance through classify, guard, materialize and reply.

    Text and voice turns share this path; ``mode`` only changes the task
    provenance and the shape of the final reply.
    """

    def __init__(
        self,
        *,
        context: ContextAccumulator,
        classifier: IntentClassifier,
        materializer: ActionMaterializer,
        completion: CompletionClient,
        reply_timeout_seconds: float,
        reply_max_tokens: int,
        voice_reply_max_tokens: int,
        user_timezone: str = "UTC",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._context = context
        self._classifier = classifier
        self._materializer = materializer
        self._completion = completion
        self._reply_timeout_seconds = reply_timeout_seconds
        self._reply_max_tokens = reply_max_tokens
        self._voice_reply_max_tokens = voice_reply_max_tokens
        self._user_timezone = user_timezone
        self._clock = clock

    def handle_utterance(
        self,
        user_id: str,
        conversation_id: Optional[str],
        text: str,
        mode: Mode = "text",
    ) -> UtteranceResult:
        utterance = (text or "").strip()
        if not utterance:
            raise EmptyUtteranceError("Utterance is empty")

        context = self._context.open(user_id, conversation_id, mode, utterance)
        self._context.append(context, "user", utterance)
        logger.info(
            "utterance_received conversation_id=%s user_id=%s mode=%s chars=%s",
            context.conversation_id,
            user_id,
            mode,
            len(utterance),
        )

        local_now = self._clock().astimezone(ZoneInfo(self._user_timezone))
        envelope = self._classifier.classify(utterance, local_now.isoformat(), self._user_timezone)
        outcome = self._materializer.materialize(
            user_id,
            envelope,
            created_by="voice" if mode == "voice" else "ai",
        )

        clarification = envelope.clarification_needed if envelope.needs_clarification else None
        if envelope.needs_clarification and not clarification:
            clarification = "Could you give me a few more details?"
        permissions = list(envelope.permissions_needed) if envelope.needs_permission else []

        instruction = build_turn_outcome_prompt(
            created=[f"{summary.type}: {summary.title}" for summary in outcome.created],
            refused=[_describe_refusal(notice) for notice in outcome.notices if not notice.allowed],
            clarification=clarification,
            permissions=permissions,
            permission_reason=envelope.permission_reason,
        )
        messages = self._context.build_reply_messages(context, turn_instruction=instruction)
        max_tokens = self._voice_reply_max_tokens if mode == "voice" else self._reply_max_tokens
        try:
            reply = self._completion.complete(
                messages,
                timeout_seconds=self._reply_timeout_seconds,
                max_tokens=max_tokens,
            ).strip()
            if not reply:
                raise CompletionError("Reply was empty")
        except CompletionError as exc:
            logger.error(
                "reply_generation_failed conversation_id=%s created_actions=%s error=%s",
                context.conversation_id,
                len(outcome.created),
                exc,
            )
            raise ReplyGenerationError(
                "Sorry, something went wrong while I was putting my reply together.",
                conversation_id=context.conversation_id,
                created_actions=[summary.model_dump() for summary in outcome.created],
            ) from exc

        if mode == "voice":
            reply = to_spoken_text(reply) or reply
        self._context.append(context, "assistant", reply)
        logger.info(
            "utterance_handled conversation_id=%s created_actions=%s notices=%s clarification=%s",
            context.conversation_id,
            len(outcome.created),
            len(outcome.notices),
            clarification is not None,
        )
        return UtteranceResult(
            conversation_id=context.conversation_id,
            reply_text=reply,
            created_actions=outcome.created,
            notices=outcome.notices,
            clarification=clarification,
            permissions_requested=permissions,
        )
