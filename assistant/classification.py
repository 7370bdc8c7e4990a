from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

from pydantic import ValidationError

from assistant.completion import CompletionClient, complete_prompt
from assistant.errors import CompletionError
from assistant.models.envelope import IntentEnvelope
from assistant.prompts import build_intent_prompt

logger = logging.getLogger("assistant.classification")

_FENCE = re.compile(r"^\s*```[A-Za-z0-9_-]*\s*\n?(?P<body>.*?)\n?\s*```\s*$", re.DOTALL)


def strip_code_fences(text: str) -> str:
    match = _FENCE.match(text)
    if match:
        return match.group("body").strip()
    return text.strip()


def parse_envelope_json(text: str) -> Optional[Any]:
    """Decode the first JSON object in ``text``, or None."""
    body = strip_code_fences(text)
    try:
        return json.loads(body)
    except ValueError:
        pass
    start = body.find("{")
    end = body.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        return json.loads(body[start : end + 1])
    except ValueError:
        return None


class IntentClassifier:
    def __init__(self, completion: CompletionClient, *, timeout_seconds: float) -> None:
        self._completion = completion
        self._timeout_seconds = timeout_seconds

    def classify(self, utterance: str, now_iso: str, timezone_name: str = "UTC") -> IntentEnvelope:
        """Best effort: every failure yields the neutral envelope.

        ``now_iso`` should carry the user's local offset so the model resolves
        relative times in ``timezone_name``.
        """
        prompt = build_intent_prompt(utterance, now_iso, timezone_name)
        try:
            raw = complete_prompt(self._completion, prompt, timeout_seconds=self._timeout_seconds)
        except CompletionError as exc:
            logger.warning("intent_classification_unavailable error=%s", exc)
            return IntentEnvelope.neutral()
        except Exception:
            logger.exception("intent_classification_failed")
            return IntentEnvelope.neutral()

        data = parse_envelope_json(raw)
        if not isinstance(data, dict):
            logger.info("intent_classification_unparseable response_chars=%s", len(raw))
            return IntentEnvelope.neutral()
        try:
            envelope = IntentEnvelope.model_validate(data)
        except ValidationError as exc:
            logger.info("intent_classification_invalid errors=%s", exc.error_count())
            return IntentEnvelope.neutral()
        logger.info(
            "intent_classified has_actions=%s needs_clarification=%s needs_permission=%s actions=%s",
            envelope.has_actions,
            envelope.needs_clarification,
            envelope.needs_permission,
            len(envelope.declared_actions()),
        )
        return envelope
