from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Optional

import httpx

from assistant.errors import CompletionError

logger = logging.getLogger("assistant.completion")

Message = Dict[str, str]


class CompletionClient:
    def complete(
        self,
        messages: List[Message],
        *,
        timeout_seconds: float,
        max_tokens: Optional[int] = None,
    ) -> str:
        raise NotImplementedError


class StubCompletionClient(CompletionClient):
    """Returns scripted responses in order, then ``default`` forever.

    A scripted entry that is an exception instance is raised instead of
    returned, which lets callers exercise upstream failures.
    """

    def __init__(self, responses: Optional[List[Any]] = None, default: Optional[str] = '{"hasActions": false}') -> None:
        self._responses = list(responses or [])
        self._default = default
        self._lock = threading.Lock()
        self.calls: List[Dict[str, Any]] = []

    def push(self, *responses: Any) -> None:
        with self._lock:
            self._responses.extend(responses)

    def complete(
        self,
        messages: List[Message],
        *,
        timeout_seconds: float,
        max_tokens: Optional[int] = None,
    ) -> str:
        with self._lock:
            self.calls.append({"messages": messages, "timeout_seconds": timeout_seconds, "max_tokens": max_tokens})
            response = self._responses.pop(0) if self._responses else self._default
        if isinstance(response, BaseException):
            raise response
        if not response:
            raise CompletionError("Empty completion")
        return response


class HttpCompletionClient(CompletionClient):
    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        api_key: Optional[str] = None,
        path: str = "/v1/chat/completions",
        temperature: float = 0.7,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._api_key = api_key
        self._path = path
        self._temperature = temperature

    def complete(
        self,
        messages: List[Message],
        *,
        timeout_seconds: float,
        max_tokens: Optional[int] = None,
    ) -> str:
        """``timeout_seconds`` bounds each httpx phase separately, so a server that
        keeps trickling bytes can run past it in total.
        """
        url = f"{self._base_url}{self._path}"
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        payload: Dict[str, Any] = {
            "model": self._model,
            "messages": messages,
            "temperature": self._temperature,
        }
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        try:
            response = httpx.post(url, json=payload, headers=headers, timeout=timeout_seconds)
        except httpx.TimeoutException as exc:
            logger.warning("completion_timeout url=%s timeout_seconds=%s", url, timeout_seconds)
            raise CompletionError("Completion service timed out") from exc
        except httpx.RequestError as exc:
            logger.warning("completion_unreachable url=%s error=%s", url, exc)
            raise CompletionError("Completion service unreachable") from exc
        if not 200 <= response.status_code < 300:
            logger.warning("completion_rejected url=%s status_code=%s", url, response.status_code)
            raise CompletionError(f"Completion service returned {response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            raise CompletionError("Completion service returned invalid JSON") from exc
        choices = data.get("choices") if isinstance(data, dict) else None
        if not isinstance(choices, list) or not choices:
            raise CompletionError("Completion service returned no choices")
        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str) or not content.strip():
            raise CompletionError("Completion service returned empty content")
        return content


def complete_prompt(
    client: CompletionClient,
    prompt: str,
    *,
    timeout_seconds: float,
    max_tokens: Optional[int] = None,
) -> str:
    return client.complete(
        [{"role": "user", "content": prompt}],
        timeout_seconds=timeout_seconds,
        max_tokens=max_tokens,
    )
