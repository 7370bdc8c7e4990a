"""Policy checks applied to every proposed action before it is persisted.

``GuardrailEngine.check`` runs the checks in a fixed order and stops at the
first denial: sensitive data, dangerous actions, rate limits, integration
permissions, content moderation, privacy compliance. Moderation and privacy
can also allow an action while attaching an advisory reason.
"""

from __future__ import annotations

import logging
import math
import re
import threading
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Literal, Optional, Pattern, Tuple

from sqlalchemy import Engine

from assistant.integrations import IntegrationStatusProvider
from assistant.storage import db
from assistant.util.timeparse import ensure_utc, utc_now

logger = logging.getLogger("assistant.guardrails")

Severity = Literal["info", "warning", "error", "critical"]
SanitizeMode = Literal["strict", "moderate", "lenient"]

CREDIT_CARD = re.compile(r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b")
SSN = re.compile(r"\b\d{3}-\d{2}-\d{4}\b")
PASSWORD = re.compile(
    r"\b(?:password|passwd|pwd|passphrase|passcode)\b\s*(?:[:=]|\bis\b)\s*\S+",
    re.IGNORECASE,
)
API_KEY = re.compile(
    r"\b(?:api[_-]?key|api[_-]?secret|secret[_-]?key|access[_-]?token|auth[_-]?token|token)\b\s*[:=]\s*[\w\-.]+"
    r"|\bbearer\s+[A-Za-z0-9\-._~+/]{16,}=*"
    r"|\bsk-[A-Za-z0-9]{20,}\b",
    re.IGNORECASE,
)
PRIVATE_KEY = re.compile(r"-----BEGIN (?:RSA |EC |DSA |OPENSSH )?PRIVATE KEY-----")
EMAIL = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
EMAIL_ADDRESS = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
PHONE = re.compile(r"\b(?:\+\d{1,3}[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b")
IP_ADDRESS = re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b")
OFFENSIVE = re.compile(r"\b(?:fuck|shit|bitch|asshole|damn|hell)\b", re.IGNORECASE)

# (pattern, label, strict replacement, moderate replacement or None)
SENSITIVE_PATTERNS: Tuple[Tuple[Pattern[str], str, str, Optional[str]], ...] = (
    (CREDIT_CARD, "credit card numbers", "[CREDIT CARD REDACTED]", "[CARD NUMBER]"),
    (SSN, "social security numbers", "[SSN REDACTED]", "[SSN]"),
    (PASSWORD, "passwords", "[PASSWORD REDACTED]", "[PASSWORD]"),
    (API_KEY, "API keys or tokens", "[API KEY REDACTED]", None),
    (PRIVATE_KEY, "private cryptographic keys", "[PRIVATE KEY REDACTED]", None),
)


@dataclass(frozen=True)
class DangerousPattern:
    pattern: Pattern[str]
    reason: str
    suggestion: str
    severity: Severity


DANGEROUS_PATTERNS: Tuple[DangerousPattern, ...] = (
    DangerousPattern(
        re.compile(r"\b(?:delete|remove|erase|clear|wipe|destroy)\s+(?:all|everything|entire|complete)\b", re.IGNORECASE),
        "Bulk deletion detected",
        "This action would delete a large amount of data. Please be more specific about what you want to "
        "delete, or use the app to remove items manually.",
        "critical",
    ),
    DangerousPattern(
        re.compile(r"\b(?:send|email|message|notify)\s+(?:all|everyone|everybody)\b", re.IGNORECASE),
        "Mass communication detected",
        "Sending messages to all contacts requires manual confirmation. Please use the app to review and "
        "send bulk messages.",
        "warning",
    ),
    DangerousPattern(
        re.compile(r"\b(?:transfer|wire|pay)\s+(?:[$£€]\s?)?\d+|\bsend\s+[$£€]\s?\d+", re.IGNORECASE),
        "Financial transaction detected",
        "I cannot process financial transactions. Please handle money transfers directly through your "
        "banking app.",
        "critical",
    ),
    DangerousPattern(
        re.compile(r"\b(?:close|delete|deactivate|remove)\s+(?:my\s+)?(?:account|profile)\b", re.IGNORECASE),
        "Account closure detected",
        "I cannot close accounts or delete profiles. Please use the app settings if you wish to make "
        "account changes.",
        "warning",
    ),
)

RATE_LIMITS: Dict[str, int] = {
    "assignment": 10,
    "email_draft": 20,
    "task": 50,
    "reminder": 30,
    "note": 100,
    "calendar_event": 20,
    "meeting_request": 20,
    "search": 60,
}

# action type -> (integration kind, what to connect, what it unlocks)
INTEGRATION_REQUIREMENTS: Dict[str, Tuple[str, str, str]] = {
    "email_draft": ("email", "your Gmail or Outlook account", "draft emails"),
    "calendar_event": ("calendar", "your Google Calendar or Outlook Calendar", "create events"),
}

ACTION_LABELS: Dict[str, str] = {
    "assignment": "assignments",
    "email_draft": "email drafts",
    "task": "tasks",
    "reminder": "reminders",
    "note": "notes",
    "calendar_event": "calendar events",
    "meeting_request": "meeting requests",
    "search": "searches",
}

MAX_EMAIL_RECIPIENTS = 50
LARGE_NOTE_CHARACTERS = 10_000
SPAM_MIN_WORDS = 10
SPAM_REPETITION_RATIO = 0.5


@dataclass
class GuardrailResult:
    allowed: bool
    reason: Optional[str] = None
    suggestion: Optional[str] = None
    severity: Optional[Severity] = None
    modified_content: Optional[str] = None

    @classmethod
    def ok(cls) -> "GuardrailResult":
        return cls(allowed=True)

    @property
    def advisory(self) -> bool:
        return self.allowed and self.reason is not None

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


@dataclass
class ActionContext:
    user_id: str
    action_type: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class RateLimitStore:
    def hit(
        self,
        *,
        user_id: str,
        action_type: str,
        limit: int,
        window_seconds: int,
        now: datetime,
    ) -> Tuple[bool, int, datetime]:
        raise NotImplementedError


class DatabaseRateLimitStore(RateLimitStore):
    """Counters shared by every process pointed at the same database."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def hit(
        self,
        *,
        user_id: str,
        action_type: str,
        limit: int,
        window_seconds: int,
        now: datetime,
    ) -> Tuple[bool, int, datetime]:
        return db.increment_rate_limit_counter(
            self._engine,
            user_id=user_id,
            action_type=action_type,
            limit=limit,
            window_seconds=window_seconds,
            now=now,
        )


class InMemoryRateLimitStore(RateLimitStore):
    """Single-process counters, for tests and local tooling."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Dict[Tuple[str, str], Tuple[int, datetime]] = {}

    def hit(
        self,
        *,
        user_id: str,
        action_type: str,
        limit: int,
        window_seconds: int,
        now: datetime,
    ) -> Tuple[bool, int, datetime]:
        now = ensure_utc(now)
        key = (user_id, action_type)
        with self._lock:
            current = self._counters.get(key)
            if current is None or now >= current[1]:
                reset_at = now + timedelta(seconds=window_seconds)
                if limit <= 0:
                    return False, 0, reset_at
                self._counters[key] = (1, reset_at)
                return True, 1, reset_at
            count, reset_at = current
            if count >= limit:
                return False, count, reset_at
            self._counters[key] = (count + 1, reset_at)
            return True, count + 1, reset_at


def sanitize(content: str, mode: SanitizeMode = "moderate") -> str:
    """Redact sensitive-data matches; whitespace is always collapsed."""
    sanitized = content
    if mode != "lenient":
        for pattern, _, strict_token, moderate_token in SENSITIVE_PATTERNS:
            token = strict_token if mode == "strict" else moderate_token
            if token is not None:
                sanitized = pattern.sub(token, sanitized)
    return re.sub(r"\s+", " ", sanitized).strip()


class GuardrailEngine:
    def __init__(
        self,
        *,
        rate_limits: RateLimitStore,
        integrations: IntegrationStatusProvider,
        engine: Optional[Engine] = None,
        clock: Callable[[], datetime] = utc_now,
        limits: Optional[Dict[str, int]] = None,
        window_seconds: int = 3600,
    ) -> None:
        self._rate_limits = rate_limits
        self._integrations = integrations
        self._engine = engine
        self._clock = clock
        self._limits = dict(RATE_LIMITS if limits is None else limits)
        self._window_seconds = window_seconds

    def check(self, context: ActionContext) -> GuardrailResult:
        logger.debug("guardrail_check user_id=%s action_type=%s", context.user_id, context.action_type)
        for gate in (
            lambda: self.check_sensitive_data(context.content),
            lambda: self.check_dangerous_actions(context.content),
            lambda: self.check_rate_limit(context.user_id, context.action_type),
            lambda: self.check_permissions(context),
        ):
            result = gate()
            if not result.allowed:
                self.log_guardrail_action(result, context)
                return result

        advisories: List[GuardrailResult] = []
        for gate in (
            lambda: self.check_content_moderation(context.content),
            lambda: self.check_privacy_compliance(context),
        ):
            result = gate()
            if not result.allowed:
                self.log_guardrail_action(result, context)
                return result
            if result.advisory:
                advisories.append(result)

        result = advisories[0] if advisories else GuardrailResult.ok()
        self.log_guardrail_action(result, context)
        return result

    def check_sensitive_data(self, content: str) -> GuardrailResult:
        detected = [label for pattern, label, _, _ in SENSITIVE_PATTERNS if pattern.search(content)]
        if not detected:
            return GuardrailResult.ok()
        labels = ", ".join(detected)
        return GuardrailResult(
            allowed=False,
            reason=f"Sensitive information detected: {labels}",
            suggestion=(
                f"For your security, I cannot store {labels}. Please keep them in a password manager or "
                f"encrypted storage instead. Redacted version: {sanitize(content, 'strict')}"
            ),
            severity="critical",
            modified_content=sanitize(content, "strict"),
        )

    def check_dangerous_actions(self, content: str) -> GuardrailResult:
        for dangerous in DANGEROUS_PATTERNS:
            if dangerous.pattern.search(content):
                return GuardrailResult(
                    allowed=False,
                    reason=dangerous.reason,
                    suggestion=dangerous.suggestion,
                    severity=dangerous.severity,
                )
        return GuardrailResult.ok()

    def check_rate_limit(self, user_id: str, action_type: str) -> GuardrailResult:
        limit = self._limits.get(action_type)
        if limit is None:
            return GuardrailResult.ok()
        now = ensure_utc(self._clock())
        allowed, _, reset_at = self._rate_limits.hit(
            user_id=user_id,
            action_type=action_type,
            limit=limit,
            window_seconds=self._window_seconds,
            now=now,
        )
        if allowed:
            return GuardrailResult.ok()
        minutes = max(1, math.ceil((ensure_utc(reset_at) - now).total_seconds() / 60))
        label = ACTION_LABELS.get(action_type, action_type)
        window = "hour" if self._window_seconds == 3600 else f"{self._window_seconds // 60} minutes"
        return GuardrailResult(
            allowed=False,
            reason="Rate limit exceeded",
            suggestion=(
                f"You've reached the limit of {limit} {label} per {window}. "
                f"Please try again in {minutes} minutes."
            ),
            severity="warning",
        )

    def check_permissions(self, context: ActionContext) -> GuardrailResult:
        requirement = INTEGRATION_REQUIREMENTS.get(context.action_type)
        if requirement is None:
            return GuardrailResult.ok()
        kind, connect_target, unlocks = requirement
        if self._integrations.is_connected(context.user_id, kind):
            return GuardrailResult.ok()
        return GuardrailResult(
            allowed=False,
            reason=f"{kind.capitalize()} integration not connected",
            suggestion=f"Please connect {connect_target} so I can {unlocks}.",
            severity="info",
        )

    def check_content_moderation(self, content: str) -> GuardrailResult:
        words = content.split()
        if len(words) > SPAM_MIN_WORDS:
            most_common = Counter(words).most_common(1)[0][1]
            if most_common / len(words) > SPAM_REPETITION_RATIO:
                return GuardrailResult(
                    allowed=False,
                    reason="Spam detected",
                    suggestion="This looks like repetitive or spam content. Please provide a clearer message.",
                    severity="warning",
                )
        if OFFENSIVE.search(content):
            return GuardrailResult(
                allowed=True,
                reason="Potentially offensive language detected",
                suggestion="I noticed some strong language. I'll still save this, just checking that was intentional.",
                severity="warning",
            )
        return GuardrailResult.ok()

    def check_privacy_compliance(self, context: ActionContext) -> GuardrailResult:
        content = context.content
        if context.action_type == "email_draft" and (
            EMAIL.search(content) or PHONE.search(content) or IP_ADDRESS.search(content)
        ):
            return GuardrailResult(
                allowed=True,
                reason="Personal information in email",
                suggestion="This email contains personal contact details. Please double-check the recipients before sending.",
                severity="info",
            )
        if context.action_type == "note" and len(content) > LARGE_NOTE_CHARACTERS:
            return GuardrailResult(
                allowed=True,
                reason="Large data storage",
                suggestion="That's a lot of data to store. You can ask for it to be deleted at any time.",
                severity="info",
            )
        return GuardrailResult.ok()

    def check_conflicts(self, context: ActionContext) -> GuardrailResult:
        """Warn about overlapping calendar events. Never denies."""
        if context.action_type != "calendar_event" or self._engine is None:
            return GuardrailResult.ok()
        start = context.metadata.get("start_time")
        end = context.metadata.get("end_time") or start
        if not isinstance(start, datetime) or not isinstance(end, datetime):
            return GuardrailResult.ok()
        conflicts = db.find_overlapping_events(
            self._engine,
            user_id=context.user_id,
            start_time=start,
            end_time=end,
        )
        if not conflicts:
            return GuardrailResult.ok()
        return GuardrailResult(
            allowed=True,
            reason="Calendar conflict detected",
            suggestion=(
                f'You already have an event scheduled at this time: "{conflicts[0]["title"]}". '
                "Would you like to keep both?"
            ),
            severity="warning",
        )

    def validate_email_recipients(self, recipients: Iterable[str]) -> GuardrailResult:
        addresses = list(recipients)
        if len(addresses) > MAX_EMAIL_RECIPIENTS:
            return GuardrailResult(
                allowed=False,
                reason="Too many recipients",
                suggestion=(
                    f"Sending to more than {MAX_EMAIL_RECIPIENTS} recipients needs manual confirmation. "
                    "Please use your email client for bulk sends."
                ),
                severity="warning",
            )
        invalid = [address for address in addresses if not EMAIL_ADDRESS.match(address)]
        if invalid:
            return GuardrailResult(
                allowed=False,
                reason="Invalid email addresses",
                suggestion=f"These email addresses look invalid: {', '.join(invalid)}. Please double-check them.",
                severity="error",
            )
        return GuardrailResult.ok()

    def validate_datetime(self, value: Any) -> GuardrailResult:
        when: Optional[datetime] = value if isinstance(value, datetime) else None
        if isinstance(value, str):
            try:
                when = datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                when = None
        if when is None:
            return GuardrailResult(
                allowed=False,
                reason="Invalid date/time",
                suggestion='The date or time was not recognised. Try something like "tomorrow at 3pm".',
                severity="error",
            )
        days = (ensure_utc(self._clock()) - ensure_utc(when)).total_seconds() / 86400
        if days > 30:
            return GuardrailResult(
                allowed=True,
                reason="Date is in the past",
                suggestion=f"This date is {math.floor(days)} days in the past. Is that correct?",
                severity="warning",
            )
        if days < -365:
            return GuardrailResult(
                allowed=True,
                reason="Date is far in the future",
                suggestion="This date is more than a year away. Is that correct?",
                severity="info",
            )
        return GuardrailResult.ok()

    def log_guardrail_action(self, result: GuardrailResult, context: ActionContext) -> None:
        if result.allowed and not result.advisory:
            logger.debug("guardrail_passed user_id=%s action_type=%s", context.user_id, context.action_type)
            return
        logger.info(
            "guardrail_%s user_id=%s action_type=%s severity=%s reason=%s content=%s",
            "warned" if result.allowed else "denied",
            context.user_id,
            context.action_type,
            result.severity,
            result.reason,
            sanitize(context.content, "strict")[:200],
        )
