from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

_WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
_DAY_WORDS = "today|tonight|tomorrow|(?:next\\s+)?(?:" + "|".join(_WEEKDAYS) + ")"
_CLOCK = r"(?P<hour>\d{1,2})(?::(?P<minute>\d{2}))?\s*(?P<meridiem>am|pm|a\.m\.|p\.m\.)?"

_DAY_THEN_TIME = re.compile(rf"^(?P<day>{_DAY_WORDS})\s*(?:at\s+)?{_CLOCK}$", re.IGNORECASE)
_TIME_THEN_DAY = re.compile(rf"^(?:at\s+)?{_CLOCK}\s+(?P<day>{_DAY_WORDS})$", re.IGNORECASE)
_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")

AMBIGUOUS_PHRASES = {
    "today",
    "tonight",
    "tomorrow",
    "later",
    "soon",
    "next week",
    "this week",
    "in a bit",
    "this weekend",
    "next month",
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime; naive values are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def ensure_utc_optional(value: Optional[datetime]) -> Optional[datetime]:
    return ensure_utc(value) if value is not None else None


def _parse_iso(value: str) -> Optional[datetime]:
    candidate = value.strip()
    if candidate.endswith("Z") or candidate.endswith("z"):
        candidate = candidate[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(candidate)
    except ValueError:
        return None


def _clock_time(hour_text: str, minute_text: Optional[str], meridiem: Optional[str], *, evening: bool) -> time:
    hour = int(hour_text)
    minute = int(minute_text) if minute_text else 0
    if meridiem:
        marker = meridiem.lower().replace(".", "")
        if hour < 1 or hour > 12:
            raise ValueError(f"Invalid 12-hour clock value: {hour_text}{meridiem}")
        if marker == "pm" and hour != 12:
            hour += 12
        if marker == "am" and hour == 12:
            hour = 0
    elif evening and hour == 12:
        hour = 0
    elif evening and hour < 12:
        hour += 12
    if hour > 23 or minute > 59:
        raise ValueError(f"Invalid clock value: {hour_text}:{minute_text or '00'}")
    return time(hour, minute)


def _resolve_day(label: str, today: date, at: time, now_local: datetime) -> date:
    lowered = " ".join(label.lower().split())
    if lowered in {"today", "tonight"}:
        return today
    if lowered == "tomorrow":
        return today + timedelta(days=1)
    explicit_next = lowered.startswith("next ")
    weekday = _WEEKDAYS.index(lowered.split()[-1])
    days_ahead = (weekday - today.weekday()) % 7
    if explicit_next and days_ahead == 0:
        days_ahead = 7
    if days_ahead == 0 and at <= now_local.time().replace(tzinfo=None):
        days_ahead = 7
    return today + timedelta(days=days_ahead)


def resolve_instant(
    value: str,
    *,
    user_timezone: str,
    now: datetime,
    allow_date_only: bool = False,
) -> datetime:
    """Resolve a model-supplied time expression to an aware UTC instant.

    Accepts ISO-8601 values (naive ones are read in ``user_timezone``) and a
    small set of relative forms such as ``tomorrow at 3pm`` or ``3pm friday``.
    Bare relative words are rejected as ambiguous. Raises ``ValueError``.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError("Missing time value")
    zone = ZoneInfo(user_timezone)
    text = " ".join(value.strip().split())
    if text.lower() in AMBIGUOUS_PHRASES:
        raise ValueError(f"Ambiguous time expression: {value!r}")

    if _DATE_ONLY.match(text):
        if not allow_date_only:
            raise ValueError(f"Date without a time: {value!r}")
        day = date.fromisoformat(text)
        return datetime.combine(day, time(0, 0), tzinfo=zone).astimezone(timezone.utc)

    parsed = _parse_iso(text)
    if parsed is not None:
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=zone)
        return parsed.astimezone(timezone.utc)

    match = _DAY_THEN_TIME.match(text) or _TIME_THEN_DAY.match(text)
    if not match:
        raise ValueError(f"Unrecognised time expression: {value!r}")
    now_local = ensure_utc(now).astimezone(zone)
    day_label = match.group("day")
    at = _clock_time(
        match.group("hour"),
        match.group("minute"),
        match.group("meridiem"),
        evening=day_label.lower() == "tonight",
    )
    day = _resolve_day(day_label, now_local.date(), at, now_local)
    if day_label.lower() == "tonight" and at < time(12, 0):
        # Small hours after tonight belong to the next calendar day.
        day += timedelta(days=1)
    return datetime.combine(day, at, tzinfo=zone).astimezone(timezone.utc)
