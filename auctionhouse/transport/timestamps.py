"""Timestamp helpers enforcing canonical ISO-8601 UTC formatting."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


class TimestampError(ValueError):
    """Raised when timestamps are malformed or lack timezone information."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    if not value:
        raise TimestampError("timestamp missing")
    try:
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        dt = datetime.fromisoformat(value)
    except ValueError as exc:  # pragma: no cover - delegated to datetime
        raise TimestampError("timestamp is not ISO-8601 compatible") from exc
    if dt.tzinfo is None:
        raise TimestampError("timestamp must include timezone information")
    return dt.astimezone(timezone.utc)


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        raise TimestampError("timestamp must include timezone information")
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_optional(value: str | None) -> datetime | None:
    return parse_timestamp(value) if value else None
