from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta

_PUNCTUATION = re.compile(r"[^\w\s]+")
_NON_ALNUM = re.compile(r"[^a-z0-9\s]+")


def now_utc() -> datetime:
    return datetime.now(UTC)


def now_utc_iso() -> str:
    return now_utc().isoformat()


def days_ago_iso(days: float, *, now: datetime | None = None) -> str:
    reference = now or now_utc()
    return (reference - timedelta(days=days)).isoformat()


def start_of_day_iso(*, days_back: int = 0, now: datetime | None = None) -> str:
    reference = now or now_utc()
    midnight = reference.astimezone(UTC).replace(hour=0, minute=0, second=0, microsecond=0)
    return (midnight - timedelta(days=days_back)).isoformat()


def parse_iso_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def normalize_whitespace(text: str) -> str:
    return " ".join(text.split())


def normalize_text(text: str) -> str:
    squashed = normalize_whitespace(text).lower()
    return normalize_whitespace(_NON_ALNUM.sub(" ", squashed))


def tokenize(text: str) -> set[str]:
    """Lowercase, drop punctuation (``Sr.`` -> ``sr``) and split on whitespace."""
    stripped = _PUNCTUATION.sub("", text.lower())
    return {token for token in stripped.split() if token}
