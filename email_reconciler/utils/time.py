"""Time utilities (UTC now, tz normalization, provider timestamp parsing)."""
from __future__ import annotations

import re
from datetime import datetime, timezone

# Postmark emits up to 7 fractional digits (e.g. 2024-03-01T10:15:00.1234567-05:00);
# datetime.fromisoformat only accepts up to 6.
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo) and convert aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse an ISO-8601 provider timestamp into an aware UTC datetime."""
    if isinstance(value, datetime):
        return ensure_utc(value)  # type: ignore[return-value]
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(r"\1", text)
    return ensure_utc(datetime.fromisoformat(text))  # type: ignore[return-value]



__all__ = ["utc_now", "ensure_utc", "parse_timestamp"]
