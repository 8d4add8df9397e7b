# Overview: UTC helpers. Timestamps are stored UTC-naive and leave the core as "...Z" strings.

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _to_naive_utc(dt: datetime) -> datetime:
    # Naive input is already UTC
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Read an ISO-8601 string ("2026-05-01T18:30:00Z", "...+07:00" or naive)
    as a UTC-naive datetime. Blank input gives None; malformed input raises
    ValueError.
    """
    text = (value or "").strip()
    if not text:
        return None
    if text[-1] in "zZ":
        text = f"{text[:-1]}+00:00"
    return _to_naive_utc(datetime.fromisoformat(text))


def normalize_datetime(value) -> datetime:
    """Business time (occurred_at, as_of) from None, a datetime or an ISO string."""
    if value is None:
        return utcnow()
    if isinstance(value, datetime):
        return _to_naive_utc(value)
    if isinstance(value, str):
        parsed = parse_iso_datetime(value)
        if parsed is not None:
            return parsed
    raise ValueError(f"invalid datetime: {value!r}")


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """Second-precision ISO-8601 with a trailing Z; None passes through."""
    if dt is None:
        return None
    return _to_naive_utc(dt).replace(microsecond=0).isoformat() + "Z"
