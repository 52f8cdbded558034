"""
Time helpers for recommendation horizons.

Recommendations carry a horizon string such as ``"90d"``; the scheduler asks
whether that horizon has elapsed before a tracker is scored.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    """Return the current UTC datetime with timezone info.

    Prefer this over ``datetime.utcnow()`` (which returns naive datetimes).
    """
    return datetime.now(tz=timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_horizon_days(horizon: str) -> int:
    """Parse a horizon string like ``"7d"`` into an integer day count.

    Supported formats: ``Nd`` (days), ``Nw`` (weeks), ``Nm`` (months, ≈30 days),
    ``Ny`` (years, 365 days).

    Raises:
        ValueError: If the format is unrecognized.
    """
    text = horizon.strip().lower()
    units = {"d": 1, "w": 7, "m": 30, "y": 365}
    if text and text[-1] in units and text[:-1].isdigit():
        return int(text[:-1]) * units[text[-1]]
    raise ValueError(
        f"Cannot parse horizon '{horizon}'. "
        "Expected format: Nd (days), Nw (weeks), Nm (months) or Ny (years)."
    )


def horizon_elapsed(recommended_at: datetime, horizon: str, as_of: datetime) -> bool:
    """Return ``True`` once ``as_of`` is at or past ``recommended_at + horizon``."""
    due = ensure_utc(recommended_at) + timedelta(days=parse_horizon_days(horizon))
    return ensure_utc(as_of) >= due
