from __future__ import annotations

from datetime import datetime
from typing import Callable

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%f%z"
HUMAN_FORMAT = "%A, %B %d, %Y %I:%M %p"

Clock = Callable[[], datetime]


def now_local() -> datetime:
    """Return the current time as an aware datetime in the system's local timezone."""
    return datetime.now().astimezone()


def ensure_local(dt: datetime | None) -> datetime | None:
    """Coerce a datetime into the system's local timezone.

    Naive datetimes are assumed to already represent local time and will be tagged
    with the system's timezone. Aware datetimes are converted to the local timezone.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        tz = now_local().tzinfo
        return dt.replace(tzinfo=tz)
    return dt.astimezone()


def format_local(dt: datetime) -> str:
    """Format a datetime using the shared local ISO pattern."""
    local_dt = ensure_local(dt)
    assert local_dt is not None  # for type checkers; dt is never None here
    return local_dt.strftime(ISO_FORMAT)


def parse_iso(value: str | None) -> datetime | None:
    """Parse an ISO8601 timestamp (message ``created_at``); None when unparseable."""
    if not value:
        return None
    text = str(value).strip()
    # fromisoformat on older interpreters rejects the trailing 'Z'
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_local(datetime.fromisoformat(text))
    except ValueError:
        pass
    try:
        return ensure_local(datetime.strptime(text, ISO_FORMAT))
    except ValueError:
        return None


def format_human(dt: datetime) -> str:
    """Wall-clock rendering used inside prompts, e.g. 'Friday, March 01, 2024 09:30 PM'."""
    local_dt = ensure_local(dt)
    assert local_dt is not None
    return local_dt.strftime(HUMAN_FORMAT)


def minutes_between(earlier: datetime | None, later: datetime) -> int:
    if earlier is None:
        return 0
    delta = ensure_local(later) - ensure_local(earlier)  # type: ignore[operator]
    return max(0, int(round(delta.total_seconds() / 60)))
