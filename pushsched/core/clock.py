from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable

from pushsched.core.config import get_settings


# Zero-argument time source shared by notification writers and the dispatcher.
Clock = Callable[[], datetime]


def canonical_zone() -> timezone:
    # One fixed offset for every reader and writer; UTC+7 unless configured otherwise.
    hours = int(get_settings().clock_utc_offset_hours)
    return timezone(timedelta(hours=hours))


def canonical_now() -> datetime:
    return datetime.now(canonical_zone())


def to_canonical(value: datetime) -> datetime:
    # Naive values are taken to already be canonical wall time; aware values are converted.
    zone = canonical_zone()
    if value.tzinfo is None:
        return value.replace(tzinfo=zone)
    return value.astimezone(zone)


def fixed_clock(instant: datetime) -> Clock:
    """Return a clock frozen at ``instant`` (normalized to the canonical zone)."""
    frozen = to_canonical(instant)
    return lambda: frozen
