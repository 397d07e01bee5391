from datetime import datetime, timedelta, timezone
from typing import Callable, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # Motor hands back naive datetimes unless the client is tz_aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_millis(value: datetime) -> int:
    return int(as_utc(value).timestamp() * 1000)


def from_millis(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)


class MonotonicClock:
    """Millisecond clock that never returns the same instant twice.

    BSON dates keep millisecond precision, so two sends within the same
    millisecond would otherwise share a timestamp.
    """

    def __init__(self, source: Optional[Callable[[], datetime]] = None) -> None:
        self._source = source or utc_now
        self._last: Optional[datetime] = None

    def now(self) -> datetime:
        current = as_utc(self._source())
        current = current.replace(microsecond=(current.microsecond // 1000) * 1000)
        if self._last is not None and current <= self._last:
            current = self._last + timedelta(milliseconds=1)
        self._last = current
        return current


def to_bson(value: datetime) -> datetime:
    """BSON dates are naive UTC; strip the zone before writing or querying."""
    return as_utc(value).replace(tzinfo=None)
