"""
Shared analytics types: time ranges, granularities and cached results.
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar

from ..utils.errors import InvalidDateRangeError, InvalidParameterError

T = TypeVar('T')


class Granularity(str, Enum):
    """Time bucket sizes."""
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def iso(value: datetime) -> str:
    """Millisecond ISO-8601 with a ``Z`` suffix, stable for cache keys."""
    return as_utc(value).strftime("%Y-%m-%dT%H:%M:%S.") + f"{as_utc(value).microsecond // 1000:03d}Z"


@dataclass(frozen=True)
class DateRange:
    """Half-open ``[start, end)`` range in UTC."""
    start: datetime
    end: datetime
    granularity: Granularity = Granularity.DAY

    def __post_init__(self):
        object.__setattr__(self, "start", as_utc(self.start))
        object.__setattr__(self, "end", as_utc(self.end))
        if not isinstance(self.granularity, Granularity):
            object.__setattr__(self, "granularity", Granularity(self.granularity))
        if self.start >= self.end:
            raise InvalidDateRangeError()

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def previous(self) -> 'DateRange':
        """The equal-length range ending where this one starts."""
        return DateRange(self.start - self.duration, self.start, self.granularity)

    def key(self) -> str:
        return f"{iso(self.start)}_{iso(self.end)}_{self.granularity.value}"


@dataclass
class AggregationResult(Generic[T]):
    """A computed value with its cache provenance."""
    data: T
    cached: bool
    computed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data": self.data,
            "cached": self.cached,
            "computedAt": self.computed_at.isoformat(),
        }


def round2(value: float) -> float:
    """Round half away from zero to 2 decimals."""
    return float(_round_half_up(value, 2))


def _round_half_up(value: float, digits: int) -> float:
    quantum = Decimal(1).scaleb(-digits)
    return float(Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def round_int(value: float) -> int:
    """Round half away from zero to an integer."""
    return int(_round_half_up(value, 0))


def percent_change(current: float, previous: float) -> float:
    """Percent change; a zero baseline counts as +100% when current grew."""
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return round2((current - previous) / previous * 100)


def floor_to(value: datetime, granularity: Granularity) -> datetime:
    """Start of the bucket containing ``value``; weeks start on Sunday."""
    value = as_utc(value)
    if granularity == Granularity.HOUR:
        return value.replace(minute=0, second=0, microsecond=0)
    day = value.replace(hour=0, minute=0, second=0, microsecond=0)
    if granularity == Granularity.DAY:
        return day
    if granularity == Granularity.WEEK:
        return day - timedelta(days=(day.weekday() + 1) % 7)
    return day.replace(day=1)


def next_bucket(value: datetime, granularity: Granularity) -> datetime:
    if granularity == Granularity.HOUR:
        return value + timedelta(hours=1)
    if granularity == Granularity.DAY:
        return value + timedelta(days=1)
    if granularity == Granularity.WEEK:
        return value + timedelta(days=7)
    if value.month == 12:
        return value.replace(year=value.year + 1, month=1)
    return value.replace(month=value.month + 1)


def bucket_label(value: datetime, granularity: Granularity) -> str:
    if granularity == Granularity.HOUR:
        return value.strftime("%Y-%m-%dT%H")
    if granularity == Granularity.MONTH:
        return value.strftime("%Y-%m")
    return value.strftime("%Y-%m-%d")


def parse_datetime(value: Optional[str], field_name: str) -> datetime:
    """Parse an ISO-8601 query value into an aware UTC datetime."""
    if not value:
        raise InvalidParameterError(f"Missing required parameter '{field_name}'")
    try:
        return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError as e:
        raise InvalidParameterError(f"Invalid date for '{field_name}': {value}") from e
