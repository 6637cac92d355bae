"""Period addressing for overlapping accounting windows.

Every counter and summary row is keyed by a period kind plus the
canonical start date ("period instant") of the window containing the
event.  A new window therefore starts from zero the first time it is
touched after a boundary, without any rollover job.

All arithmetic is done on UTC calendar dates.  Weeks start on Monday.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from enum import Enum


class PeriodKind(str, Enum):
    """Independently addressed accounting windows."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


# Every period kind, in increasing window length.
ALL_PERIODS: tuple[PeriodKind, ...] = (
    PeriodKind.DAILY,
    PeriodKind.WEEKLY,
    PeriodKind.MONTHLY,
    PeriodKind.YEARLY,
)

# Period kinds mirrored into the durable usage_summaries table.
SUMMARIZED_PERIODS: tuple[PeriodKind, ...] = (PeriodKind.MONTHLY, PeriodKind.YEARLY)

_DAY_SECONDS = 86_400

# Counter lifetimes: roughly twice the window length.
_COUNTER_TTLS: dict[PeriodKind, int] = {
    PeriodKind.DAILY: _DAY_SECONDS * 2,
    PeriodKind.WEEKLY: _DAY_SECONDS * 14,
    PeriodKind.MONTHLY: _DAY_SECONDS * 62,
    PeriodKind.YEARLY: _DAY_SECONDS * 730,
}


def utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


def coerce_period(value: PeriodKind | str) -> PeriodKind:
    """Return *value* as a :class:`PeriodKind`.

    Raises
    ------
    ValueError
        If *value* does not name a known period kind.
    """
    if isinstance(value, PeriodKind):
        return value
    try:
        return PeriodKind(str(value).lower())
    except ValueError:
        valid = [p.value for p in PeriodKind]
        raise ValueError(f"Unknown period kind {value!r}; expected one of {valid}") from None


def _as_utc_date(at: datetime | date) -> date:
    if isinstance(at, datetime):
        if at.tzinfo is not None:
            at = at.astimezone(UTC)
        return at.date()
    return at


def period_start(kind: PeriodKind | str, at: datetime | date | None = None) -> date:
    """Return the canonical start date of the *kind* window containing *at*."""
    kind = coerce_period(kind)
    day = _as_utc_date(at if at is not None else utcnow())

    if kind == PeriodKind.DAILY:
        return day
    if kind == PeriodKind.WEEKLY:
        return day - timedelta(days=day.weekday())
    if kind == PeriodKind.MONTHLY:
        return day.replace(day=1)
    return day.replace(month=1, day=1)


def shift_period(kind: PeriodKind | str, instant: date, periods: int) -> date:
    """Move *instant* by *periods* whole windows (negative moves back).

    *instant* is normalised to its window start first, so the result is
    always a valid period instant.
    """
    kind = coerce_period(kind)
    start = period_start(kind, instant)

    if kind == PeriodKind.DAILY:
        return start + timedelta(days=periods)
    if kind == PeriodKind.WEEKLY:
        return start + timedelta(weeks=periods)
    if kind == PeriodKind.MONTHLY:
        month_index = start.year * 12 + (start.month - 1) + periods
        return date(month_index // 12, month_index % 12 + 1, 1)
    return date(start.year + periods, 1, 1)


def period_bounds(kind: PeriodKind | str, instant: date) -> tuple[datetime, datetime]:
    """Return ``[start, end)`` of the window as UTC datetimes."""
    start = period_start(kind, instant)
    end = shift_period(kind, start, 1)
    return (
        datetime(start.year, start.month, start.day, tzinfo=UTC),
        datetime(end.year, end.month, end.day, tzinfo=UTC),
    )


def counter_ttl_seconds(kind: PeriodKind | str) -> int:
    """Expiration applied to a counter of *kind* on every write."""
    return _COUNTER_TTLS[coerce_period(kind)]
