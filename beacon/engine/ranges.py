"""
beacon.engine.ranges — Date Range Parsing & Filters
====================================================

Callers pass range bounds as ``date``, ``datetime`` or ISO-8601 strings
(``"2025-01-01"`` or ``"2025-01-01T12:00:00Z"``).  Rollup reads work on
calendar days; raw-event reads work on instants.

Raw-event bounds:
    * ``start`` is inclusive.  A day means that day's 00:00 UTC.
    * ``end`` given as a day covers the whole day (``< next 00:00 UTC``);
      given as an instant it is inclusive.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta
from typing import Any

from sqlalchemy.sql.elements import ColumnElement

from beacon.engine.records import ensure_utc

DateLike = date | datetime | str | None


def parse_bound(value: DateLike) -> date | datetime | None:
    """Turn *value* into a ``date``, an aware UTC ``datetime`` or None.

    Raises
    ------
    ValueError
        If a string is neither an ISO date nor an ISO timestamp.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return value

    text = str(value).strip()
    try:
        if len(text) == 10:
            return date.fromisoformat(text)
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        raise ValueError(f"Invalid date value: {value}") from None


def to_day(value: DateLike) -> date | None:
    """Calendar day (UTC) of *value*."""
    bound = parse_bound(value)
    if isinstance(bound, datetime):
        return bound.date()
    return bound


def day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=UTC)


def day_filters(column: Any, start: DateLike, end: DateLike) -> list[ColumnElement[bool]]:
    """Inclusive ``event_date`` filters for rollup tables."""
    filters: list[ColumnElement[bool]] = []
    first, last = to_day(start), to_day(end)
    if first is not None:
        filters.append(column >= first)
    if last is not None:
        filters.append(column <= last)
    return filters


def instant_filters(column: Any, start: DateLike, end: DateLike) -> list[ColumnElement[bool]]:
    """``occurred_at`` filters for raw events (see module docstring)."""
    filters: list[ColumnElement[bool]] = []
    lower, upper = parse_bound(start), parse_bound(end)

    if isinstance(lower, datetime):
        filters.append(column >= lower)
    elif lower is not None:
        filters.append(column >= day_start(lower))

    if isinstance(upper, datetime):
        filters.append(column <= upper)
    elif upper is not None:
        filters.append(column < day_start(upper) + timedelta(days=1))

    return filters
