"""
beacon.engine.records — Typed Rows & Results
=============================================

Frozen dataclasses that carry data between the stores and callers:

* one record per rollup variant (overview, page, visitor, page-visitor);
* the result shapes of the inbound API (ingestion, stats, funnels).

Timestamps are ``datetime`` inside the package; ``to_dict()`` renders
them as ISO-8601 UTC strings for the HTTP layer.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, date, datetime
from typing import Any


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo) and convert
    aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def isoformat_utc(value: datetime | None) -> str | None:
    """Render *value* as ``YYYY-MM-DDTHH:MM:SS[.ffffff]Z``."""
    if value is None:
        return None
    return ensure_utc(value).isoformat().replace("+00:00", "Z")


def _jsonable(data: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, datetime):
            out[key] = isoformat_utc(value)
        elif isinstance(value, date):
            out[key] = value.isoformat()
        elif isinstance(value, list):
            out[key] = [_jsonable(v) if isinstance(v, dict) else v for v in value]
        else:
            out[key] = value
    return out


class _Record:
    """Mixin giving dataclass records a JSON-friendly ``to_dict``."""

    __slots__ = ()

    def to_dict(self) -> dict[str, Any]:
        return _jsonable(asdict(self))  # type: ignore[call-overload]


# ---------------------------------------------------------------------------
# Rollup rows
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class OverviewRow(_Record):
    project_id: str
    event_date: date
    visits: int
    unique_visitors: int
    first_seen_at: datetime | None
    last_seen_at: datetime | None


@dataclass(frozen=True, slots=True)
class PageRow(_Record):
    project_id: str
    event_date: date
    page_path: str | None
    page_url: str | None
    visits: int
    unique_visitors: int
    first_seen_at: datetime | None
    last_seen_at: datetime | None


@dataclass(frozen=True, slots=True)
class VisitorRow(_Record):
    project_id: str
    event_date: date
    visitor_hash: str
    first_seen_at: datetime | None
    last_seen_at: datetime | None


@dataclass(frozen=True, slots=True)
class PageVisitorRow(_Record):
    project_id: str
    event_date: date
    page_path: str | None
    page_url: str | None
    visitor_hash: str
    first_seen_at: datetime | None
    last_seen_at: datetime | None


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class IngestionNotice(_Record):
    """A tolerated problem with one event of a batch (the event was kept)."""
    index: int
    reason: str


@dataclass(frozen=True, slots=True)
class IngestionResult(_Record):
    accepted: int
    total: int
    skipped: int
    errors: list[IngestionNotice] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class EventRow(_Record):
    id: str
    occurred_at: datetime
    page_url: str | None
    path: str | None
    referrer: str | None
    funnel_id: str | None
    step_key: str | None
    metadata: dict[str, Any]


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class OverviewPoint(_Record):
    period: str
    visits: int
    unique_visitors: int


@dataclass(frozen=True, slots=True)
class PageStats(_Record):
    path: str | None
    page_url: str | None
    visits: int
    unique_visitors: int
    first_seen: datetime | None
    last_seen: datetime | None


@dataclass(frozen=True, slots=True)
class RealtimePage(_Record):
    path: str | None
    page_url: str | None
    visits: int


@dataclass(frozen=True, slots=True)
class RealtimeStats(_Record):
    active_visitors: int
    active_sessions: int
    top_pages: list[RealtimePage]
    updated_at: datetime


@dataclass(frozen=True, slots=True)
class EventSummary(_Record):
    total_events: int
    unique_visitors: int
    unique_sessions: int
    first_seen: datetime | None
    last_seen: datetime | None


@dataclass(frozen=True, slots=True)
class DailyPoint(_Record):
    date: date
    events: int
    unique_visitors: int


@dataclass(frozen=True, slots=True)
class VisitorStats(_Record):
    visitor_id: str
    visits: int
    sessions: int
    first_seen: datetime | None
    last_seen: datetime | None


# ---------------------------------------------------------------------------
# Funnels
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class FunnelStepStats(_Record):
    step_key: str
    name: str
    order: int
    visits: int
    conversions: int
    drop_off: int
    conversion_rate: float


@dataclass(frozen=True, slots=True)
class FunnelStats(_Record):
    funnel_id: str
    total_visitors: int
    steps: list[FunnelStepStats]


@dataclass(frozen=True, slots=True)
class FunnelStepDefinition(_Record):
    id: str
    key: str
    name: str
    order: int
    page_pattern: str | None


@dataclass(frozen=True, slots=True)
class FunnelDefinition(_Record):
    id: str
    project_id: str
    name: str
    description: str | None
    is_active: bool
    created_at: datetime | None
    updated_at: datetime | None
    steps: list[FunnelStepDefinition]
