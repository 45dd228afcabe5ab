"""
beacon.services.stats_service — Dashboard Stats Reader
=======================================================

Read side of the pipeline.

* ``overview`` and ``pages`` read the daily rollups and go through the
  :class:`~beacon.engine.cache.StatsCache` (cache → query on miss → put).
* ``realtime`` reads raw events over a short trailing window and never
  touches the cache; a cached snapshot would be stale immediately.
* ``event_summary``, ``list_visitors`` and ``count_visitors`` read raw
  events directly; ``event_daily_series`` reads the overview rollup.

All methods are synchronous.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta
from typing import Literal

from sqlalchemy import Engine, distinct, func, select

from beacon.config import BeaconConfig
from beacon.database.engine import get_session
from beacon.database.models import (
    PageAggDaily,
    ProjectEvent,
    ProjectOverviewDaily,
    ProjectPageVisitorsDaily,
    ProjectVisitorsDaily,
)
from beacon.engine.cache import MISS, StatsCache
from beacon.engine.identity import visitor_key_column
from beacon.engine.ranges import DateLike, day_filters, day_start, instant_filters, to_day
from beacon.engine.records import (
    DailyPoint,
    EventSummary,
    OverviewPoint,
    PageStats,
    RealtimePage,
    RealtimeStats,
    VisitorStats,
    ensure_utc,
    isoformat_utc,
)

logger = logging.getLogger(__name__)

Granularity = Literal["daily", "monthly", "yearly"]
GRANULARITIES: tuple[str, ...] = ("daily", "monthly", "yearly")

DEFAULT_SERIES_DAYS = 30


def period_start(day: date, granularity: str) -> date:
    """First day of the period *day* falls in."""
    if granularity == "monthly":
        return day.replace(day=1)
    if granularity == "yearly":
        return day.replace(month=1, day=1)
    return day


def _utc_or_none(value: datetime | None) -> datetime | None:
    return ensure_utc(value) if value is not None else None


def _iso_day(value: date | None) -> str | None:
    return value.isoformat() if value is not None else None


class StatsReader:
    """Overview / pages / realtime / per-visitor reads for one store."""

    def __init__(
        self,
        engine: Engine,
        cache: StatsCache | None = None,
        config: BeaconConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.engine = engine
        self.config = config or BeaconConfig()
        self.cache = cache or StatsCache(ttl_seconds=self.config.cache_ttl_seconds)
        self._clock = clock or (lambda: datetime.now(UTC))

    # -------------------------------------------------------------------
    # Overview (cached)
    # -------------------------------------------------------------------
    def overview(
        self,
        project_id: str,
        granularity: str = "daily",
        start: DateLike = None,
        end: DateLike = None,
    ) -> list[OverviewPoint]:
        """Visits and unique visitors per period, oldest period first.

        Daily uniques come straight from the overview rollup.  Monthly and
        yearly uniques are distinct visitor keys over the per-visitor
        rollup, since summing daily uniques would count a returning
        visitor once per day.

        Raises
        ------
        ValueError
            Unknown *granularity* or unparseable range bound.
        """
        if granularity not in GRANULARITIES:
            raise ValueError(f"Unknown granularity: {granularity}")
        first, last = to_day(start), to_day(end)

        params = {"granularity": granularity, "from": _iso_day(first), "to": _iso_day(last)}
        generation = self.cache.generation(project_id)
        cached = self.cache.get("overview", project_id, params)
        if cached is not MISS:
            return cached

        visits_by_period: dict[date, int] = defaultdict(int)
        unique_by_period: dict[date, int] = {}

        with get_session(self.engine) as session:
            daily = session.execute(
                select(
                    ProjectOverviewDaily.event_date,
                    ProjectOverviewDaily.visits,
                    ProjectOverviewDaily.unique_visitors,
                )
                .where(
                    ProjectOverviewDaily.project_id == project_id,
                    *day_filters(ProjectOverviewDaily.event_date, first, last),
                )
                .order_by(ProjectOverviewDaily.event_date)
            ).all()

            for row in daily:
                period = period_start(row.event_date, granularity)
                visits_by_period[period] += int(row.visits or 0)
                if granularity == "daily":
                    unique_by_period[period] = int(row.unique_visitors or 0)

            if granularity != "daily":
                visitors = session.execute(
                    select(ProjectVisitorsDaily.event_date, ProjectVisitorsDaily.visitor_hash)
                    .where(
                        ProjectVisitorsDaily.project_id == project_id,
                        *day_filters(ProjectVisitorsDaily.event_date, first, last),
                    )
                ).all()
                seen: dict[date, set[str]] = defaultdict(set)
                for row in visitors:
                    seen[period_start(row.event_date, granularity)].add(row.visitor_hash)
                unique_by_period = {period: len(keys) for period, keys in seen.items()}

        result = [
            OverviewPoint(
                period=isoformat_utc(day_start(period)),
                visits=visits_by_period.get(period, 0),
                unique_visitors=unique_by_period.get(period, 0),
            )
            for period in sorted(set(visits_by_period) | set(unique_by_period))
        ]

        self.cache.put("overview", project_id, params, result, generation)
        return result

    # -------------------------------------------------------------------
    # Pages (cached)
    # -------------------------------------------------------------------
    def pages(
        self,
        project_id: str,
        path: str | None = None,
        page_url: str | None = None,
        start: DateLike = None,
        end: DateLike = None,
    ) -> list[PageStats]:
        """Top pages by visits over the range, with optional exact filters."""
        first, last = to_day(start), to_day(end)

        params = {
            "path": path,
            "page_url": page_url,
            "from": _iso_day(first),
            "to": _iso_day(last),
        }
        generation = self.cache.generation(project_id)
        cached = self.cache.get("pages", project_id, params)
        if cached is not MISS:
            return cached

        page_filters = [
            PageAggDaily.project_id == project_id,
            *day_filters(PageAggDaily.event_date, first, last),
        ]
        visitor_filters = [
            ProjectPageVisitorsDaily.project_id == project_id,
            *day_filters(ProjectPageVisitorsDaily.event_date, first, last),
        ]
        if path:
            page_filters.append(PageAggDaily.page_path == path)
            visitor_filters.append(ProjectPageVisitorsDaily.page_path == path)
        if page_url:
            page_filters.append(PageAggDaily.page_url == page_url)
            visitor_filters.append(ProjectPageVisitorsDaily.page_url == page_url)

        visits = func.sum(PageAggDaily.visits).label("visits")

        with get_session(self.engine) as session:
            top = session.execute(
                select(
                    PageAggDaily.page_path,
                    PageAggDaily.page_url,
                    visits,
                    func.min(PageAggDaily.first_seen_at).label("first_seen_at"),
                    func.max(PageAggDaily.last_seen_at).label("last_seen_at"),
                )
                .where(*page_filters)
                .group_by(PageAggDaily.page_path, PageAggDaily.page_url)
                .order_by(visits.desc(), PageAggDaily.page_path, PageAggDaily.page_url)
                .limit(self.config.top_pages_limit)
            ).all()

            uniques: dict[tuple[str | None, str | None], int] = {}
            if top:
                for row in session.execute(
                    select(
                        ProjectPageVisitorsDaily.page_path,
                        ProjectPageVisitorsDaily.page_url,
                        func.count(distinct(ProjectPageVisitorsDaily.visitor_hash)).label("uniques"),
                    )
                    .where(*visitor_filters)
                    .group_by(ProjectPageVisitorsDaily.page_path, ProjectPageVisitorsDaily.page_url)
                ).all():
                    uniques[(row.page_path, row.page_url)] = int(row.uniques or 0)

        result = [
            PageStats(
                path=row.page_path,
                page_url=row.page_url,
                visits=int(row.visits or 0),
                unique_visitors=uniques.get((row.page_path, row.page_url), 0),
                first_seen=_utc_or_none(row.first_seen_at),
                last_seen=_utc_or_none(row.last_seen_at),
            )
            for row in top
        ]

        self.cache.put("pages", project_id, params, result, generation)
        return result

    # -------------------------------------------------------------------
    # Realtime (never cached)
    # -------------------------------------------------------------------
    def realtime(self, project_id: str, lookback_seconds: int | None = None) -> RealtimeStats:
        """Activity over the trailing window ending now."""
        now = ensure_utc(self._clock())
        window = lookback_seconds or self.config.realtime_lookback_seconds
        since = now - timedelta(seconds=window)
        filters = (ProjectEvent.project_id == project_id, ProjectEvent.occurred_at >= since)
        hits = func.count().label("visits")

        with get_session(self.engine) as session:
            summary = session.execute(
                select(
                    func.count(distinct(visitor_key_column())).label("visitors"),
                    func.count(distinct(ProjectEvent.session_hash)).label("sessions"),
                ).where(*filters)
            ).one()

            top = session.execute(
                select(ProjectEvent.path, ProjectEvent.page_url, hits)
                .where(*filters)
                .group_by(ProjectEvent.path, ProjectEvent.page_url)
                .order_by(hits.desc(), ProjectEvent.path, ProjectEvent.page_url)
                .limit(self.config.realtime_top_pages)
            ).all()

        return RealtimeStats(
            active_visitors=int(summary.visitors or 0),
            active_sessions=int(summary.sessions or 0),
            top_pages=[
                RealtimePage(path=r.path, page_url=r.page_url, visits=int(r.visits))
                for r in top
            ],
            updated_at=now,
        )

    # -------------------------------------------------------------------
    # Event summary & daily series
    # -------------------------------------------------------------------
    def event_summary(
        self, project_id: str, start: DateLike = None, end: DateLike = None,
    ) -> EventSummary:
        with get_session(self.engine) as session:
            row = session.execute(
                select(
                    func.count().label("events"),
                    func.count(distinct(visitor_key_column())).label("visitors"),
                    func.count(distinct(ProjectEvent.session_hash)).label("sessions"),
                    func.min(ProjectEvent.occurred_at).label("first_seen"),
                    func.max(ProjectEvent.occurred_at).label("last_seen"),
                ).where(
                    ProjectEvent.project_id == project_id,
                    *instant_filters(ProjectEvent.occurred_at, start, end),
                )
            ).one()

        return EventSummary(
            total_events=int(row.events or 0),
            unique_visitors=int(row.visitors or 0),
            unique_sessions=int(row.sessions or 0),
            first_seen=_utc_or_none(row.first_seen),
            last_seen=_utc_or_none(row.last_seen),
        )

    def event_daily_series(
        self, project_id: str, start: DateLike = None, end: DateLike = None,
    ) -> list[DailyPoint]:
        """One point per day from *start* to *end* inclusive, gaps as zeros.

        Without bounds the series covers the 30 days ending today (UTC).
        """
        last = to_day(end) or ensure_utc(self._clock()).date()
        first = to_day(start) or last - timedelta(days=DEFAULT_SERIES_DAYS)
        if first > last:
            return []

        with get_session(self.engine) as session:
            rows = session.execute(
                select(
                    ProjectOverviewDaily.event_date,
                    ProjectOverviewDaily.visits,
                    ProjectOverviewDaily.unique_visitors,
                ).where(
                    ProjectOverviewDaily.project_id == project_id,
                    *day_filters(ProjectOverviewDaily.event_date, first, last),
                )
            ).all()
        by_day = {r.event_date: r for r in rows}

        series: list[DailyPoint] = []
        day = first
        while day <= last:
            row = by_day.get(day)
            series.append(
                DailyPoint(
                    date=day,
                    events=int(row.visits) if row else 0,
                    unique_visitors=int(row.unique_visitors) if row else 0,
                )
            )
            day += timedelta(days=1)
        return series

    # -------------------------------------------------------------------
    # Visitors
    # -------------------------------------------------------------------
    def list_visitors(
        self,
        project_id: str,
        start: DateLike = None,
        end: DateLike = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[VisitorStats]:
        """Per-visitor activity, most recently active first."""
        visitor = visitor_key_column().label("visitor_id")
        last_seen = func.max(ProjectEvent.occurred_at).label("last_seen")

        with get_session(self.engine) as session:
            rows = session.execute(
                select(
                    visitor,
                    func.count().label("visits"),
                    func.count(distinct(ProjectEvent.session_hash)).label("sessions"),
                    func.min(ProjectEvent.occurred_at).label("first_seen"),
                    last_seen,
                )
                .where(
                    ProjectEvent.project_id == project_id,
                    *instant_filters(ProjectEvent.occurred_at, start, end),
                )
                .group_by(visitor)
                .order_by(last_seen.desc(), visitor)
                .limit(limit)
                .offset(offset)
            ).all()

        return [
            VisitorStats(
                visitor_id=r.visitor_id,
                visits=int(r.visits),
                sessions=int(r.sessions or 0),
                first_seen=_utc_or_none(r.first_seen),
                last_seen=_utc_or_none(r.last_seen),
            )
            for r in rows
        ]

    def count_visitors(
        self, project_id: str, start: DateLike = None, end: DateLike = None,
    ) -> int:
        with get_session(self.engine) as session:
            total = session.scalar(
                select(func.count(distinct(visitor_key_column()))).where(
                    ProjectEvent.project_id == project_id,
                    *instant_filters(ProjectEvent.occurred_at, start, end),
                )
            )
        return int(total or 0)
