"""
beacon.services.rollup_service — Daily Rollup Rebuilds
=======================================================

Recomputes the four daily rollup tables for one (project, day) from the
raw ``project_events`` rows.

How a rebuild works (one transaction):
    1. Delete every overview / page / visitor / page-visitor row for the
       (project, day).
    2. Aggregate the day's raw events ``[00:00 UTC, next 00:00 UTC)`` into
       typed records, one list per rollup variant.
    3. Bulk-insert the records.
    4. Commit.  A failure anywhere rolls all four tables back, so readers
       see the old day or the new day, never a mix.

Because a rebuild is delete + reinsert from the raw events, running it
twice (or concurrently from two processes) yields the same rows.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import Engine, delete, distinct, func, insert, select
from sqlalchemy.orm import Session

from beacon.database.engine import get_session
from beacon.database.models import (
    ROLLUP_MODELS,
    PageAggDaily,
    ProjectEvent,
    ProjectOverviewDaily,
    ProjectPageVisitorsDaily,
    ProjectVisitorsDaily,
)
from beacon.engine.identity import visitor_key_column
from beacon.engine.ranges import DateLike, day_start, instant_filters
from beacon.engine.records import OverviewRow, PageRow, PageVisitorRow, VisitorRow, ensure_utc

if TYPE_CHECKING:
    from beacon.engine.cache import StatsCache

logger = logging.getLogger(__name__)


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """Return ``[start, end)`` of *day* in UTC."""
    start = day_start(day)
    return start, start + timedelta(days=1)


def _as_date(value: date | str) -> date:
    """``DATE()`` comes back as ``date`` on PostgreSQL and ``str`` on SQLite."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _utc_or_none(value: datetime | None) -> datetime | None:
    return ensure_utc(value) if value is not None else None


# ---------------------------------------------------------------------------
# Aggregation queries (read raw events → typed rollup records)
# ---------------------------------------------------------------------------
def compute_overview_rows(session: Session, project_id: str, day: date) -> list[OverviewRow]:
    start, end = day_bounds(day)
    row = session.execute(
        select(
            func.count().label("visits"),
            func.count(distinct(visitor_key_column())).label("unique_visitors"),
            func.min(ProjectEvent.occurred_at).label("first_seen_at"),
            func.max(ProjectEvent.occurred_at).label("last_seen_at"),
        )
        .where(
            ProjectEvent.project_id == project_id,
            ProjectEvent.occurred_at >= start,
            ProjectEvent.occurred_at < end,
        )
    ).one()

    if not row.visits:
        return []
    return [
        OverviewRow(
            project_id=project_id,
            event_date=day,
            visits=int(row.visits),
            unique_visitors=int(row.unique_visitors),
            first_seen_at=_utc_or_none(row.first_seen_at),
            last_seen_at=_utc_or_none(row.last_seen_at),
        )
    ]


def compute_page_rows(session: Session, project_id: str, day: date) -> list[PageRow]:
    start, end = day_bounds(day)
    rows = session.execute(
        select(
            ProjectEvent.path,
            ProjectEvent.page_url,
            func.count().label("visits"),
            func.count(distinct(visitor_key_column())).label("unique_visitors"),
            func.min(ProjectEvent.occurred_at).label("first_seen_at"),
            func.max(ProjectEvent.occurred_at).label("last_seen_at"),
        )
        .where(
            ProjectEvent.project_id == project_id,
            ProjectEvent.occurred_at >= start,
            ProjectEvent.occurred_at < end,
        )
        .group_by(ProjectEvent.path, ProjectEvent.page_url)
        .order_by(ProjectEvent.path, ProjectEvent.page_url)
    ).all()

    return [
        PageRow(
            project_id=project_id,
            event_date=day,
            page_path=r.path,
            page_url=r.page_url,
            visits=int(r.visits),
            unique_visitors=int(r.unique_visitors),
            first_seen_at=_utc_or_none(r.first_seen_at),
            last_seen_at=_utc_or_none(r.last_seen_at),
        )
        for r in rows
    ]


def compute_visitor_rows(session: Session, project_id: str, day: date) -> list[VisitorRow]:
    start, end = day_bounds(day)
    visitor = visitor_key_column().label("visitor_hash")
    rows = session.execute(
        select(
            visitor,
            func.min(ProjectEvent.occurred_at).label("first_seen_at"),
            func.max(ProjectEvent.occurred_at).label("last_seen_at"),
        )
        .where(
            ProjectEvent.project_id == project_id,
            ProjectEvent.occurred_at >= start,
            ProjectEvent.occurred_at < end,
        )
        .group_by(visitor)
        .order_by(visitor)
    ).all()

    return [
        VisitorRow(
            project_id=project_id,
            event_date=day,
            visitor_hash=r.visitor_hash,
            first_seen_at=_utc_or_none(r.first_seen_at),
            last_seen_at=_utc_or_none(r.last_seen_at),
        )
        for r in rows
    ]


def compute_page_visitor_rows(
    session: Session, project_id: str, day: date,
) -> list[PageVisitorRow]:
    start, end = day_bounds(day)
    visitor = visitor_key_column().label("visitor_hash")
    rows = session.execute(
        select(
            ProjectEvent.path,
            ProjectEvent.page_url,
            visitor,
            func.min(ProjectEvent.occurred_at).label("first_seen_at"),
            func.max(ProjectEvent.occurred_at).label("last_seen_at"),
        )
        .where(
            ProjectEvent.project_id == project_id,
            ProjectEvent.occurred_at >= start,
            ProjectEvent.occurred_at < end,
        )
        .group_by(ProjectEvent.path, ProjectEvent.page_url, visitor)
        .order_by(ProjectEvent.path, ProjectEvent.page_url, visitor)
    ).all()

    return [
        PageVisitorRow(
            project_id=project_id,
            event_date=day,
            page_path=r.path,
            page_url=r.page_url,
            visitor_hash=r.visitor_hash,
            first_seen_at=_utc_or_none(r.first_seen_at),
            last_seen_at=_utc_or_none(r.last_seen_at),
        )
        for r in rows
    ]


# ---------------------------------------------------------------------------
# RollupRebuilder
# ---------------------------------------------------------------------------
class RollupRebuilder:
    """Rebuilds rollups per day (:meth:`rebuild_date`) or per range
    (:meth:`rebuild_range`).

    Synchronous; call via ``await run_db(rebuilder.rebuild_date, ...)``
    from async code.
    """

    def __init__(self, engine: Engine, cache: StatsCache | None = None) -> None:
        self.engine = engine
        self.cache = cache

    def rebuild_date(self, project_id: str, day: date) -> None:
        """Atomically replace all four rollup variants for (project, day)."""
        with get_session(self.engine) as session:
            for model in ROLLUP_MODELS:
                session.execute(
                    delete(model).where(
                        model.project_id == project_id,  # type: ignore[attr-defined]
                        model.event_date == day,  # type: ignore[attr-defined]
                    )
                )

            overview = compute_overview_rows(session, project_id, day)
            pages = compute_page_rows(session, project_id, day)
            visitors = compute_visitor_rows(session, project_id, day)
            page_visitors = compute_page_visitor_rows(session, project_id, day)

            for model, records in (
                (ProjectOverviewDaily, overview),
                (PageAggDaily, pages),
                (ProjectVisitorsDaily, visitors),
                (ProjectPageVisitorsDaily, page_visitors),
            ):
                if records:
                    session.execute(insert(model), [asdict(r) for r in records])

        logger.debug(
            "Rollup rebuilt: project=%s day=%s overview=%d pages=%d visitors=%d page_visitors=%d",
            project_id, day, len(overview), len(pages), len(visitors), len(page_visitors),
        )

    def discover_dates(
        self,
        project_id: str,
        start: DateLike = None,
        end: DateLike = None,
    ) -> list[date]:
        """Distinct UTC event dates for the project, ascending.

        Either bound may be omitted to scan the whole history on that side;
        a day given as *end* includes that whole day.
        """
        event_day = func.date(ProjectEvent.occurred_at)
        q = select(event_day).distinct().where(
            ProjectEvent.project_id == project_id,
            *instant_filters(ProjectEvent.occurred_at, start, end),
        )

        with get_session(self.engine) as session:
            values = session.scalars(q).all()

        return sorted({_as_date(v) for v in values if v is not None})

    def rebuild_range(
        self,
        project_id: str,
        start: DateLike = None,
        end: DateLike = None,
    ) -> list[date]:
        """Rebuild every day that has events in the range, then evict the
        project's cached stats once.

        Returns the rebuilt dates; an empty range is a no-op.
        """
        dates = self.discover_dates(project_id, start, end)
        if not dates:
            logger.info("Rollup range rebuild: project %s has no events in range", project_id)
            return []

        for day in dates:
            self.rebuild_date(project_id, day)

        if self.cache is not None:
            self.cache.invalidate_project(project_id)

        logger.info(
            "Rollup range rebuild: project %s: %d days (%s → %s)",
            project_id, len(dates), dates[0], dates[-1],
        )
        return dates

    def list_projects(self) -> list[str]:
        """Every project id that has at least one raw event."""
        with get_session(self.engine) as session:
            return sorted(session.scalars(select(ProjectEvent.project_id).distinct()).all())
