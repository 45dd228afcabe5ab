"""
beacon.pipeline — Service Wiring & Inbound API
===============================================

:class:`Pipeline` carries the shared engine, config, cache and scheduler,
and exposes the calls an HTTP layer makes.  Results are typed records;
``record.to_dict()`` gives the JSON shape (ISO-8601 UTC timestamps).

Usage::

    engine = create_db_engine()
    pipeline = build_pipeline(engine, load_config())
    pipeline.start(asyncio.get_running_loop())   # background rollup flushes

    result = pipeline.ingest("proj_1", [{"timestamp": "...", "path": "/"}])
    points = pipeline.overview("proj_1", "monthly", "2025-01-01", "2025-03-31")
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Engine

from beacon.config import BeaconConfig
from beacon.database.engine import run_db
from beacon.engine.cache import StatsCache
from beacon.engine.ranges import DateLike
from beacon.engine.records import (
    DailyPoint,
    EventRow,
    EventSummary,
    FunnelStats,
    IngestionResult,
    OverviewPoint,
    PageStats,
    RealtimeStats,
    VisitorStats,
)
from beacon.services.aggregation_scheduler import AggregationScheduler
from beacon.services.event_service import EventAdmissionService, EventInput
from beacon.services.funnel_service import FunnelService
from beacon.services.rollup_service import RollupRebuilder
from beacon.services.stats_service import StatsReader

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Pipeline:
    """Every service of one deployment, sharing one engine and cache."""
    engine: Engine
    config: BeaconConfig
    cache: StatsCache
    rebuilder: RollupRebuilder
    scheduler: AggregationScheduler
    events: EventAdmissionService
    stats: StatsReader
    funnels: FunnelService

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------
    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        self.scheduler.start(loop)

    async def shutdown(self) -> None:
        """Stop scheduling and run whatever is still pending."""
        self.scheduler.stop()
        await self.scheduler.drain()
        if self.scheduler.pending():
            await run_db(self.scheduler.flush)

    # -------------------------------------------------------------------
    # Inbound API
    # -------------------------------------------------------------------
    def ingest(
        self, project_id: str, events: Sequence[EventInput | Mapping[str, Any]],
    ) -> IngestionResult:
        return self.events.admit(project_id, events)

    def list_events(
        self,
        project_id: str,
        start: DateLike = None,
        end: DateLike = None,
        page: int = 1,
        limit: int | None = None,
    ) -> list[EventRow]:
        """One page of events, newest first; *page* is 1-based."""
        size = self._page_size(limit)
        return self.events.list_events(
            project_id, start=start, end=end, limit=size, offset=(max(page, 1) - 1) * size,
        )

    def overview(
        self,
        project_id: str,
        granularity: str = "daily",
        start: DateLike = None,
        end: DateLike = None,
    ) -> list[OverviewPoint]:
        return self.stats.overview(project_id, granularity, start, end)

    def pages(
        self,
        project_id: str,
        path: str | None = None,
        page_url: str | None = None,
        start: DateLike = None,
        end: DateLike = None,
    ) -> list[PageStats]:
        return self.stats.pages(project_id, path=path, page_url=page_url, start=start, end=end)

    def realtime(self, project_id: str) -> RealtimeStats:
        return self.stats.realtime(project_id)

    def funnel_stats(
        self,
        project_id: str,
        funnel_id: str,
        start: DateLike = None,
        end: DateLike = None,
    ) -> FunnelStats | None:
        return self.funnels.get_funnel_stats(project_id, funnel_id, start, end)

    def event_summary(
        self, project_id: str, start: DateLike = None, end: DateLike = None,
    ) -> EventSummary:
        return self.stats.event_summary(project_id, start, end)

    def event_daily_series(
        self, project_id: str, start: DateLike = None, end: DateLike = None,
    ) -> list[DailyPoint]:
        return self.stats.event_daily_series(project_id, start, end)

    def list_visitors(
        self,
        project_id: str,
        start: DateLike = None,
        end: DateLike = None,
        page: int = 1,
        limit: int | None = None,
    ) -> list[VisitorStats]:
        size = self._page_size(limit)
        return self.stats.list_visitors(
            project_id, start, end, limit=size, offset=(max(page, 1) - 1) * size,
        )

    def count_visitors(
        self, project_id: str, start: DateLike = None, end: DateLike = None,
    ) -> int:
        return self.stats.count_visitors(project_id, start, end)

    def _page_size(self, limit: int | None) -> int:
        if limit is None or limit <= 0:
            return self.config.default_page_size
        return min(limit, self.config.max_page_size)


def build_pipeline(engine: Engine, cfg: BeaconConfig | None = None) -> Pipeline:
    """Wire every service around *engine*; the scheduler starts unbound."""
    cfg = cfg or BeaconConfig()
    cache = StatsCache(ttl_seconds=cfg.cache_ttl_seconds)
    rebuilder = RollupRebuilder(engine, cache)
    scheduler = AggregationScheduler(rebuilder, cache)

    logger.info(
        "Pipeline ready (batch=%d, cache_ttl=%ss, realtime=%ss)",
        cfg.max_batch_size, cfg.cache_ttl_seconds, cfg.realtime_lookback_seconds,
    )
    return Pipeline(
        engine=engine,
        config=cfg,
        cache=cache,
        rebuilder=rebuilder,
        scheduler=scheduler,
        events=EventAdmissionService(engine, scheduler, max_batch_size=cfg.max_batch_size),
        stats=StatsReader(engine, cache, cfg),
        funnels=FunnelService(engine),
    )
