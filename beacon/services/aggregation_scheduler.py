"""
beacon.services.aggregation_scheduler — Coalesced Rollup Flushes
=================================================================

Collects "this (project, day) needs recomputing" signals from ingestion
and turns bursts of them into one background flush.

How it works:
    1. ``notify(project_id, dates)`` merges the dates into the pending map
       and, if no flush is queued yet, queues one on the event loop with
       ``call_soon_threadsafe`` (so it is safe to call from the worker
       threads ``run_db`` uses).
    2. The queued callback starts ``run_db(self.flush)``.
    3. ``flush()`` swaps the pending map for an empty one, then rebuilds
       each project's days in ascending order and evicts that project's
       cached stats once, after its last day.
    4. Signals arriving during a flush land in the fresh map and queue the
       next flush, which waits for the current one to finish.

A failed project is logged and its remaining days are dropped for this
cycle; other projects still run.  Nothing is retried; run a range
rebuild (``python -m beacon``) to reconcile.

Without a bound loop (``start()`` never called) the scheduler only
accumulates; the owner calls :meth:`flush` itself.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date
from typing import TYPE_CHECKING

from beacon.database.engine import run_db

if TYPE_CHECKING:
    from beacon.engine.cache import StatsCache
    from beacon.services.rollup_service import RollupRebuilder

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FlushReport:
    """What one flush did."""
    rebuilt: dict[str, list[date]] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def dates_rebuilt(self) -> int:
        return sum(len(days) for days in self.rebuilt.values())


class AggregationScheduler:
    """Owns the pending-aggregation map and the flush flag.

    One instance per process, handed to :class:`EventAdmissionService`.
    """

    def __init__(
        self,
        rebuilder: RollupRebuilder,
        cache: StatsCache | None = None,
    ) -> None:
        self.rebuilder = rebuilder
        self.cache = cache

        self._lock = threading.Lock()          # guards _pending / _flush_queued
        self._flush_lock = threading.Lock()    # one flush in flight
        self._pending: dict[str, set[date]] = {}
        self._flush_queued = False

        self._loop: asyncio.AbstractEventLoop | None = None
        self._tasks: set[asyncio.Task] = set()

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------
    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        """Bind to *loop*; later notifies queue flushes on it.

        Days that were notified before binding are flushed on the next
        loop iteration.
        """
        self._loop = loop
        with self._lock:
            queue_now = bool(self._pending) and not self._flush_queued
            if queue_now:
                self._flush_queued = True
        if queue_now:
            loop.call_soon_threadsafe(self._spawn_flush)

    def stop(self) -> None:
        """Unbind from the loop; in-flight flushes run to completion."""
        self._loop = None

    async def drain(self) -> None:
        """Wait for every flush task spawned so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -------------------------------------------------------------------
    # Signals
    # -------------------------------------------------------------------
    def notify(self, project_id: str, dates: Iterable[date]) -> None:
        """Mark *dates* of *project_id* for recomputation (fire-and-forget)."""
        new_dates = set(dates)
        if not new_dates:
            return

        with self._lock:
            self._pending.setdefault(project_id, set()).update(new_dates)
            loop = self._loop
            queue_now = loop is not None and not self._flush_queued
            if queue_now:
                self._flush_queued = True

        if queue_now:
            assert loop is not None
            loop.call_soon_threadsafe(self._spawn_flush)

    def pending(self) -> dict[str, list[date]]:
        """Snapshot of the pending map, dates ascending."""
        with self._lock:
            return {pid: sorted(days) for pid, days in self._pending.items()}

    @property
    def flush_queued(self) -> bool:
        with self._lock:
            return self._flush_queued

    def _spawn_flush(self) -> None:
        loop = self._loop
        if loop is None:
            # Unbound between notify and this callback; leave the days pending.
            with self._lock:
                self._flush_queued = False
            return
        task = loop.create_task(self._run_flush(), name="rollup-flush")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_flush(self) -> None:
        try:
            await run_db(self.flush)
        except Exception:
            logger.exception("Failed to flush stats aggregation queue")

    # -------------------------------------------------------------------
    # Flush
    # -------------------------------------------------------------------
    def flush(self) -> FlushReport:
        """Rebuild everything pending right now.

        Synchronous; safe to call directly or via ``run_db``.
        """
        report = FlushReport()
        with self._flush_lock:
            with self._lock:
                snapshot = self._pending
                self._pending = {}
                self._flush_queued = False

            for project_id in sorted(snapshot):
                days = sorted(snapshot[project_id])
                if not days:
                    continue
                try:
                    for day in days:
                        self.rebuilder.rebuild_date(project_id, day)
                    if self.cache is not None:
                        self.cache.invalidate_project(project_id)
                except Exception as exc:
                    logger.exception(
                        "Failed to recompute aggregates for project %s (%d days dropped)",
                        project_id, len(days),
                    )
                    report.failed[project_id] = str(exc)
                    continue
                report.rebuilt[project_id] = days

        if report.rebuilt or report.failed:
            logger.info(
                "Aggregation flush: %d projects, %d days rebuilt, %d projects failed",
                len(report.rebuilt), report.dates_rebuilt, len(report.failed),
            )
        return report
