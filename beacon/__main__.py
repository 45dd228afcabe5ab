"""
beacon.__main__ — Rollup backfill for ``python -m beacon``
===========================================================

Rebuilds the daily rollups from raw events, for one project or for every
project that has events.  Use it after a bulk import, after changing the
aggregation logic, or to reconcile days a failed background flush left
stale.

Run with::

    python -m beacon all
    python -m beacon proj_123 2025-01-01 2025-01-31
"""

from __future__ import annotations

import argparse
import logging
import sys

from dotenv import load_dotenv

from beacon.database.engine import create_db_engine
from beacon.engine.ranges import parse_bound
from beacon.services.rollup_service import RollupRebuilder

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("beacon")


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="python -m beacon",
        description="Rebuild daily stats rollups from raw events.",
    )
    parser.add_argument("project", help="project id, or 'all' for every project with events")
    parser.add_argument("date_from", nargs="?", help="first day (YYYY-MM-DD), inclusive")
    parser.add_argument("date_to", nargs="?", help="last day (YYYY-MM-DD), inclusive")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Backfill rollups; returns the process exit code."""
    args = _parse_args(argv)
    load_dotenv()

    try:
        start = parse_bound(args.date_from)
        end = parse_bound(args.date_to)
    except ValueError as exc:
        logger.error("%s", exc)
        return 2

    engine = create_db_engine()
    rebuilder = RollupRebuilder(engine)

    projects = rebuilder.list_projects() if args.project == "all" else [args.project]
    if not projects:
        logger.info("No projects with events; nothing to backfill.")
        return 0

    failed = 0
    for project_id in projects:
        try:
            dates = rebuilder.rebuild_range(project_id, start, end)
        except Exception:
            logger.exception("Backfill failed for project %s", project_id)
            failed += 1
            continue
        if dates:
            logger.info("Backfilled %s: %d days", project_id, len(dates))

    logger.info("Backfill complete: %d projects, %d failed", len(projects), failed)
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
