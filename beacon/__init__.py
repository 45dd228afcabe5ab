"""
Beacon — Event Ingestion & Daily Rollup Pipeline
=================================================
Admits visitor-activity events per project, keeps four daily rollup
tables fresh in the background, and serves dashboard queries (overview,
pages, visitors, funnels, realtime) from those rollups through a
short-lived read cache.

Package layout::

    beacon/
    ├── config.py          # YAML → typed Python config
    ├── pipeline.py        # Wires the services together (inbound API)
    ├── __main__.py        # ``python -m beacon`` bulk rollup backfill
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine, sessions, async helper
    │   └── models.py      # Events, funnels and rollup tables
    ├── engine/
    │   ├── identity.py    # Visitor keys + idempotency fingerprints
    │   ├── records.py     # Typed rollup rows and result records
    │   ├── funnel.py      # Step normalisation + conversion math
    │   └── cache.py       # TTL read cache with per-project eviction
    └── services/
        ├── event_service.py         # Idempotent batch admission
        ├── aggregation_scheduler.py # Coalesced background flushes
        ├── rollup_service.py        # Transactional per-day rebuilds
        ├── stats_service.py         # Cache-through dashboard reads
        └── funnel_service.py        # Funnel CRUD + funnel stats
"""

__version__ = "0.1.0"
