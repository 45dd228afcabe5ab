"""
beacon.config — YAML Configuration Loader
==========================================

Reads ``config.yaml`` for pipeline tuning (batch limits, cache TTL,
realtime window, page sizes).  Secrets such as ``DATABASE_URL`` stay in
the environment (``.env``) and are never read from this file.

Usage::

    from beacon.config import load_config

    cfg = load_config()              # reads ./config.yaml by default
    print(cfg.cache_ttl_seconds)     # 60
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class BeaconConfig:
    """Immutable configuration loaded from ``config.yaml``.

    Every field has a default so ``BeaconConfig()`` is a usable
    configuration for tests and one-off scripts.
    """

    # Ingestion
    max_batch_size: int = 500

    # Read cache
    cache_ttl_seconds: float = 60.0

    # Stats reads
    realtime_lookback_seconds: int = 300
    realtime_top_pages: int = 10
    top_pages_limit: int = 50

    # Event / visitor listings
    default_page_size: int = 50
    max_page_size: int = 200


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> BeaconConfig:
    """Read *path* and return a :class:`BeaconConfig` instance.

    Keys missing from the file fall back to the dataclass defaults.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    ValueError
        If a numeric setting is not positive.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    defaults = BeaconConfig()
    cfg = BeaconConfig(
        max_batch_size=int(raw.get("max_batch_size", defaults.max_batch_size)),
        cache_ttl_seconds=float(raw.get("cache_ttl_seconds", defaults.cache_ttl_seconds)),
        realtime_lookback_seconds=int(
            raw.get("realtime_lookback_seconds", defaults.realtime_lookback_seconds)
        ),
        realtime_top_pages=int(raw.get("realtime_top_pages", defaults.realtime_top_pages)),
        top_pages_limit=int(raw.get("top_pages_limit", defaults.top_pages_limit)),
        default_page_size=int(raw.get("default_page_size", defaults.default_page_size)),
        max_page_size=int(raw.get("max_page_size", defaults.max_page_size)),
    )

    for name in (
        "max_batch_size", "cache_ttl_seconds", "realtime_lookback_seconds",
        "realtime_top_pages", "top_pages_limit", "default_page_size", "max_page_size",
    ):
        if getattr(cfg, name) <= 0:
            raise ValueError(f"config.yaml: {name} must be positive")

    return cfg
