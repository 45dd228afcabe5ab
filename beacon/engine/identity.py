"""
beacon.engine.identity — Visitor Keys & Idempotency Fingerprints
=================================================================

Pure helpers shared by ingestion, rollup rebuilds, realtime reads and
funnel stats, so the same visitor resolves identically on every path.

Visitor key priority:
  1. hashed user id
  2. hashed session id
  3. the event's own id (the event counts as its own visitor)

Anonymous ids are hashed and stored but do not take part in the visitor
key; anonymous-only traffic is counted one visitor per event.
"""

from __future__ import annotations

import hashlib

from sqlalchemy import func
from sqlalchemy.sql.elements import ColumnElement

from beacon.database.models import ProjectEvent

__all__ = [
    "hash_secret",
    "hash_identifier",
    "resolve_visitor_key",
    "visitor_key_column",
    "derive_idempotency_key",
]


def hash_secret(value: str) -> str:
    """SHA-256 hex digest of *value*."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def hash_identifier(value: str | None) -> str | None:
    """Hash a raw identifier, or return None when it is missing or empty."""
    return hash_secret(value) if value else None


def resolve_visitor_key(
    user_id: str | None,
    session_id: str | None,
    event_id: str,
) -> str:
    """Return the visitor key for an event from its *raw* identifiers."""
    return hash_identifier(user_id) or hash_identifier(session_id) or event_id


def visitor_key_column() -> ColumnElement[str]:
    """SQL form of :func:`resolve_visitor_key` over stored hashes."""
    return func.coalesce(
        ProjectEvent.user_hash,
        ProjectEvent.session_hash,
        ProjectEvent.id,
    )


def derive_idempotency_key(
    *,
    timestamp: str,
    page_url: str | None,
    path: str | None,
    session_id: str | None,
    anon_id: str | None,
    user_id: str | None,
    funnel_id: str | None,
    step: str | None,
) -> str:
    """Fingerprint a logical event so a resubmission is recognised.

    Uses the timestamp exactly as submitted; ``2025-01-01T00:00:00Z`` and
    ``2025-01-01T00:00:00+00:00`` are different submissions.
    """
    identity = session_id or anon_id or user_id or ""
    return hash_secret(
        "|".join([
            timestamp,
            page_url or "",
            path or "",
            identity,
            funnel_id or "",
            step or "",
        ])
    )
