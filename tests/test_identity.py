"""
tests/test_identity.py — Visitor Keys & Idempotency Fingerprints
=================================================================
"""

from __future__ import annotations

from sqlalchemy import select

from beacon.database.models import ProjectEvent
from beacon.engine.identity import (
    derive_idempotency_key,
    hash_identifier,
    hash_secret,
    resolve_visitor_key,
    visitor_key_column,
)


def _key(**overrides) -> str:
    fields = {
        "timestamp": "2025-01-01T10:00:00Z",
        "page_url": "https://example.com/",
        "path": "/",
        "session_id": "s1",
        "anon_id": None,
        "user_id": None,
        "funnel_id": None,
        "step": None,
    }
    fields.update(overrides)
    return derive_idempotency_key(**fields)


class TestHashing:

    def test_sha256_hex(self):
        digest = hash_secret("visitor")
        assert len(digest) == 64
        assert all(c in "0123456789abcdef" for c in digest)

    def test_deterministic(self):
        assert hash_secret("abc") == hash_secret("abc")
        assert hash_secret("abc") != hash_secret("abd")

    def test_missing_identifier_is_none(self):
        assert hash_identifier(None) is None
        assert hash_identifier("") is None
        assert hash_identifier("u1") == hash_secret("u1")


class TestResolveVisitorKey:

    def test_user_wins(self):
        assert resolve_visitor_key("u1", "s1", "evt") == hash_secret("u1")

    def test_session_when_no_user(self):
        assert resolve_visitor_key(None, "s1", "evt") == hash_secret("s1")

    def test_event_id_fallback(self):
        assert resolve_visitor_key(None, None, "evt-1") == "evt-1"

    def test_empty_strings_count_as_absent(self):
        assert resolve_visitor_key("", "", "evt-1") == "evt-1"
        assert resolve_visitor_key("", "s1", "evt-1") == hash_secret("s1")

    def test_sql_form_agrees_with_python(self, admission, db_session):
        admission.admit("p1", [
            {"timestamp": "2025-01-01T10:00:00Z", "path": "/a", "user_id": "u1", "session_id": "s1"},
            {"timestamp": "2025-01-01T10:01:00Z", "path": "/b", "session_id": "s2"},
            {"timestamp": "2025-01-01T10:02:00Z", "path": "/c", "anon_id": "a1"},
        ])
        rows = db_session.execute(
            select(ProjectEvent.id, ProjectEvent.path, visitor_key_column().label("vk"))
            .order_by(ProjectEvent.path)
        ).all()
        raw = {"/a": ("u1", "s1"), "/b": (None, "s2"), "/c": (None, None)}
        for row in rows:
            user, session = raw[row.path]
            assert row.vk == resolve_visitor_key(user, session, row.id)


class TestIdempotencyKey:

    def test_same_inputs_same_key(self):
        assert _key() == _key()

    def test_each_field_changes_key(self):
        base = _key()
        assert _key(page_url="https://example.com/x") != base
        assert _key(path="/x") != base
        assert _key(session_id="s2") != base
        assert _key(funnel_id="f1") != base
        assert _key(step="signup") != base

    def test_raw_timestamp_text_is_fingerprinted(self):
        assert _key(timestamp="2025-01-01T10:00:00Z") != _key(timestamp="2025-01-01T10:00:00+00:00")

    def test_session_preferred_over_anon_and_user(self):
        assert _key(session_id="s1", user_id="u1") == _key(session_id="s1", user_id="u9")
        assert _key(session_id=None, anon_id="a1", user_id="u1") == _key(
            session_id=None, anon_id="a1", user_id="u2"
        )
        assert _key(session_id=None, user_id="u1") != _key(session_id=None, user_id="u2")
