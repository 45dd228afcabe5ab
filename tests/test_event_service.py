"""
tests/test_event_service.py — Event Admission Integration Tests
================================================================

Tests for:
- batch validation (size limit, all-or-nothing timestamps)
- idempotency (derived and caller-supplied keys)
- identifier hashing (raw ids never stored)
- funnel/step attribution checks
- scheduler notification after commit
- event listing
"""

from __future__ import annotations

from datetime import date
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from beacon.database.models import ProjectEvent
from beacon.engine.funnel import FunnelInput, FunnelStepInput
from beacon.engine.identity import hash_secret
from beacon.services.event_service import (
    MAX_BATCH,
    EventAdmissionService,
    IngestValidationError,
    parse_timestamp,
)
from beacon.services.funnel_service import FunnelService


def _event(ts: str = "2025-01-01T10:00:00Z", **fields) -> dict:
    return {"timestamp": ts, "page_url": "https://example.com/", "path": "/", **fields}


def _count(session, project_id: str = "p1") -> int:
    return session.scalar(
        select(func.count()).select_from(ProjectEvent).where(ProjectEvent.project_id == project_id)
    )


@pytest.fixture
def scheduler():
    return MagicMock()


@pytest.fixture
def service(db_engine, scheduler):
    return EventAdmissionService(db_engine, scheduler)


@pytest.fixture
def funnel(db_engine):
    return FunnelService(db_engine).create_funnel(
        "p1",
        FunnelInput(
            name="Signup",
            steps=[FunnelStepInput(key="land", name="Land"), FunnelStepInput(key="signup", name="Signup")],
        ),
    )


# ---------------------------------------------------------------------------
# Timestamp parsing
# ---------------------------------------------------------------------------
class TestParseTimestamp:

    def test_z_suffix(self):
        assert parse_timestamp("2025-01-01T10:00:00Z").isoformat() == "2025-01-01T10:00:00+00:00"

    def test_offset_normalised_to_utc(self):
        assert parse_timestamp("2025-01-01T01:00:00+02:00").isoformat() == "2024-12-31T23:00:00+00:00"

    def test_naive_is_utc(self):
        assert parse_timestamp("2025-01-01T10:00:00").utcoffset().total_seconds() == 0

    def test_invalid(self):
        with pytest.raises(ValueError):
            parse_timestamp("not-a-date")


# ---------------------------------------------------------------------------
# Batch validation
# ---------------------------------------------------------------------------
class TestBatchValidation:

    def test_empty_batch(self, service, scheduler):
        result = service.admit("p1", [])
        assert (result.accepted, result.total, result.skipped, result.errors) == (0, 0, 0, [])
        scheduler.notify.assert_not_called()

    def test_oversized_batch_rejected(self, service, db_session, scheduler):
        events = [_event(path=f"/{i}") for i in range(MAX_BATCH + 1)]
        with pytest.raises(IngestValidationError, match="maximum batch size of 500"):
            service.admit("p1", events)
        assert _count(db_session) == 0
        scheduler.notify.assert_not_called()

    def test_max_batch_accepted(self, service):
        events = [_event(path=f"/{i}") for i in range(MAX_BATCH)]
        assert service.admit("p1", events).accepted == MAX_BATCH

    def test_bad_timestamp_rejects_whole_batch(self, service, db_session, scheduler):
        events = [_event(), _event(ts="garbage", path="/x"), _event(path="/y")]
        with pytest.raises(IngestValidationError, match="index 1"):
            service.admit("p1", events)
        assert _count(db_session) == 0
        scheduler.notify.assert_not_called()

    @pytest.mark.parametrize("bad", [
        {"path": "/no-timestamp"},
        {"timestamp": 1735722000000, "path": "/epoch-millis"},
    ])
    def test_malformed_event_rejects_whole_batch(self, service, db_session, scheduler, bad):
        with pytest.raises(IngestValidationError, match="Invalid event at index 1"):
            service.admit("p1", [_event(), bad])
        assert _count(db_session) == 0
        scheduler.notify.assert_not_called()

    def test_validation_error_is_value_error(self):
        assert issubclass(IngestValidationError, ValueError)


# ---------------------------------------------------------------------------
# Idempotency
# ---------------------------------------------------------------------------
class TestIdempotency:

    def test_resubmission_skipped(self, service, db_session):
        events = [_event(session_id="s1"), _event(ts="2025-01-01T10:05:00Z", session_id="s1")]
        first = service.admit("p1", events)
        second = service.admit("p1", events)

        assert (first.accepted, first.skipped, first.total) == (2, 0, 2)
        assert (second.accepted, second.skipped, second.total) == (0, 2, 2)
        assert _count(db_session) == 2

    def test_duplicates_within_one_batch(self, service, db_session):
        result = service.admit("p1", [_event(session_id="s1"), _event(session_id="s1")])
        assert (result.accepted, result.skipped) == (1, 1)
        assert _count(db_session) == 1

    def test_caller_key_wins(self, service):
        result = service.admit("p1", [
            _event(path="/a", idempotency_key="k1"),
            _event(path="/b", idempotency_key="k1"),
        ])
        assert (result.accepted, result.skipped) == (1, 1)

    def test_keys_scoped_per_project(self, service, db_session):
        service.admit("p1", [_event(session_id="s1")])
        result = service.admit("p2", [_event(session_id="s1")])
        assert result.accepted == 1
        assert _count(db_session, "p2") == 1

    def test_accepted_plus_skipped_is_total(self, service):
        service.admit("p1", [_event(path="/a")])
        result = service.admit("p1", [_event(path="/a"), _event(path="/b"), _event(path="/c")])
        assert result.accepted + result.skipped == result.total == 3
        assert result.accepted == 2


# ---------------------------------------------------------------------------
# Stored shape
# ---------------------------------------------------------------------------
class TestStoredEvent:

    def test_identifiers_hashed(self, service, db_session):
        service.admit("p1", [_event(session_id="s1", user_id="u1", anon_id="a1")])
        row = db_session.scalars(select(ProjectEvent)).one()
        assert row.session_hash == hash_secret("s1")
        assert row.user_hash == hash_secret("u1")
        assert row.anon_hash == hash_secret("a1")
        assert "s1" not in (row.session_hash, row.user_hash, row.anon_hash)

    def test_enrichment_and_metadata_passed_through(self, service, db_session):
        service.admit("p1", [_event(country="DE", city="Berlin", device="mobile", metadata={"k": [1, 2]})])
        row = db_session.scalars(select(ProjectEvent)).one()
        assert (row.country, row.city, row.device) == ("DE", "Berlin", "mobile")
        assert row.event_metadata == {"k": [1, 2]}

    def test_unknown_fields_ignored(self, service):
        assert service.admit("p1", [_event(screen="1920x1080")]).accepted == 1


# ---------------------------------------------------------------------------
# Funnel attribution
# ---------------------------------------------------------------------------
class TestFunnelAttribution:

    def test_valid_attribution_kept(self, service, db_session, funnel):
        result = service.admit("p1", [_event(funnel_id=funnel.id, step="land")])
        assert result.errors == []
        row = db_session.scalars(select(ProjectEvent)).one()
        assert (row.funnel_id, row.step_key) == (funnel.id, "land")

    def test_unknown_funnel_dropped(self, service, db_session):
        result = service.admit("p1", [_event(funnel_id="missing", step="land")])
        assert result.accepted == 1
        assert result.errors[0].index == 0
        row = db_session.scalars(select(ProjectEvent)).one()
        assert (row.funnel_id, row.step_key) == (None, None)

    def test_other_projects_funnel_dropped(self, service, db_session, funnel):
        result = service.admit("p2", [_event(funnel_id=funnel.id, step="land")])
        assert result.accepted == 1
        assert len(result.errors) == 1
        row = db_session.scalars(select(ProjectEvent)).one()
        assert row.funnel_id is None

    def test_unknown_step_dropped_funnel_kept(self, service, db_session, funnel):
        result = service.admit("p1", [_event(path="/ok", funnel_id=funnel.id, step="nope")])
        assert "nope" in result.errors[0].reason
        row = db_session.scalars(select(ProjectEvent)).one()
        assert (row.funnel_id, row.step_key) == (funnel.id, None)


# ---------------------------------------------------------------------------
# Scheduler notification
# ---------------------------------------------------------------------------
class TestNotify:

    def test_notified_with_distinct_sorted_dates(self, service, scheduler):
        service.admit("p1", [
            _event(ts="2025-01-02T08:00:00Z", path="/a"),
            _event(ts="2025-01-01T08:00:00Z", path="/b"),
            _event(ts="2025-01-02T09:00:00Z", path="/c"),
        ])
        scheduler.notify.assert_called_once_with("p1", [date(2025, 1, 1), date(2025, 1, 2)])

    def test_only_accepted_dates(self, service, scheduler):
        service.admit("p1", [_event(ts="2025-01-01T08:00:00Z", path="/a")])
        scheduler.reset_mock()

        service.admit("p1", [
            _event(ts="2025-01-01T08:00:00Z", path="/a"),
            _event(ts="2025-01-05T08:00:00Z", path="/b"),
        ])
        scheduler.notify.assert_called_once_with("p1", [date(2025, 1, 5)])

    def test_all_duplicates_no_notify(self, service, scheduler):
        service.admit("p1", [_event()])
        scheduler.reset_mock()
        service.admit("p1", [_event()])
        scheduler.notify.assert_not_called()

    def test_date_is_utc_calendar_day(self, service, scheduler):
        service.admit("p1", [_event(ts="2025-01-02T01:00:00+03:00")])
        scheduler.notify.assert_called_once_with("p1", [date(2025, 1, 1)])

    def test_storage_error_propagates_without_notify(self, service, db_session, scheduler):
        boom = OperationalError("INSERT", {}, Exception("disk full"))
        with patch("beacon.services.event_service._insert_for", side_effect=boom):
            with pytest.raises(SQLAlchemyError):
                service.admit("p1", [_event()])
        scheduler.notify.assert_not_called()
        assert _count(db_session) == 0


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------
class TestListEvents:

    @pytest.fixture(autouse=True)
    def _seed(self, service):
        service.admit("p1", [
            _event(ts=f"2025-01-0{day}T12:00:00Z", path=f"/{day}", metadata={"n": day})
            for day in range(1, 6)
        ])

    def test_newest_first(self, service):
        rows = service.list_events("p1")
        assert [r.path for r in rows] == ["/5", "/4", "/3", "/2", "/1"]
        assert rows[0].metadata == {"n": 5}
        assert rows[0].occurred_at.tzinfo is not None

    def test_pagination(self, service):
        rows = service.list_events("p1", limit=2, offset=2)
        assert [r.path for r in rows] == ["/3", "/2"]

    def test_range_day_end_inclusive(self, service):
        rows = service.list_events("p1", start="2025-01-02", end="2025-01-03")
        assert [r.path for r in rows] == ["/3", "/2"]

    def test_other_project_isolated(self, service):
        assert service.list_events("p2") == []

    def test_to_dict_renders_utc(self, service):
        data = service.list_events("p1", limit=1)[0].to_dict()
        assert data["occurred_at"] == "2025-01-05T12:00:00Z"
