"""
beacon.services.event_service — Event Admission Service
========================================================

Central write path for raw events.

Responsibilities:
1. Reject oversized batches and unparseable timestamps (whole batch).
2. Keep funnel/step attribution only when it references a funnel and
   step owned by the project; drop it otherwise and report a notice.
3. Hash session / user / anonymous identifiers (raw values never stored).
4. Derive an idempotency key when the caller did not send one.
5. Insert the batch in one ``INSERT … ON CONFLICT DO NOTHING`` so
   resubmitted events are counted as skipped, not errors.
6. After commit, tell the aggregation scheduler which days changed.

All public methods are synchronous.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy import Engine, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from beacon.database.engine import get_session
from beacon.database.models import Funnel, FunnelStep, ProjectEvent
from beacon.engine.identity import derive_idempotency_key, hash_identifier
from beacon.engine.ranges import DateLike, instant_filters
from beacon.engine.records import EventRow, IngestionNotice, IngestionResult, ensure_utc

if TYPE_CHECKING:
    from beacon.services.aggregation_scheduler import AggregationScheduler

logger = logging.getLogger(__name__)

MAX_BATCH = 500

# Core table: the conflict-skip insert addresses columns by name (``metadata``).
events_table = ProjectEvent.__table__


class IngestValidationError(ValueError):
    """The batch is unacceptable as a whole; nothing was inserted."""


# ---------------------------------------------------------------------------
# Inbound event shape
# ---------------------------------------------------------------------------
class EventInput(BaseModel):
    """One event as submitted by a client.

    Field-level validation (URL shapes, lengths, "one identifier required")
    happens in the HTTP layer; ``timestamp`` is kept as the raw string so
    the idempotency fingerprint sees exactly what was sent.
    """
    model_config = ConfigDict(extra="ignore")

    timestamp: str
    page_url: str | None = None
    path: str | None = None
    referrer: str | None = None
    session_id: str | None = None
    anon_id: str | None = None
    user_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    funnel_id: str | None = None
    step: str | None = None
    country: str | None = None
    city: str | None = None
    device: str | None = None
    idempotency_key: str | None = None


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Naive timestamps are taken to be UTC.

    Raises
    ------
    ValueError
        If *value* is not ISO-8601.
    """
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def _insert_for(session: Session):
    """Dialect ``insert()`` that supports ``on_conflict_do_nothing``."""
    if session.get_bind().dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


# ---------------------------------------------------------------------------
# EventAdmissionService
# ---------------------------------------------------------------------------
class EventAdmissionService:
    """Idempotent batch ingestion for one project at a time."""

    def __init__(
        self,
        engine: Engine,
        scheduler: AggregationScheduler | None = None,
        max_batch_size: int = MAX_BATCH,
    ) -> None:
        self.engine = engine
        self.scheduler = scheduler
        self.max_batch_size = max_batch_size

    # -------------------------------------------------------------------
    # Funnel attribution lookups
    # -------------------------------------------------------------------
    @staticmethod
    def _valid_funnels(session: Session, project_id: str, funnel_ids: set[str]) -> set[str]:
        if not funnel_ids:
            return set()
        rows = session.scalars(
            select(Funnel.id).where(
                Funnel.project_id == project_id,
                Funnel.id.in_(funnel_ids),
            )
        ).all()
        return set(rows)

    @staticmethod
    def _valid_steps(
        session: Session, project_id: str, funnel_ids: set[str], step_keys: set[str],
    ) -> set[tuple[str, str]]:
        if not funnel_ids or not step_keys:
            return set()
        rows = session.execute(
            select(FunnelStep.funnel_id, FunnelStep.step_key)
            .join(Funnel, FunnelStep.funnel_id == Funnel.id)
            .where(
                Funnel.project_id == project_id,
                FunnelStep.funnel_id.in_(funnel_ids),
                FunnelStep.step_key.in_(step_keys),
            )
        ).all()
        return {(r.funnel_id, r.step_key) for r in rows}

    # -------------------------------------------------------------------
    # Core write path
    # -------------------------------------------------------------------
    def admit(
        self,
        project_id: str,
        events: Sequence[EventInput | Mapping[str, Any]],
    ) -> IngestionResult:
        """Insert a batch of events for *project_id*.

        Returns counts of accepted (newly stored) and skipped (duplicate)
        events; ``accepted + skipped == total``.  ``errors`` lists
        tolerated problems (dropped funnel attribution) for events that
        were still admitted.

        Raises
        ------
        IngestValidationError
            Batch too large, an event fails validation or a timestamp
            does not parse.
        sqlalchemy.exc.SQLAlchemyError
            The insert failed; nothing was committed.
        """
        if not events:
            return IngestionResult(accepted=0, total=0, skipped=0, errors=[])

        if len(events) > self.max_batch_size:
            raise IngestValidationError(
                f"Payload exceeds maximum batch size of {self.max_batch_size} events"
            )

        payloads: list[EventInput] = []
        for index, event in enumerate(events):
            if isinstance(event, EventInput):
                payloads.append(event)
                continue
            try:
                payloads.append(EventInput.model_validate(event))
            except ValidationError:
                raise IngestValidationError(f"Invalid event at index {index}") from None

        occurred: list[datetime] = []
        for index, payload in enumerate(payloads):
            try:
                occurred.append(parse_timestamp(payload.timestamp))
            except ValueError:
                raise IngestValidationError(f"Invalid timestamp at index {index}") from None

        funnel_ids = {p.funnel_id for p in payloads if p.funnel_id}
        step_keys = {p.step for p in payloads if p.funnel_id and p.step}
        now = datetime.now(UTC)
        notices: list[IngestionNotice] = []

        try:
            with get_session(self.engine) as session:
                valid_funnels = self._valid_funnels(session, project_id, funnel_ids)
                valid_steps = self._valid_steps(session, project_id, valid_funnels, step_keys)

                rows: list[dict[str, Any]] = []
                for index, (payload, occurred_at) in enumerate(zip(payloads, occurred)):
                    funnel_id = payload.funnel_id if payload.funnel_id in valid_funnels else None
                    step_key = (
                        payload.step
                        if funnel_id and payload.step and (funnel_id, payload.step) in valid_steps
                        else None
                    )
                    if payload.funnel_id and funnel_id is None:
                        notices.append(IngestionNotice(index, f"unknown funnel {payload.funnel_id!r} ignored"))
                    elif payload.step and funnel_id and step_key is None:
                        notices.append(IngestionNotice(index, f"unknown step {payload.step!r} ignored"))

                    rows.append({
                        "id": str(uuid.uuid4()),
                        "project_id": project_id,
                        "occurred_at": occurred_at,
                        "page_url": payload.page_url,
                        "path": payload.path,
                        "referrer": payload.referrer,
                        "session_hash": hash_identifier(payload.session_id),
                        "user_hash": hash_identifier(payload.user_id),
                        "anon_hash": hash_identifier(payload.anon_id),
                        "country": payload.country,
                        "city": payload.city,
                        "device": payload.device,
                        "funnel_id": funnel_id,
                        "step_key": step_key,
                        "metadata": payload.metadata,
                        "idempotency_key": payload.idempotency_key or derive_idempotency_key(
                            timestamp=payload.timestamp,
                            page_url=payload.page_url,
                            path=payload.path,
                            session_id=payload.session_id,
                            anon_id=payload.anon_id,
                            user_id=payload.user_id,
                            funnel_id=payload.funnel_id,
                            step=payload.step,
                        ),
                        "created_at": now,
                    })

                insert = _insert_for(session)
                stmt = (
                    insert(events_table)
                    .values(rows)
                    .on_conflict_do_nothing(index_elements=["project_id", "idempotency_key"])
                    .returning(events_table.c.id)
                )
                inserted_ids = set(session.scalars(stmt).all())
        except SQLAlchemyError:
            logger.exception("Failed to insert %d events for project %s", len(payloads), project_id)
            raise

        accepted = len(inserted_ids)
        skipped = len(rows) - accepted

        if skipped:
            logger.debug("Duplicate events skipped: project=%s count=%d", project_id, skipped)
        logger.info(
            "Events ingested: project=%s accepted=%d skipped=%d total=%d",
            project_id, accepted, skipped, len(rows),
        )

        if accepted and self.scheduler is not None:
            touched = sorted({
                row["occurred_at"].date() for row in rows if row["id"] in inserted_ids
            })
            self.scheduler.notify(project_id, touched)

        return IngestionResult(accepted=accepted, total=len(rows), skipped=skipped, errors=notices)

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------
    def list_events(
        self,
        project_id: str,
        *,
        start: DateLike = None,
        end: DateLike = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[EventRow]:
        """Events for *project_id*, newest first."""
        q = select(ProjectEvent).where(
            ProjectEvent.project_id == project_id,
            *instant_filters(ProjectEvent.occurred_at, start, end),
        )
        q = q.order_by(ProjectEvent.occurred_at.desc(), ProjectEvent.id).limit(limit).offset(offset)

        with get_session(self.engine) as session:
            events = session.scalars(q).all()
            return [
                EventRow(
                    id=e.id,
                    occurred_at=ensure_utc(e.occurred_at),
                    page_url=e.page_url,
                    path=e.path,
                    referrer=e.referrer,
                    funnel_id=e.funnel_id,
                    step_key=e.step_key,
                    metadata=dict(e.event_metadata or {}),
                )
                for e in events
            ]
