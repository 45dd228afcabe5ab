"""
beacon.services.funnel_service — Funnel Definitions & Conversion Stats
=======================================================================

CRUD for a project's funnels plus the store side of funnel statistics.
Step ordering and the conversion math live in :mod:`beacon.engine.funnel`.

Every lookup is scoped by ``project_id``; a funnel id belonging to another
project behaves exactly like a missing one.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime

from sqlalchemy import Engine, distinct, func, select
from sqlalchemy.orm import Session, selectinload

from beacon.database.engine import get_session
from beacon.database.models import Funnel, FunnelStep, ProjectEvent
from beacon.engine.funnel import (
    FunnelInput,
    FunnelUpdate,
    NormalizedStep,
    compute_funnel_stats,
    normalize_steps,
)
from beacon.engine.identity import visitor_key_column
from beacon.engine.ranges import DateLike, instant_filters
from beacon.engine.records import FunnelDefinition, FunnelStats, FunnelStepDefinition, ensure_utc

logger = logging.getLogger(__name__)


def _to_definition(funnel: Funnel) -> FunnelDefinition:
    return FunnelDefinition(
        id=funnel.id,
        project_id=funnel.project_id,
        name=funnel.name,
        description=funnel.description,
        is_active=funnel.is_active,
        created_at=ensure_utc(funnel.created_at) if funnel.created_at else None,
        updated_at=ensure_utc(funnel.updated_at) if funnel.updated_at else None,
        steps=[
            FunnelStepDefinition(
                id=s.id,
                key=s.step_key,
                name=s.name,
                order=s.step_order,
                page_pattern=s.page_pattern,
            )
            for s in sorted(funnel.steps, key=lambda s: s.step_order)
        ],
    )


def _build_steps(steps: list[NormalizedStep]) -> list[FunnelStep]:
    return [
        FunnelStep(
            id=str(uuid.uuid4()),
            step_order=step.order,
            step_key=step.key,
            name=step.name,
            page_pattern=step.page_pattern,
        )
        for step in steps
    ]


class FunnelService:
    """Funnel CRUD and stats for one store."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @staticmethod
    def _load(session: Session, project_id: str, funnel_id: str) -> Funnel | None:
        return session.scalar(
            select(Funnel)
            .options(selectinload(Funnel.steps))
            .where(Funnel.id == funnel_id, Funnel.project_id == project_id)
        )

    # -------------------------------------------------------------------
    # CRUD
    # -------------------------------------------------------------------
    def list_funnels(self, project_id: str) -> list[FunnelDefinition]:
        with get_session(self.engine) as session:
            funnels = session.scalars(
                select(Funnel)
                .options(selectinload(Funnel.steps))
                .where(Funnel.project_id == project_id)
                .order_by(Funnel.created_at, Funnel.id)
            ).all()
            return [_to_definition(f) for f in funnels]

    def get_funnel(self, project_id: str, funnel_id: str) -> FunnelDefinition | None:
        with get_session(self.engine) as session:
            funnel = self._load(session, project_id, funnel_id)
            return _to_definition(funnel) if funnel else None

    def create_funnel(self, project_id: str, data: FunnelInput) -> FunnelDefinition:
        """Create a funnel with its steps in one transaction.

        Raises
        ------
        ValueError
            No steps, or two steps share a key.
        """
        if not data.steps:
            raise ValueError("A funnel requires at least one step")
        ordered = normalize_steps(data.steps)

        now = datetime.now(UTC)
        with get_session(self.engine) as session:
            funnel = Funnel(
                id=str(uuid.uuid4()),
                project_id=project_id,
                name=data.name,
                description=data.description,
                is_active=data.is_active,
                created_at=now,
                updated_at=now,
            )
            funnel.steps = _build_steps(ordered)
            session.add(funnel)
            session.flush()
            result = _to_definition(funnel)

        logger.info("Funnel created: project=%s id=%s steps=%d", project_id, result.id, len(ordered))
        return result

    def update_funnel(
        self, project_id: str, funnel_id: str, data: FunnelUpdate,
    ) -> FunnelDefinition | None:
        """Patch the funnel's fields; a supplied step list replaces the old one."""
        ordered = normalize_steps(data.steps) if data.steps is not None else None

        with get_session(self.engine) as session:
            funnel = self._load(session, project_id, funnel_id)
            if funnel is None:
                return None

            changed = False
            if data.name is not None:
                funnel.name = data.name
                changed = True
            if data.description is not None:
                funnel.description = data.description
                changed = True
            if data.is_active is not None:
                funnel.is_active = data.is_active
                changed = True

            if ordered is not None:
                funnel.steps.clear()
                # Old rows must be gone before new ones reuse their keys.
                session.flush()
                funnel.steps.extend(_build_steps(ordered))
                changed = True

            if changed:
                funnel.updated_at = datetime.now(UTC)
            session.flush()
            return _to_definition(funnel)

    def delete_funnel(self, project_id: str, funnel_id: str) -> bool:
        with get_session(self.engine) as session:
            funnel = self._load(session, project_id, funnel_id)
            if funnel is None:
                return False
            session.delete(funnel)
        logger.info("Funnel deleted: project=%s id=%s", project_id, funnel_id)
        return True

    # -------------------------------------------------------------------
    # Stats
    # -------------------------------------------------------------------
    def get_funnel_stats(
        self,
        project_id: str,
        funnel_id: str,
        start: DateLike = None,
        end: DateLike = None,
    ) -> FunnelStats | None:
        """Step visits / conversions / drop-off over the range.

        A step's visits are the distinct visitor keys among events
        attributed to this funnel and step.
        """
        with get_session(self.engine) as session:
            funnel = self._load(session, project_id, funnel_id)
            if funnel is None:
                return None

            steps = [
                NormalizedStep(
                    key=s.step_key, name=s.name, order=s.step_order, page_pattern=s.page_pattern,
                )
                for s in sorted(funnel.steps, key=lambda s: s.step_order)
            ]
            if not steps:
                return compute_funnel_stats(funnel_id, steps, {})

            rows = session.execute(
                select(
                    ProjectEvent.step_key,
                    func.count(distinct(visitor_key_column())).label("visitors"),
                )
                .where(
                    ProjectEvent.project_id == project_id,
                    ProjectEvent.funnel_id == funnel_id,
                    ProjectEvent.step_key.is_not(None),
                    *instant_filters(ProjectEvent.occurred_at, start, end),
                )
                .group_by(ProjectEvent.step_key)
            ).all()

        visits_by_step = {r.step_key: int(r.visitors or 0) for r in rows}
        return compute_funnel_stats(funnel_id, steps, visits_by_step)
