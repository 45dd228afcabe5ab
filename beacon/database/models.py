"""
beacon.database.models — SQLAlchemy 2.0 Data Models
====================================================

Tables:
- project_events              — Append-only raw events, idempotent per project
- project_funnels             — Funnel definitions owned by a project
- project_funnel_steps        — Ordered steps of a funnel
- project_overview_daily      — Rollup: visits / unique visitors per day
- page_agg_daily              — Rollup: visits / unique visitors per page per day
- project_visitors_daily      — Rollup: one row per visitor per day
- project_page_visitors_daily — Rollup: one row per visitor per page per day

Rollup tables are derived data.  They are deleted and re-inserted per
(project, day) by :mod:`beacon.services.rollup_service` and never patched.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# JSONB on PostgreSQL, plain JSON (TEXT) everywhere else.
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Beacon ORM models."""


# ---------------------------------------------------------------------------
# Funnels: definitions are read-only to the pipeline except for CRUD
# ---------------------------------------------------------------------------
class Funnel(Base):
    __tablename__ = "project_funnels"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    project_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    steps: Mapped[list[FunnelStep]] = relationship(
        back_populates="funnel",
        cascade="all, delete-orphan",
        order_by="FunnelStep.step_order",
    )

    __table_args__ = (
        Index("ix_project_funnels_project", "project_id"),
    )

    def __repr__(self) -> str:
        return f"<Funnel id={self.id} project={self.project_id!r} name={self.name!r}>"


class FunnelStep(Base):
    __tablename__ = "project_funnel_steps"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    funnel_id: Mapped[str] = mapped_column(
        ForeignKey("project_funnels.id", ondelete="CASCADE"), nullable=False
    )
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    step_key: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    page_pattern: Mapped[str | None] = mapped_column(Text, default=None)

    funnel: Mapped[Funnel] = relationship(back_populates="steps")

    __table_args__ = (
        UniqueConstraint("funnel_id", "step_key", name="uq_funnel_step_key"),
    )

    def __repr__(self) -> str:
        return f"<FunnelStep funnel={self.funnel_id} key={self.step_key!r} order={self.step_order}>"


# ---------------------------------------------------------------------------
# Raw events: immutable once written
# ---------------------------------------------------------------------------
class ProjectEvent(Base):
    """One visitor-activity event.

    Raw session / user / anonymous identifiers are never stored; only
    their SHA-256 digests are.  ``(project_id, idempotency_key)`` is unique
    so resubmitted events are skipped by ``ON CONFLICT DO NOTHING``.
    """
    __tablename__ = "project_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    project_id: Mapped[str] = mapped_column(String(64), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    page_url: Mapped[str | None] = mapped_column(Text, default=None)
    path: Mapped[str | None] = mapped_column(Text, default=None)
    referrer: Mapped[str | None] = mapped_column(Text, default=None)
    session_hash: Mapped[str | None] = mapped_column(String(64), default=None)
    user_hash: Mapped[str | None] = mapped_column(String(64), default=None)
    anon_hash: Mapped[str | None] = mapped_column(String(64), default=None)
    country: Mapped[str | None] = mapped_column(String(2), default=None)
    city: Mapped[str | None] = mapped_column(String(128), default=None)
    device: Mapped[str | None] = mapped_column(String(64), default=None)
    funnel_id: Mapped[str | None] = mapped_column(
        ForeignKey("project_funnels.id", ondelete="SET NULL"), default=None
    )
    step_key: Mapped[str | None] = mapped_column(String(64), default=None)
    # ``metadata`` is reserved on declarative classes.
    event_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )
    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("project_id", "idempotency_key", name="uq_project_events_idempotency"),
        Index("ix_project_events_project_occurred", "project_id", "occurred_at"),
        Index("ix_project_events_funnel", "project_id", "funnel_id", "step_key"),
    )

    def __repr__(self) -> str:
        return (
            f"<ProjectEvent id={self.id} project={self.project_id!r} "
            f"path={self.path!r} at={self.occurred_at}>"
        )


# ---------------------------------------------------------------------------
# Daily rollups: derived, replaced wholesale per (project, day)
# ---------------------------------------------------------------------------
class ProjectOverviewDaily(Base):
    __tablename__ = "project_overview_daily"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_date: Mapped[date] = mapped_column(Date, nullable=False)
    visits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unique_visitors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    first_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("project_id", "event_date", name="project_overview_daily_unique"),
    )


class PageAggDaily(Base):
    __tablename__ = "page_agg_daily"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_date: Mapped[date] = mapped_column(Date, nullable=False)
    page_path: Mapped[str | None] = mapped_column(Text)
    page_url: Mapped[str | None] = mapped_column(Text)
    visits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unique_visitors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    first_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint(
            "project_id", "page_path", "page_url", "event_date",
            name="page_agg_daily_unique",
        ),
        Index("page_agg_daily_project_date_idx", "project_id", "event_date"),
    )


class ProjectVisitorsDaily(Base):
    __tablename__ = "project_visitors_daily"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_date: Mapped[date] = mapped_column(Date, nullable=False)
    visitor_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    first_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint(
            "project_id", "event_date", "visitor_hash",
            name="project_visitors_daily_unique",
        ),
        Index("project_visitors_daily_project_date_idx", "project_id", "event_date"),
    )


class ProjectPageVisitorsDaily(Base):
    __tablename__ = "project_page_visitors_daily"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_date: Mapped[date] = mapped_column(Date, nullable=False)
    page_path: Mapped[str | None] = mapped_column(Text)
    page_url: Mapped[str | None] = mapped_column(Text)
    visitor_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    first_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint(
            "project_id", "event_date", "page_path", "page_url", "visitor_hash",
            name="project_page_visitors_daily_unique",
        ),
        Index("project_page_visitors_daily_project_date_idx", "project_id", "event_date"),
    )


ROLLUP_MODELS: tuple[type[Base], ...] = (
    ProjectOverviewDaily,
    PageAggDaily,
    ProjectVisitorsDaily,
    ProjectPageVisitorsDaily,
)
