"""Create project events, funnels and daily rollup tables

Revision ID: 4c2e7a91b0d3
Revises:
Create Date: 2026-10-18 09:12:41.207331

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '4c2e7a91b0d3'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create raw event, funnel and rollup tables."""

    # --- funnels ---
    op.create_table(
        "project_funnels",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("project_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_project_funnels_project", "project_funnels", ["project_id"])

    op.create_table(
        "project_funnel_steps",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "funnel_id", sa.String(36),
            sa.ForeignKey("project_funnels.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("step_order", sa.Integer, nullable=False),
        sa.Column("step_key", sa.String(64), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("page_pattern", sa.Text, nullable=True),
        sa.UniqueConstraint("funnel_id", "step_key", name="uq_funnel_step_key"),
    )

    # --- raw events ---
    op.create_table(
        "project_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("project_id", sa.String(64), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("page_url", sa.Text, nullable=True),
        sa.Column("path", sa.Text, nullable=True),
        sa.Column("referrer", sa.Text, nullable=True),
        sa.Column("session_hash", sa.String(64), nullable=True),
        sa.Column("user_hash", sa.String(64), nullable=True),
        sa.Column("anon_hash", sa.String(64), nullable=True),
        sa.Column("country", sa.String(2), nullable=True),
        sa.Column("city", sa.String(128), nullable=True),
        sa.Column("device", sa.String(64), nullable=True),
        sa.Column(
            "funnel_id", sa.String(36),
            sa.ForeignKey("project_funnels.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("step_key", sa.String(64), nullable=True),
        sa.Column("metadata", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("idempotency_key", sa.String(128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "project_id", "idempotency_key", name="uq_project_events_idempotency",
        ),
    )
    op.create_index(
        "ix_project_events_project_occurred", "project_events",
        ["project_id", "occurred_at"],
    )
    op.create_index(
        "ix_project_events_funnel", "project_events",
        ["project_id", "funnel_id", "step_key"],
    )

    # --- daily rollups ---
    op.create_table(
        "project_overview_daily",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("project_id", sa.String(64), nullable=False),
        sa.Column("event_date", sa.Date, nullable=False),
        sa.Column("visits", sa.Integer, nullable=False, server_default="0"),
        sa.Column("unique_visitors", sa.Integer, nullable=False, server_default="0"),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("project_id", "event_date", name="project_overview_daily_unique"),
    )

    op.create_table(
        "page_agg_daily",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("project_id", sa.String(64), nullable=False),
        sa.Column("event_date", sa.Date, nullable=False),
        sa.Column("page_path", sa.Text, nullable=True),
        sa.Column("page_url", sa.Text, nullable=True),
        sa.Column("visits", sa.Integer, nullable=False, server_default="0"),
        sa.Column("unique_visitors", sa.Integer, nullable=False, server_default="0"),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "project_id", "page_path", "page_url", "event_date",
            name="page_agg_daily_unique",
        ),
    )
    op.create_index(
        "page_agg_daily_project_date_idx", "page_agg_daily", ["project_id", "event_date"],
    )

    op.create_table(
        "project_visitors_daily",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("project_id", sa.String(64), nullable=False),
        sa.Column("event_date", sa.Date, nullable=False),
        sa.Column("visitor_hash", sa.String(64), nullable=False),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "project_id", "event_date", "visitor_hash",
            name="project_visitors_daily_unique",
        ),
    )
    op.create_index(
        "project_visitors_daily_project_date_idx", "project_visitors_daily",
        ["project_id", "event_date"],
    )

    op.create_table(
        "project_page_visitors_daily",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("project_id", sa.String(64), nullable=False),
        sa.Column("event_date", sa.Date, nullable=False),
        sa.Column("page_path", sa.Text, nullable=True),
        sa.Column("page_url", sa.Text, nullable=True),
        sa.Column("visitor_hash", sa.String(64), nullable=False),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "project_id", "event_date", "page_path", "page_url", "visitor_hash",
            name="project_page_visitors_daily_unique",
        ),
    )
    op.create_index(
        "project_page_visitors_daily_project_date_idx", "project_page_visitors_daily",
        ["project_id", "event_date"],
    )


def downgrade() -> None:
    """Drop everything created in upgrade()."""
    op.drop_table("project_page_visitors_daily")
    op.drop_table("project_visitors_daily")
    op.drop_table("page_agg_daily")
    op.drop_table("project_overview_daily")
    op.drop_table("project_events")
    op.drop_table("project_funnel_steps")
    op.drop_table("project_funnels")
