"""create_effectiveness_tables

Clients, their competitors, effectiveness runs and per-criterion scores.

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-17 10:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "a1b2c3d4e5f6"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "clients",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("website_url", sa.String(2048), nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
    )

    op.create_table(
        "competitors",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "client_id",
            sa.Uuid(),
            sa.ForeignKey("clients.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("domain", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
    )
    op.create_index("ix_competitors_client_id", "competitors", ["client_id"])

    op.create_table(
        "effectiveness_runs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "client_id",
            sa.Uuid(),
            sa.ForeignKey("clients.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "competitor_id",
            sa.Uuid(),
            sa.ForeignKey("competitors.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("url", sa.String(2048), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("progress_detail", sa.Text(), nullable=True),
        sa.Column("overall_score", sa.Numeric(4, 2), nullable=True),
        sa.Column("score_evidence", postgresql.JSONB(), nullable=True),
        sa.Column("screenshot_url", sa.String(2048), nullable=True),
        sa.Column("screenshot_error", sa.Text(), nullable=True),
        sa.Column("full_page_screenshot_url", sa.String(2048), nullable=True),
        sa.Column("full_page_screenshot_error", sa.Text(), nullable=True),
        sa.Column("error_details", postgresql.JSONB(), nullable=True),
        sa.Column("ai_insights", postgresql.JSONB(), nullable=True),
        sa.Column("tier1_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tier2_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tier3_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
    )
    op.create_index("ix_effectiveness_runs_client_id", "effectiveness_runs", ["client_id"])
    op.create_index("ix_effectiveness_runs_competitor_id", "effectiveness_runs", ["competitor_id"])
    op.create_index("ix_effectiveness_runs_status", "effectiveness_runs", ["status"])
    op.create_index("ix_effectiveness_runs_created_at", "effectiveness_runs", ["created_at"])

    op.create_table(
        "criterion_scores",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "run_id",
            sa.Uuid(),
            sa.ForeignKey("effectiveness_runs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("criterion", sa.String(32), nullable=False),
        sa.Column("tier", sa.Integer(), nullable=False),
        sa.Column("score", sa.Numeric(4, 2), nullable=False),
        sa.Column("evidence", postgresql.JSONB(), nullable=False),
        sa.Column("passes", postgresql.JSONB(), nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.UniqueConstraint("run_id", "criterion", name="uq_criterion_scores_run"),
    )
    op.create_index("ix_criterion_scores_run_id", "criterion_scores", ["run_id"])


def downgrade() -> None:
    op.drop_index("ix_criterion_scores_run_id", table_name="criterion_scores")
    op.drop_table("criterion_scores")
    op.drop_index("ix_effectiveness_runs_created_at", table_name="effectiveness_runs")
    op.drop_index("ix_effectiveness_runs_status", table_name="effectiveness_runs")
    op.drop_index("ix_effectiveness_runs_competitor_id", table_name="effectiveness_runs")
    op.drop_index("ix_effectiveness_runs_client_id", table_name="effectiveness_runs")
    op.drop_table("effectiveness_runs")
    op.drop_index("ix_competitors_client_id", table_name="competitors")
    op.drop_table("competitors")
    op.drop_table("clients")
