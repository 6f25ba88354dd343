"""create pipeline funnels, stages, lost reasons and opportunities

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "pipeline_funnel",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("order_position", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("auto_create_next", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "pipeline_funnel_stage",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("funnel_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("order_position", sa.Integer(), nullable=False),
        sa.Column("sla_hours", sa.Integer(), nullable=True),
        sa.Column("color", sa.String(length=32), nullable=False, server_default="slate"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["funnel_id"], ["pipeline_funnel.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("funnel_id", "order_position", name="uq_pipeline_funnel_stage_funnel_position"),
        sa.UniqueConstraint("funnel_id", "name", name="uq_pipeline_funnel_stage_funnel_name"),
    )
    op.create_index("ix_pipeline_funnel_stage_funnel_id", "pipeline_funnel_stage", ["funnel_id"], unique=False)

    op.create_table(
        "pipeline_lost_reason",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )

    op.create_table(
        "pipeline_opportunity",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("current_funnel_id", sa.Uuid(), nullable=False),
        sa.Column("current_stage_id", sa.Uuid(), nullable=False),
        sa.Column("stage_entered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("lost_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lost_from_stage_id", sa.Uuid(), nullable=True),
        sa.Column("lost_reason_id", sa.Uuid(), nullable=True),
        sa.Column("converted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("qualification", sa.Integer(), nullable=True),
        sa.Column("temperature", sa.String(length=16), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("proposal_value", sa.Numeric(precision=18, scale=2), nullable=True),
        sa.Column("created_by", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["current_funnel_id"], ["pipeline_funnel.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["current_stage_id"], ["pipeline_funnel_stage.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["lost_reason_id"], ["pipeline_lost_reason.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_pipeline_opportunity_funnel_status",
        "pipeline_opportunity",
        ["current_funnel_id", "status", "current_stage_id"],
        unique=False,
    )
    op.create_index("ix_pipeline_opportunity_contact_id", "pipeline_opportunity", ["contact_id"], unique=False)

    op.create_table(
        "pipeline_opportunity_history",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("opportunity_id", sa.Uuid(), nullable=False),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("from_stage_id", sa.Uuid(), nullable=True),
        sa.Column("to_stage_id", sa.Uuid(), nullable=True),
        sa.Column("changed_by", sa.Text(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["opportunity_id"], ["pipeline_opportunity.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_pipeline_opportunity_history_opportunity",
        "pipeline_opportunity_history",
        ["opportunity_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_pipeline_opportunity_history_opportunity", table_name="pipeline_opportunity_history")
    op.drop_table("pipeline_opportunity_history")
    op.drop_index("ix_pipeline_opportunity_contact_id", table_name="pipeline_opportunity")
    op.drop_index("ix_pipeline_opportunity_funnel_status", table_name="pipeline_opportunity")
    op.drop_table("pipeline_opportunity")
    op.drop_table("pipeline_lost_reason")
    op.drop_index("ix_pipeline_funnel_stage_funnel_id", table_name="pipeline_funnel_stage")
    op.drop_table("pipeline_funnel_stage")
    op.drop_table("pipeline_funnel")
