"""create pipeline tables

Revision ID: 202610180001
Revises:
Create Date: 2026-10-18 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "pipeline_sales_user",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="sales"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("service_regions", sa.JSON(), nullable=False),
        sa.Column("active_opportunities", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email", name="uq_pipeline_sales_user_email"),
    )

    op.create_table(
        "pipeline_lead",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("postcode", sa.String(length=16), nullable=True),
        sa.Column("project_type", sa.String(length=128), nullable=True),
        sa.Column("budget_band", sa.String(length=64), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("source", sa.String(length=64), nullable=False, server_default="webhook"),
        sa.Column("owner_id", sa.Uuid(), nullable=True),
        sa.Column("opted_out", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("opted_out_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["owner_id"], ["pipeline_sales_user.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_pipeline_lead_owner", "pipeline_lead", ["owner_id"], unique=False)

    op.create_table(
        "pipeline_opportunity",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.Uuid(), nullable=True),
        sa.Column("stage", sa.String(length=64), nullable=False),
        sa.Column("value_estimate", sa.Numeric(12, 2), nullable=True),
        sa.Column("stage_entered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("call1_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deposit_paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("onboarding_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["lead_id"], ["pipeline_lead.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["owner_id"], ["pipeline_sales_user.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("lead_id", name="uq_pipeline_opportunity_lead"),
    )
    op.create_index("ix_pipeline_opportunity_stage", "pipeline_opportunity", ["stage"], unique=False)
    op.create_index("ix_pipeline_opportunity_owner", "pipeline_opportunity", ["owner_id"], unique=False)

    op.create_table(
        "pipeline_stage_log",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("opportunity_id", sa.Uuid(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("from_stage", sa.String(length=64), nullable=True),
        sa.Column("to_stage", sa.String(length=64), nullable=False),
        sa.Column("actor_id", sa.String(length=128), nullable=True),
        sa.Column("rationale", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["opportunity_id"], ["pipeline_opportunity.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("opportunity_id", "sequence", name="uq_pipeline_stage_log_sequence"),
    )
    op.create_index("ix_pipeline_stage_log_opportunity", "pipeline_stage_log", ["opportunity_id"], unique=False)

    op.create_table(
        "pipeline_task",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("opportunity_id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.Uuid(), nullable=True),
        sa.Column("task_type", sa.String(length=64), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("due_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="open"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["opportunity_id"], ["pipeline_opportunity.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["owner_id"], ["pipeline_sales_user.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_pipeline_task_opportunity_status", "pipeline_task", ["opportunity_id", "status"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_pipeline_task_opportunity_status", table_name="pipeline_task")
    op.drop_table("pipeline_task")
    op.drop_index("ix_pipeline_stage_log_opportunity", table_name="pipeline_stage_log")
    op.drop_table("pipeline_stage_log")
    op.drop_index("ix_pipeline_opportunity_owner", table_name="pipeline_opportunity")
    op.drop_index("ix_pipeline_opportunity_stage", table_name="pipeline_opportunity")
    op.drop_table("pipeline_opportunity")
    op.drop_index("ix_pipeline_lead_owner", table_name="pipeline_lead")
    op.drop_table("pipeline_lead")
    op.drop_table("pipeline_sales_user")
