"""create messaging tables

Revision ID: 202610180002
Revises: 202610180001
Create Date: 2026-10-18 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180002"
down_revision: str | None = "202610180001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "messaging_template",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("slug", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("subject", sa.String(length=255), nullable=True),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("channels", sa.JSON(), nullable=False),
        sa.Column("trigger_stage", sa.String(length=64), nullable=True),
        sa.Column("trigger_event", sa.String(length=64), nullable=True),
        sa.Column("delay_rule", sa.String(length=32), nullable=False, server_default="immediate"),
        sa.Column("delay_minutes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("slug", name="uq_messaging_template_slug"),
    )
    op.create_index("ix_messaging_template_trigger_stage", "messaging_template", ["trigger_stage"], unique=False)
    op.create_index("ix_messaging_template_trigger_event", "messaging_template", ["trigger_event"], unique=False)

    op.create_table(
        "messaging_log",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("opportunity_id", sa.Uuid(), nullable=True),
        sa.Column("template_id", sa.Uuid(), nullable=True),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="queued"),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("claim_token", sa.String(length=64), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("external_id", sa.String(length=255), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("opened_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("clicked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["lead_id"], ["pipeline_lead.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["opportunity_id"], ["pipeline_opportunity.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["template_id"], ["messaging_template.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_messaging_log_status_scheduled", "messaging_log", ["status", "scheduled_for"], unique=False)
    op.create_index("ix_messaging_log_lead", "messaging_log", ["lead_id"], unique=False)
    op.create_index("ix_messaging_log_claim_token", "messaging_log", ["claim_token"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_messaging_log_claim_token", table_name="messaging_log")
    op.drop_index("ix_messaging_log_lead", table_name="messaging_log")
    op.drop_index("ix_messaging_log_status_scheduled", table_name="messaging_log")
    op.drop_table("messaging_log")
    op.drop_index("ix_messaging_template_trigger_event", table_name="messaging_template")
    op.drop_index("ix_messaging_template_trigger_stage", table_name="messaging_template")
    op.drop_table("messaging_template")
