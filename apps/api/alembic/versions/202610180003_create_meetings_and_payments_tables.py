"""create meetings and payments tables

Revision ID: 202610180003
Revises: 202610180002
Create Date: 2026-10-18 00:03:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180003"
down_revision: str | None = "202610180002"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "meetings_booking",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("opportunity_id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.Uuid(), nullable=True),
        sa.Column("booking_type", sa.String(length=16), nullable=False),
        sa.Column("location_type", sa.String(length=16), nullable=False, server_default="video"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("outcome", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("tracking_status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("tracking_claim_token", sa.String(length=64), nullable=True),
        sa.Column("tracked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("calendar_event_id", sa.String(length=255), nullable=True),
        sa.Column("meet_link", sa.String(length=512), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("suggestion_state", sa.String(length=16), nullable=False, server_default="none"),
        sa.Column("suggested_stage", sa.String(length=64), nullable=True),
        sa.Column("suggested_from_stage", sa.String(length=64), nullable=True),
        sa.Column("suggestion_confidence", sa.Integer(), nullable=True),
        sa.Column("suggestion_reasoning", sa.Text(), nullable=True),
        sa.Column("suggestion_payload", sa.JSON(), nullable=True),
        sa.Column("suggested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["opportunity_id"], ["pipeline_opportunity.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["lead_id"], ["pipeline_lead.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["owner_id"], ["pipeline_sales_user.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_meetings_booking_tracking",
        "meetings_booking",
        ["tracking_status", "outcome", "scheduled_at"],
        unique=False,
    )
    op.create_index("ix_meetings_booking_opportunity", "meetings_booking", ["opportunity_id"], unique=False)

    op.create_table(
        "meetings_post_call_action",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("booking_id", sa.Uuid(), nullable=True),
        sa.Column("opportunity_id", sa.Uuid(), nullable=False),
        sa.Column("action_type", sa.String(length=32), nullable=False),
        sa.Column("suggested_stage", sa.String(length=64), nullable=True),
        sa.Column("actual_stage", sa.String(length=64), nullable=True),
        sa.Column("confidence", sa.Integer(), nullable=True),
        sa.Column("reasoning", sa.Text(), nullable=True),
        sa.Column("actor_id", sa.String(length=128), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["booking_id"], ["meetings_booking.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["opportunity_id"], ["pipeline_opportunity.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_meetings_post_call_action_booking", "meetings_post_call_action", ["booking_id"])
    op.create_index("ix_meetings_post_call_action_opportunity", "meetings_post_call_action", ["opportunity_id"])

    op.create_table(
        "payments_invoice",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("opportunity_id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("deposit_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="gbp"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("checkout_session_id", sa.String(length=255), nullable=True),
        sa.Column("checkout_url", sa.String(length=1024), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["opportunity_id"], ["pipeline_opportunity.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["lead_id"], ["pipeline_lead.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_payments_invoice_opportunity", "payments_invoice", ["opportunity_id", "status"])

    op.create_table(
        "payments_payment",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("invoice_id", sa.Uuid(), nullable=False),
        sa.Column("opportunity_id", sa.Uuid(), nullable=False),
        sa.Column("external_id", sa.String(length=255), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False),
        sa.Column("payment_method", sa.String(length=32), nullable=False, server_default="stripe"),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["invoice_id"], ["payments_invoice.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["opportunity_id"], ["pipeline_opportunity.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("external_id", name="uq_payments_payment_external_id"),
    )
    op.create_index("ix_payments_payment_invoice", "payments_payment", ["invoice_id"])


def downgrade() -> None:
    op.drop_index("ix_payments_payment_invoice", table_name="payments_payment")
    op.drop_table("payments_payment")
    op.drop_index("ix_payments_invoice_opportunity", table_name="payments_invoice")
    op.drop_table("payments_invoice")
    op.drop_index("ix_meetings_post_call_action_opportunity", table_name="meetings_post_call_action")
    op.drop_index("ix_meetings_post_call_action_booking", table_name="meetings_post_call_action")
    op.drop_table("meetings_post_call_action")
    op.drop_index("ix_meetings_booking_opportunity", table_name="meetings_booking")
    op.drop_index("ix_meetings_booking_tracking", table_name="meetings_booking")
    op.drop_table("meetings_booking")
