"""Voice minutes schema: tenants, limits, usage periods, transactions, alerts.

Revision ID: 001
Revises:
Create Date: 2026-10-16

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Tenants
    op.create_table(
        "tenants",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("plan", sa.String(50), nullable=False, server_default="starter"),
        sa.Column("stripe_customer_id", sa.String(255), unique=True),
        sa.Column("stripe_subscription_id", sa.String(255)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Per-tenant overage policy
    op.create_table(
        "voice_minute_limits",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, unique=True),
        sa.Column("included_minutes", sa.Integer, nullable=False, server_default="200"),
        sa.Column("overage_policy", sa.String(20), nullable=False, server_default="charge"),
        sa.Column("overage_price_minor_units", sa.Integer, nullable=False, server_default="350"),
        sa.Column("max_overage_charge_minor_units", sa.Integer, nullable=False, server_default="200000"),
        sa.Column("alert_thresholds", postgresql.JSONB, nullable=False, server_default="[70, 85, 95, 100]"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("included_minutes >= 0", name="ck_voice_limits_included_minutes"),
        sa.CheckConstraint("overage_price_minor_units >= 0", name="ck_voice_limits_overage_price"),
        sa.CheckConstraint("max_overage_charge_minor_units >= 0", name="ck_voice_limits_max_charge"),
    )
    op.create_index("ix_voice_minute_limits_tenant_id", "voice_minute_limits", ["tenant_id"])

    # Usage periods (one per tenant per calendar month)
    op.create_table(
        "voice_minute_usage",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("period_start", sa.Date, nullable=False),
        sa.Column("period_end", sa.Date, nullable=False),
        sa.Column("included_minutes", sa.Integer, nullable=False, server_default="0"),
        sa.Column("included_minutes_used", sa.Integer, nullable=False, server_default="0"),
        sa.Column("overage_minutes_used", sa.Integer, nullable=False, server_default="0"),
        sa.Column("overage_charge_minor_units", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_calls", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_blocked", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("blocked_reason", sa.String(50)),
        sa.Column("blocked_at", sa.DateTime(timezone=True)),
        sa.Column("last_alert_threshold", sa.Integer),
        sa.Column("is_billed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("billing_reference_id", sa.String(255), unique=True),
        sa.Column("billed_at", sa.DateTime(timezone=True)),
        sa.Column("paid_reference_id", sa.String(255)),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "period_start", name="uq_voice_usage_tenant_period"),
        sa.CheckConstraint("period_end > period_start", name="ck_voice_usage_valid_period"),
        sa.CheckConstraint("included_minutes_used >= 0", name="ck_voice_usage_included_used"),
        sa.CheckConstraint("overage_minutes_used >= 0", name="ck_voice_usage_overage_used"),
        sa.CheckConstraint("overage_charge_minor_units >= 0", name="ck_voice_usage_overage_charge"),
    )
    op.create_index("ix_voice_minute_usage_tenant_id", "voice_minute_usage", ["tenant_id"])
    # Billing run scans unbilled closed periods
    op.create_index(
        "ix_voice_minute_usage_unbilled",
        "voice_minute_usage",
        ["period_end"],
        postgresql_where=sa.text("is_billed = false AND overage_charge_minor_units > 0"),
    )

    # Recorded calls
    op.create_table(
        "voice_minute_transactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("usage_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("voice_minute_usage.id", ondelete="CASCADE"), nullable=False),
        sa.Column("call_id", sa.String(255)),
        sa.Column("seconds_used", sa.Integer, nullable=False),
        sa.Column("minutes_recorded", sa.Integer, nullable=False),
        sa.Column("minutes_to_included", sa.Integer, nullable=False, server_default="0"),
        sa.Column("minutes_to_overage", sa.Integer, nullable=False, server_default="0"),
        sa.Column("charge_minor_units", sa.Integer, nullable=False, server_default="0"),
        sa.Column("call_metadata", postgresql.JSONB, server_default="{}"),
        sa.Column("billing_reference_id", sa.String(255)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("usage_id", "call_id", name="uq_voice_transactions_usage_call"),
        sa.CheckConstraint("seconds_used > 0", name="ck_voice_transactions_seconds"),
        sa.CheckConstraint(
            "minutes_to_included + minutes_to_overage = minutes_recorded",
            name="ck_voice_transactions_split",
        ),
    )
    op.create_index("ix_voice_minute_transactions_tenant_id", "voice_minute_transactions", ["tenant_id"])
    op.create_index("ix_voice_minute_transactions_usage_id", "voice_minute_transactions", ["usage_id"])

    # Threshold alerts
    op.create_table(
        "voice_usage_alerts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("usage_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("voice_minute_usage.id", ondelete="CASCADE"), nullable=False),
        sa.Column("threshold", sa.Integer, nullable=False),
        sa.Column("severity", sa.String(20), nullable=False),
        sa.Column("usage_percent", sa.Float, nullable=False),
        sa.Column("minutes_used", sa.Integer, nullable=False),
        sa.Column("included_minutes", sa.Integer, nullable=False),
        sa.Column("overage_minutes", sa.Integer, nullable=False, server_default="0"),
        sa.Column("overage_charge_minor_units", sa.Integer, nullable=False, server_default="0"),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("acknowledged", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True)),
        sa.Column("acknowledged_by", sa.String(255)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_voice_usage_alerts_tenant_id", "voice_usage_alerts", ["tenant_id"])


def downgrade() -> None:
    op.drop_table("voice_usage_alerts")
    op.drop_table("voice_minute_transactions")
    op.drop_index("ix_voice_minute_usage_unbilled", table_name="voice_minute_usage")
    op.drop_table("voice_minute_usage")
    op.drop_table("voice_minute_limits")
    op.drop_table("tenants")
