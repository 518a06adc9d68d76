"""limits and credits

Revision ID: 0001_limits_and_credits
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_limits_and_credits"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "plans",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("features", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "user_plans",
        sa.Column("user_id", sa.String(), primary_key=True),
        sa.Column("plan_id", sa.String(), sa.ForeignKey("plans.id"), nullable=False),
        sa.Column("org_id", sa.String(), nullable=True),
        sa.Column("starts_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "limit_overrides",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("scope_type", sa.String(), nullable=False),
        sa.Column("scope_id", sa.String(), nullable=False),
        sa.Column("metric", sa.String(), nullable=False),
        sa.Column("limit_value", sa.Integer(), nullable=False),
        sa.Column("plan_id", sa.String(), sa.ForeignKey("plans.id"), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(), nullable=True),
        sa.Column("resolution_note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_limit_overrides_scope_metric", "limit_overrides", ["scope_type", "scope_id", "metric"])
    op.create_index("ix_limit_overrides_status_created", "limit_overrides", ["status", "created_at"])

    # Composite key doubles as the ON CONFLICT target for atomic increments.
    op.create_table(
        "usage_counters",
        sa.Column("scope_type", sa.String(), nullable=False),
        sa.Column("scope_id", sa.String(), nullable=False),
        sa.Column("metric", sa.String(), nullable=False),
        sa.Column("period", sa.String(), nullable=False),
        sa.Column("period_key", sa.String(), nullable=False),
        sa.Column("count", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("scope_type", "scope_id", "metric", "period", "period_key"),
    )

    op.create_table(
        "limit_events",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("scope_type", sa.String(), nullable=False),
        sa.Column("scope_id", sa.String(), nullable=False),
        sa.Column("plan_id", sa.String(), nullable=True),
        sa.Column("metric", sa.String(), nullable=False),
        sa.Column("event", sa.String(), nullable=False),
        sa.Column("value", sa.Integer(), nullable=False),
        sa.Column("limit", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(), nullable=True),
        sa.Column("meta", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default="{}"),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_limit_events_scope", "limit_events", ["scope_type", "scope_id", "metric"])
    op.create_index("ix_limit_events_metric", "limit_events", ["metric"])
    op.create_index("ix_limit_events_created_at", "limit_events", ["created_at"])

    op.create_table(
        "credit_balances",
        sa.Column("payer_type", sa.String(), nullable=False),
        sa.Column("payer_id", sa.String(), nullable=False),
        sa.Column("available_credits", sa.Numeric(18, 6), nullable=False, server_default="0"),
        sa.Column("on_hold_credits", sa.Numeric(18, 6), nullable=False, server_default="0"),
        sa.Column("auto_top_up_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("auto_top_up_credits", sa.Numeric(18, 6), nullable=False, server_default="0"),
        sa.Column("auto_top_up_threshold", sa.Numeric(18, 6), nullable=False, server_default="0"),
        sa.Column("auto_top_up_payment_method_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("payer_type", "payer_id"),
    )

    op.create_table(
        "credit_ledger_entries",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("payer_type", sa.String(), nullable=False),
        sa.Column("payer_id", sa.String(), nullable=False),
        sa.Column("entry_type", sa.String(), nullable=False),
        sa.Column("delta", sa.Numeric(18, 6), nullable=False),
        sa.Column("balance_after", sa.Numeric(18, 6), nullable=False),
        sa.Column("reference_id", sa.String(), nullable=True),
        sa.Column("source", sa.String(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default="{}"),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_credit_ledger_payer_created",
        "credit_ledger_entries",
        ["payer_type", "payer_id", "created_at"],
    )
    op.create_index("ix_credit_ledger_entries_reference_id", "credit_ledger_entries", ["reference_id"])

    op.create_table(
        "credit_purchases",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("payer_type", sa.String(), nullable=False),
        sa.Column("payer_id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("provider_reference", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("credits", sa.Numeric(18, 6), nullable=False),
        sa.Column("amount_usd", sa.Numeric(12, 2), nullable=False),
        sa.Column("initiated_by", sa.String(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default="{}"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_credit_purchases_payer_status",
        "credit_purchases",
        ["payer_type", "payer_id", "status"],
    )
    op.create_index(
        "ix_credit_purchases_provider_ref",
        "credit_purchases",
        ["provider", "provider_reference"],
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"])
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
    op.create_index("ix_audit_events_request_id", "audit_events", ["request_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_events_request_id", table_name="audit_events")
    op.drop_index("ix_audit_events_event_type", table_name="audit_events")
    op.drop_index("ix_audit_events_occurred_at", table_name="audit_events")
    op.drop_table("audit_events")

    op.drop_index("ix_credit_purchases_provider_ref", table_name="credit_purchases")
    op.drop_index("ix_credit_purchases_payer_status", table_name="credit_purchases")
    op.drop_table("credit_purchases")

    op.drop_index("ix_credit_ledger_entries_reference_id", table_name="credit_ledger_entries")
    op.drop_index("ix_credit_ledger_payer_created", table_name="credit_ledger_entries")
    op.drop_table("credit_ledger_entries")

    op.drop_table("credit_balances")

    op.drop_index("ix_limit_events_created_at", table_name="limit_events")
    op.drop_index("ix_limit_events_metric", table_name="limit_events")
    op.drop_index("ix_limit_events_scope", table_name="limit_events")
    op.drop_table("limit_events")

    op.drop_table("usage_counters")

    op.drop_index("ix_limit_overrides_status_created", table_name="limit_overrides")
    op.drop_index("ix_limit_overrides_scope_metric", table_name="limit_overrides")
    op.drop_table("limit_overrides")

    op.drop_table("user_plans")
    op.drop_table("plans")
