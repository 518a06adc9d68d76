from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")
# Credits are fractional (e.g. 0.5 per feature) and kept at fixed precision.
CreditAmount = Numeric(18, 6)


class Base(DeclarativeBase):
    pass


class Plan(Base):
    __tablename__ = "plans"

    # Store plan catalog entries; features maps metric keys to numeric limits.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    features: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class UserPlanAssignment(Base):
    __tablename__ = "user_plans"

    # One active plan per user; the primary key enforces it.
    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    plan_id: Mapped[str] = mapped_column(String, ForeignKey("plans.id"), nullable=False)
    org_id: Mapped[str | None] = mapped_column(String, nullable=True)
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class LimitOverride(Base):
    __tablename__ = "limit_overrides"
    __table_args__ = (
        Index("ix_limit_overrides_scope_metric", "scope_type", "scope_id", "metric"),
        Index("ix_limit_overrides_status_created", "status", "created_at"),
    )

    # Manual exceptions that replace a plan limit for one scope + metric.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    scope_type: Mapped[str] = mapped_column(String)
    scope_id: Mapped[str] = mapped_column(String)
    metric: Mapped[str] = mapped_column(String)
    limit_value: Mapped[int] = mapped_column(Integer)
    plan_id: Mapped[str | None] = mapped_column(String, ForeignKey("plans.id"), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    # pending | approved | rejected
    status: Mapped[str] = mapped_column(String)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    resolution_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class UsageCounter(Base):
    __tablename__ = "usage_counters"

    # Period-keyed counters; a new period_key starts a fresh row at zero.
    scope_type: Mapped[str] = mapped_column(String, primary_key=True)
    scope_id: Mapped[str] = mapped_column(String, primary_key=True)
    metric: Mapped[str] = mapped_column(String, primary_key=True)
    period: Mapped[str] = mapped_column(String, primary_key=True)
    period_key: Mapped[str] = mapped_column(String, primary_key=True)
    count: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class LimitEvent(Base):
    __tablename__ = "limit_events"
    __table_args__ = (
        Index("ix_limit_events_scope", "scope_type", "scope_id", "metric"),
    )

    # Immutable audit rows for warn/block decisions.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    scope_type: Mapped[str] = mapped_column(String)
    scope_id: Mapped[str] = mapped_column(String)
    plan_id: Mapped[str | None] = mapped_column(String, nullable=True)
    metric: Mapped[str] = mapped_column(String, index=True)
    # warn | block
    event: Mapped[str] = mapped_column(String)
    value: Mapped[int] = mapped_column(Integer)
    limit_value: Mapped[int] = mapped_column("limit", Integer)
    action: Mapped[str | None] = mapped_column(String, nullable=True)
    meta: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )


class CreditBalance(Base):
    __tablename__ = "credit_balances"

    # One row per payer; available_credits is the authoritative balance.
    payer_type: Mapped[str] = mapped_column(String, primary_key=True)
    payer_id: Mapped[str] = mapped_column(String, primary_key=True)
    available_credits: Mapped[Decimal] = mapped_column(CreditAmount, default=Decimal("0"), nullable=False)
    on_hold_credits: Mapped[Decimal] = mapped_column(CreditAmount, default=Decimal("0"), nullable=False)
    auto_top_up_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    auto_top_up_credits: Mapped[Decimal] = mapped_column(CreditAmount, default=Decimal("0"), nullable=False)
    auto_top_up_threshold: Mapped[Decimal] = mapped_column(CreditAmount, default=Decimal("0"), nullable=False)
    auto_top_up_payment_method_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class CreditLedgerEntry(Base):
    __tablename__ = "credit_ledger_entries"
    __table_args__ = (
        Index("ix_credit_ledger_payer_created", "payer_type", "payer_id", "created_at"),
    )

    # Append-only record of every balance mutation.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    payer_type: Mapped[str] = mapped_column(String)
    payer_id: Mapped[str] = mapped_column(String)
    # purchase | usage | adjustment (debit, refund and top_up are accepted too)
    entry_type: Mapped[str] = mapped_column(String)
    delta: Mapped[Decimal] = mapped_column(CreditAmount)
    balance_after: Mapped[Decimal] = mapped_column(CreditAmount)
    reference_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    source: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, default=dict)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class CreditPurchase(Base):
    __tablename__ = "credit_purchases"
    __table_args__ = (
        Index("ix_credit_purchases_payer_status", "payer_type", "payer_id", "status"),
        Index("ix_credit_purchases_provider_ref", "provider", "provider_reference"),
    )

    # Top-up attempts; completion credits the balance exactly once.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    payer_type: Mapped[str] = mapped_column(String)
    payer_id: Mapped[str] = mapped_column(String)
    provider: Mapped[str] = mapped_column(String)
    provider_reference: Mapped[str | None] = mapped_column(String, nullable=True)
    # pending | completed | failed | canceled
    status: Mapped[str] = mapped_column(String, default="pending")
    credits: Mapped[Decimal] = mapped_column(CreditAmount)
    amount_usd: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    initiated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, default=dict)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AuditEvent(Base):
    __tablename__ = "audit_events"

    # Use a monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # Capture the actor identity for audit trails across admin and system callers.
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
