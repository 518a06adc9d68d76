from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from limitledger.core.config import get_settings
from limitledger.domain.limits import LimitCreditResult, LimitPayerResolution, LimitScope
from limitledger.domain.models import LimitEvent
from limitledger.persistence.db import transaction
from limitledger.persistence.repos import limit_events as limit_events_repo
from limitledger.services.analytics import track_event
from limitledger.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

ANALYTICS_EVENT_WARNED = "limit.warned"
ANALYTICS_EVENT_BLOCKED = "limit.blocked"


@dataclass(frozen=True)
class LimitEventSummary:
    # Per-metric warn/block counts over rolling windows.
    metric: str
    blocks_24h: int
    warns_24h: int
    blocks_7d: int
    warns_7d: int
    blocks_30d: int
    warns_30d: int
    last_block_at: datetime | None
    last_warn_at: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric": self.metric,
            "blocks_24h": self.blocks_24h,
            "warns_24h": self.warns_24h,
            "blocks_7d": self.blocks_7d,
            "warns_7d": self.warns_7d,
            "blocks_30d": self.blocks_30d,
            "warns_30d": self.warns_30d,
            "last_block_at": self.last_block_at.isoformat() if self.last_block_at else None,
            "last_warn_at": self.last_warn_at.isoformat() if self.last_warn_at else None,
        }


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Any) -> datetime | None:
    # Aggregates over SQLite may come back naive or as ISO strings.
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def build_event_meta(
    *,
    increment: int,
    period_key: str | None,
    payer: LimitPayerResolution,
    credit: LimitCreditResult | None,
) -> dict[str, Any]:
    meta: dict[str, Any] = {
        "increment": increment,
        "period_key": period_key,
        "payer_type": payer.primary.type,
        "payer_id": payer.primary.id,
        "payer_strategy": payer.strategy.value,
    }
    if payer.fallback is not None:
        meta["payer_fallback_type"] = payer.fallback.type
        meta["payer_fallback_id"] = payer.fallback.id
    if credit is not None:
        meta["credit_amount"] = float(credit.amount)
        meta["credit_unit"] = credit.unit
        meta["credit_allow_debt"] = credit.allow_debt
        meta["credit_payer_type"] = credit.payer.primary.type
        meta["credit_payer_id"] = credit.payer.primary.id
        meta["credit_payer_strategy"] = credit.payer.strategy.value
        if credit.payer.fallback is not None:
            meta["credit_payer_fallback_type"] = credit.payer.fallback.type
            meta["credit_payer_fallback_id"] = credit.payer.fallback.id
        if credit.charged_payer is not None:
            meta["credit_charged_payer_type"] = credit.charged_payer.type
            meta["credit_charged_payer_id"] = credit.charged_payer.id
    return meta


async def write_limit_event(
    session: AsyncSession,
    *,
    scope: LimitScope,
    plan_id: str | None,
    metric: str,
    event: str,
    value: int,
    limit_value: int,
    meta: dict[str, Any],
    created_by: str | None = None,
    action: str | None = None,
    created_at: datetime | None = None,
) -> LimitEvent:
    # Persist immediately; warn/block rows are the audit trail for decisions.
    async with transaction(session):
        row = await limit_events_repo.insert_limit_event(
            session,
            scope_type=scope.type,
            scope_id=scope.id,
            plan_id=plan_id,
            metric=metric,
            event=event,
            value=value,
            limit_value=limit_value,
            action=action,
            meta=meta,
            created_by=created_by,
            created_at=created_at or _utc_now(),
        )
    increment_counter(f"limits.{event}")
    logger.info(
        "limit_event_recorded event=%s metric=%s scope_type=%s scope_id=%s value=%s limit=%s",
        event,
        metric,
        scope.type,
        scope.id,
        value,
        limit_value,
    )
    return row


async def emit_limit_analytics(
    name: str,
    *,
    metric: str,
    scope: LimitScope,
    plan_id: str | None,
    count: int,
    limit: int | None,
    increment: int,
    period_key: str | None,
    user_id: str | None,
    payer: LimitPayerResolution,
    credit: LimitCreditResult | None,
) -> None:
    # Analytics must never fail a limit check.
    try:
        await track_event(
            name,
            {
                "metric": metric,
                "scope_type": scope.type,
                "scope_id": scope.id,
                "plan_id": plan_id,
                "count": count,
                "limit": limit,
                "increment": increment,
                "period_key": period_key,
                "user_id": user_id,
                "payer_type": payer.primary.type,
                "payer_id": payer.primary.id,
                "payer_strategy": payer.strategy.value,
                "credit_amount": float(credit.amount) if credit else None,
                "credit_allow_debt": credit.allow_debt if credit else False,
            },
        )
    except Exception as exc:  # noqa: BLE001 - analytics failures are non-fatal
        logger.warning("limit_analytics_failed event=%s metric=%s", name, metric, exc_info=exc)


async def get_limit_event_summary(
    session: AsyncSession,
    *,
    now: datetime | None = None,
) -> list[LimitEventSummary]:
    """Aggregate warn/block events per metric over the last 24h, 7d and 30d.

    Only metrics with at least one event in the last 30 days are returned,
    sorted by metric key.
    """
    current = now or _utc_now()
    rows = await limit_events_repo.aggregate_limit_events(
        session,
        since_30d=current - timedelta(days=30),
        since_7d=current - timedelta(days=7),
        since_24h=current - timedelta(hours=24),
        max_metrics=max(1, get_settings().limit_event_summary_max_metrics),
    )
    return [
        LimitEventSummary(
            metric=row["metric"],
            blocks_24h=int(row["blocks_24h"] or 0),
            warns_24h=int(row["warns_24h"] or 0),
            blocks_7d=int(row["blocks_7d"] or 0),
            warns_7d=int(row["warns_7d"] or 0),
            blocks_30d=int(row["blocks_30d"] or 0),
            warns_30d=int(row["warns_30d"] or 0),
            last_block_at=_as_utc(row["last_block_at"]),
            last_warn_at=_as_utc(row["last_warn_at"]),
        )
        for row in rows
    ]
