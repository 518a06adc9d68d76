from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from limitledger.domain.models import LimitEvent


async def insert_limit_event(
    session: AsyncSession,
    *,
    scope_type: str,
    scope_id: str,
    plan_id: str | None,
    metric: str,
    event: str,
    value: int,
    limit_value: int,
    action: str | None,
    meta: dict[str, Any],
    created_by: str | None,
    created_at: datetime,
) -> LimitEvent:
    row = LimitEvent(
        id=uuid4().hex,
        scope_type=scope_type,
        scope_id=scope_id,
        plan_id=plan_id,
        metric=metric,
        event=event,
        value=value,
        limit_value=limit_value,
        action=action,
        meta=meta,
        created_by=created_by,
        created_at=created_at,
    )
    session.add(row)
    await session.flush()
    return row


async def aggregate_limit_events(
    session: AsyncSession,
    *,
    since_30d: datetime,
    since_7d: datetime,
    since_24h: datetime,
    max_metrics: int,
) -> list[dict[str, Any]]:
    # One grouped scan over the 30 day window; shorter windows are conditional sums.
    def _count(event: str, since: datetime):  # type: ignore[no-untyped-def]
        return func.sum(
            case(((LimitEvent.event == event) & (LimitEvent.created_at >= since), 1), else_=0)
        )

    stmt = (
        select(
            LimitEvent.metric,
            _count("block", since_24h).label("blocks_24h"),
            _count("block", since_7d).label("blocks_7d"),
            _count("block", since_30d).label("blocks_30d"),
            _count("warn", since_24h).label("warns_24h"),
            _count("warn", since_7d).label("warns_7d"),
            _count("warn", since_30d).label("warns_30d"),
            func.max(case((LimitEvent.event == "block", LimitEvent.created_at), else_=None)).label(
                "last_block_at"
            ),
            func.max(case((LimitEvent.event == "warn", LimitEvent.created_at), else_=None)).label(
                "last_warn_at"
            ),
        )
        .where(LimitEvent.created_at >= since_30d)
        .group_by(LimitEvent.metric)
        .order_by(LimitEvent.metric.asc())
        .limit(max_metrics)
    )
    result = await session.execute(stmt)
    return [dict(row._mapping) for row in result.all()]
