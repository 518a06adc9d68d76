from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from limitledger.domain.models import UsageCounter
from limitledger.persistence.db import dialect_insert


async def get_usage_counter(
    session: AsyncSession,
    *,
    scope_type: str,
    scope_id: str,
    metric: str,
    period: str,
    period_key: str,
) -> int:
    result = await session.execute(
        select(UsageCounter.count).where(
            UsageCounter.scope_type == scope_type,
            UsageCounter.scope_id == scope_id,
            UsageCounter.metric == metric,
            UsageCounter.period == period,
            UsageCounter.period_key == period_key,
        )
    )
    count = result.scalar_one_or_none()
    return int(count or 0)


async def increment_usage_counter(
    session: AsyncSession,
    *,
    scope_type: str,
    scope_id: str,
    metric: str,
    period: str,
    period_key: str,
    by: int,
) -> None:
    # Single upsert statement so concurrent increments never lose updates.
    stmt = dialect_insert(session, UsageCounter).values(
        scope_type=scope_type,
        scope_id=scope_id,
        metric=metric,
        period=period,
        period_key=period_key,
        count=by,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[
            UsageCounter.scope_type,
            UsageCounter.scope_id,
            UsageCounter.metric,
            UsageCounter.period,
            UsageCounter.period_key,
        ],
        set_={"count": UsageCounter.count + by, "updated_at": func.now()},
    )
    await session.execute(stmt)


async def list_scope_counters(
    session: AsyncSession,
    *,
    scope_type: str,
    scope_id: str,
    period_keys: dict[str, str],
) -> dict[str, int]:
    # Return counts for the given metric -> period_key pairs; absent rows are 0.
    if not period_keys:
        return {}
    result = await session.execute(
        select(UsageCounter.metric, UsageCounter.period_key, UsageCounter.count).where(
            UsageCounter.scope_type == scope_type,
            UsageCounter.scope_id == scope_id,
            UsageCounter.metric.in_(list(period_keys.keys())),
        )
    )
    counts = {metric: 0 for metric in period_keys}
    for metric, period_key, count in result.all():
        if period_keys.get(metric) == period_key:
            counts[metric] = int(count or 0)
    return counts
