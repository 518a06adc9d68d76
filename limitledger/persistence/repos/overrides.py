from __future__ import annotations

from datetime import datetime

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from limitledger.domain.models import LimitOverride


async def list_limit_overrides(
    session: AsyncSession,
    *,
    scope_type: str,
    scope_id: str,
    metric: str | None = None,
    status: str | None = "approved",
) -> list[LimitOverride]:
    # Newest first so the most recent approval is considered before stale rows.
    stmt = select(LimitOverride).where(
        LimitOverride.scope_type == scope_type,
        LimitOverride.scope_id == scope_id,
    )
    if metric is not None:
        stmt = stmt.where(LimitOverride.metric == metric)
    if status is not None:
        stmt = stmt.where(LimitOverride.status == status)
    stmt = stmt.order_by(LimitOverride.created_at.desc(), LimitOverride.id.desc())
    # Bulk expiry updates bypass the identity map; always reload rows.
    stmt = stmt.execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_pending_limit_overrides(session: AsyncSession, *, limit: int) -> list[LimitOverride]:
    # Newest pending first for review queues.
    result = await session.execute(
        select(LimitOverride)
        .where(LimitOverride.status == "pending")
        .order_by(LimitOverride.created_at.desc(), LimitOverride.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_limit_override(
    session: AsyncSession,
    override_id: str,
    *,
    for_update: bool = False,
) -> LimitOverride | None:
    stmt = select(LimitOverride).where(LimitOverride.id == override_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def expire_active_overrides(
    session: AsyncSession,
    *,
    scope_type: str,
    scope_id: str,
    metric: str,
    now: datetime,
    exclude_id: str,
    note: str,
) -> int:
    # Close every other approved, unexpired override for the key at `now`.
    result = await session.execute(
        update(LimitOverride)
        .where(
            LimitOverride.scope_type == scope_type,
            LimitOverride.scope_id == scope_id,
            LimitOverride.metric == metric,
            LimitOverride.status == "approved",
            LimitOverride.id != exclude_id,
            or_(LimitOverride.expires_at.is_(None), LimitOverride.expires_at > now),
        )
        .values(expires_at=now, resolution_note=note, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
