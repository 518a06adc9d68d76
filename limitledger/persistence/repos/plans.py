from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from limitledger.domain.models import Plan, UserPlanAssignment
from limitledger.persistence.db import dialect_insert


async def get_plan(session: AsyncSession, plan_id: str) -> Plan | None:
    result = await session.execute(
        select(Plan).where(Plan.id == plan_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_default_plan(session: AsyncSession) -> Plan | None:
    # Oldest default wins if several rows were flagged by hand.
    result = await session.execute(
        select(Plan).where(Plan.is_default.is_(True)).order_by(Plan.created_at.asc(), Plan.id.asc()).limit(1)
    )
    return result.scalar_one_or_none()


async def list_plans(session: AsyncSession) -> list[Plan]:
    result = await session.execute(select(Plan).order_by(Plan.id.asc()))
    return list(result.scalars().all())


async def upsert_plan(
    session: AsyncSession,
    *,
    plan_id: str,
    name: str,
    features: dict[str, Any],
    description: str | None = None,
    is_default: bool = False,
    overwrite: bool = True,
) -> None:
    # overwrite refreshes catalogue values; otherwise an existing row is left untouched.
    stmt = dialect_insert(session, Plan).values(
        id=plan_id,
        name=name,
        description=description,
        is_default=is_default,
        features=features,
    )
    if overwrite:
        stmt = stmt.on_conflict_do_update(
            index_elements=[Plan.id],
            set_={
                "name": name,
                "description": description,
                "is_default": is_default,
                "features": features,
            },
        )
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=[Plan.id])
    await session.execute(stmt)


async def get_user_plan_assignment(session: AsyncSession, user_id: str) -> UserPlanAssignment | None:
    # Assignments change through core upserts, so never trust the identity map here.
    result = await session.execute(
        select(UserPlanAssignment)
        .where(UserPlanAssignment.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def insert_user_plan_if_absent(
    session: AsyncSession,
    *,
    user_id: str,
    plan_id: str,
    starts_at: datetime,
) -> None:
    # Concurrent first-use enrollments collapse onto whichever insert lands first.
    stmt = dialect_insert(session, UserPlanAssignment).values(
        user_id=user_id,
        plan_id=plan_id,
        starts_at=starts_at,
    )
    stmt = stmt.on_conflict_do_nothing(index_elements=[UserPlanAssignment.user_id])
    await session.execute(stmt)


async def upsert_user_plan(
    session: AsyncSession,
    *,
    user_id: str,
    plan_id: str,
    starts_at: datetime,
    ends_at: datetime | None = None,
    org_id: str | None = None,
) -> None:
    stmt = dialect_insert(session, UserPlanAssignment).values(
        user_id=user_id,
        plan_id=plan_id,
        org_id=org_id,
        starts_at=starts_at,
        ends_at=ends_at,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[UserPlanAssignment.user_id],
        set_={
            "plan_id": plan_id,
            "org_id": org_id,
            "starts_at": starts_at,
            "ends_at": ends_at,
            "updated_at": starts_at,
        },
    )
    await session.execute(stmt)
