from __future__ import annotations

from datetime import datetime, timezone
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from limitledger.core.config import get_settings
from limitledger.core.errors import PlanNotFoundError
from limitledger.domain.models import Plan
from limitledger.persistence.db import transaction
from limitledger.persistence.repos import plans as plans_repo
from limitledger.services.limits.policies import PLAN_CATALOGUE


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def ensure_default_plan(session: AsyncSession) -> Plan:
    # Lazily materialize the configured default plan; safe under concurrent callers.
    plan = await plans_repo.get_default_plan(session)
    if plan is not None:
        return plan

    plan_id = get_settings().default_plan_id
    template = PLAN_CATALOGUE.get(plan_id)
    async with transaction(session):
        await plans_repo.upsert_plan(
            session,
            plan_id=plan_id,
            name=template.name if template else plan_id,
            description=template.description if template else None,
            features=dict(template.limits) if template else {},
            is_default=True,
            overwrite=False,
        )
    plan = await plans_repo.get_plan(session, plan_id)
    if plan is None:
        raise PlanNotFoundError(f"Default plan {plan_id} could not be created")
    logger.info("default_plan_ensured plan_id=%s", plan_id)
    return plan


async def ensure_plan_for_user(
    session: AsyncSession,
    *,
    user_id: str | None = None,
    fallback_plan_id: str | None = None,
    now: datetime | None = None,
) -> Plan:
    """Resolve the effective plan, enrolling first-time users in the default plan.

    Without a user the fallback plan is used when it exists, otherwise the
    default plan. Enrollment is an insert-if-absent, so two concurrent first
    checks for the same user end up with one assignment.
    """
    if not user_id:
        if fallback_plan_id:
            plan = await plans_repo.get_plan(session, fallback_plan_id)
            if plan is not None:
                return plan
        return await ensure_default_plan(session)

    assignment = await plans_repo.get_user_plan_assignment(session, user_id)
    if assignment is not None:
        plan = await plans_repo.get_plan(session, assignment.plan_id)
        if plan is not None:
            return plan

    default_plan = await ensure_default_plan(session)
    async with transaction(session):
        await plans_repo.insert_user_plan_if_absent(
            session,
            user_id=user_id,
            plan_id=default_plan.id,
            starts_at=now or _utc_now(),
        )
    # Another request may have enrolled the user first with a different plan.
    assignment = await plans_repo.get_user_plan_assignment(session, user_id)
    if assignment is not None and assignment.plan_id != default_plan.id:
        plan = await plans_repo.get_plan(session, assignment.plan_id)
        if plan is not None:
            return plan
    logger.info("plan_auto_assigned user_id=%s plan_id=%s", user_id, default_plan.id)
    return default_plan


async def assign_user_plan(
    session: AsyncSession,
    *,
    user_id: str,
    plan_id: str,
    org_id: str | None = None,
    starts_at: datetime | None = None,
    ends_at: datetime | None = None,
) -> Plan:
    # Replace the user's single active assignment.
    plan = await plans_repo.get_plan(session, plan_id)
    if plan is None:
        raise PlanNotFoundError(f"Plan {plan_id} not found")
    async with transaction(session):
        await plans_repo.upsert_user_plan(
            session,
            user_id=user_id,
            plan_id=plan_id,
            org_id=org_id,
            starts_at=starts_at or _utc_now(),
            ends_at=ends_at,
        )
    logger.info("plan_assigned user_id=%s plan_id=%s", user_id, plan_id)
    return plan


async def seed_plan_catalogue(session: AsyncSession, *, overwrite: bool = True) -> list[str]:
    # Upsert every built-in plan; the configured default plan carries is_default.
    default_plan_id = get_settings().default_plan_id
    async with transaction(session):
        for template in PLAN_CATALOGUE.values():
            await plans_repo.upsert_plan(
                session,
                plan_id=template.id,
                name=template.name,
                description=template.description,
                features=dict(template.limits),
                is_default=template.id == default_plan_id,
                overwrite=overwrite,
            )
    return list(PLAN_CATALOGUE.keys())


async def get_plan(session: AsyncSession, plan_id: str) -> Plan | None:
    return await plans_repo.get_plan(session, plan_id)


async def list_plans(session: AsyncSession) -> list[Plan]:
    return await plans_repo.list_plans(session)
