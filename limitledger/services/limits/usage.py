from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import math
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from limitledger.core.errors import InvalidIncrementError
from limitledger.domain.limits import LimitScope
from limitledger.domain.models import Plan
from limitledger.persistence.db import transaction
from limitledger.persistence.repos import plans as plans_repo
from limitledger.persistence.repos import usage_counters as usage_counters_repo
from limitledger.services.limits.policies import (
    PERIOD_COOLDOWN,
    compute_warn_threshold,
    get_plan_limit,
    list_metric_definitions,
    resolve_period_key,
)


@dataclass(frozen=True)
class UsageMetricSummary:
    metric: str
    label: str
    description: str
    period_label: str
    count: int
    limit: int | None
    remaining: int | None
    status: str
    warn_threshold: int | None
    progress_percent: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric": self.metric,
            "label": self.label,
            "description": self.description,
            "period_label": self.period_label,
            "count": self.count,
            "limit": self.limit,
            "remaining": self.remaining,
            "status": self.status,
            "warn_threshold": self.warn_threshold,
            "progress_percent": self.progress_percent,
        }


@dataclass(frozen=True)
class UserUsageSummary:
    plan_id: str | None
    plan_name: str
    metrics: list[UsageMetricSummary] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan": {"id": self.plan_id, "name": self.plan_name},
            "metrics": [metric.to_dict() for metric in self.metrics],
        }


def _summary_status(count: int, limit: int | None, warn_threshold: int | None) -> str:
    # Reaching the limit reads as blocked here: the next action would be refused.
    if limit is None:
        return "unlimited"
    if count >= limit:
        return "blocked"
    if warn_threshold is not None and count >= warn_threshold:
        return "warn"
    return "ok"


async def get_user_usage_summary(
    session: AsyncSession,
    user_id: str,
    *,
    now: datetime | None = None,
) -> UserUsageSummary:
    """Report a user's current-period usage against their plan.

    Read-only: users without an assignment are reported against the default
    plan but are not enrolled.
    """
    current = now or datetime.now(timezone.utc)
    plan: Plan | None = None
    assignment = await plans_repo.get_user_plan_assignment(session, user_id)
    if assignment is not None:
        plan = await plans_repo.get_plan(session, assignment.plan_id)
    if plan is None:
        plan = await plans_repo.get_default_plan(session)

    definitions = [
        definition
        for definition in list_metric_definitions()
        if definition.scope == "user" and definition.period != PERIOD_COOLDOWN
    ]
    period_keys: dict[str, str] = {}
    for definition in definitions:
        period_key = resolve_period_key(definition, current)
        if period_key is not None:
            period_keys[definition.metric] = period_key
    counts = await usage_counters_repo.list_scope_counters(
        session,
        scope_type="user",
        scope_id=user_id,
        period_keys=period_keys,
    )

    metrics: list[UsageMetricSummary] = []
    for definition in definitions:
        count = counts.get(definition.metric, 0)
        raw_limit = get_plan_limit(plan, definition.metric)
        limit = int(raw_limit) if math.isfinite(raw_limit) else None
        warn_threshold = compute_warn_threshold(raw_limit, definition.warn_ratio)
        progress = min(100, round((count / limit) * 100)) if limit else 0
        metrics.append(
            UsageMetricSummary(
                metric=definition.metric,
                label=definition.label or definition.metric,
                description=definition.description,
                period_label=definition.period_label or definition.period,
                count=count,
                limit=limit,
                remaining=max(0, limit - count) if limit is not None else None,
                status=_summary_status(count, limit, warn_threshold),
                warn_threshold=warn_threshold,
                progress_percent=progress,
            )
        )

    plan_name = (plan.name or plan.id) if plan is not None else "Free"
    return UserUsageSummary(plan_id=plan.id if plan else None, plan_name=plan_name, metrics=metrics)


async def get_usage_counter(
    session: AsyncSession,
    *,
    scope: LimitScope,
    metric: str,
    period: str,
    period_key: str,
) -> int:
    return await usage_counters_repo.get_usage_counter(
        session,
        scope_type=scope.type,
        scope_id=scope.id,
        metric=metric,
        period=period,
        period_key=period_key,
    )


async def increment_usage_counter(
    session: AsyncSession,
    *,
    scope: LimitScope,
    metric: str,
    period: str,
    period_key: str,
    by: int = 1,
) -> None:
    # The increment happens in the database, never as read-modify-write here.
    if by <= 0:
        raise InvalidIncrementError(metric, by)
    async with transaction(session):
        await usage_counters_repo.increment_usage_counter(
            session,
            scope_type=scope.type,
            scope_id=scope.id,
            metric=metric,
            period=period,
            period_key=period_key,
            by=by,
        )
