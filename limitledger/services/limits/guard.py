from __future__ import annotations

from datetime import datetime, timezone
import logging
import math
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from limitledger.core.errors import InvalidIncrementError, LimitExceededError
from limitledger.domain.limits import (
    LimitCheckRequest,
    LimitCheckResult,
    LimitCreditResult,
    LimitPayerResolution,
)
from limitledger.services.limits.events import (
    ANALYTICS_EVENT_BLOCKED,
    ANALYTICS_EVENT_WARNED,
    build_event_meta,
    emit_limit_analytics,
    write_limit_event,
)
from limitledger.services.limits.overrides import list_limit_overrides, pick_active_override
from limitledger.services.limits.payer import resolve_credit_charge, resolve_payer, settle_credit_charge
from limitledger.services.limits.plans import ensure_plan_for_user
from limitledger.services.limits.policies import (
    PERIOD_COOLDOWN,
    compute_warn_threshold,
    get_metric_definition,
    get_plan_limit,
    resolve_mode,
    resolve_period_key,
)
from limitledger.services.limits.usage import get_usage_counter, increment_usage_counter
from limitledger.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    # Period keys are computed from UTC wall-clock time.
    return datetime.now(timezone.utc)


def _unlimited(
    request: LimitCheckRequest,
    *,
    plan_id: str | None,
    payer: LimitPayerResolution,
    credit: LimitCreditResult | None,
) -> LimitCheckResult:
    return LimitCheckResult(
        metric=request.metric,
        mode="unlimited",
        count=0,
        limit=None,
        remaining=None,
        period_key=None,
        plan_id=plan_id,
        payer=payer,
        credit=credit,
    )


class LimitGuard:
    def __init__(self, *, time_provider: Callable[[], datetime] | None = None) -> None:
        # Allow time injection for deterministic period rollover tests.
        self._time_provider = time_provider or _utc_now

    async def check_and_consume_limit(
        self,
        session: AsyncSession,
        request: LimitCheckRequest,
    ) -> LimitCheckResult:
        """Decide whether one action may proceed and consume quota for it.

        Blocked checks write a block event and leave the counter untouched.
        Allowed checks settle any credit charge first, then increment the
        counter (skipped for dry runs). Reading the counter, deciding, and
        incrementing are separate statements, so concurrent callers on the
        same key can both be admitted past the limit.
        """
        now = self._time_provider()
        increment = request.increment if request.increment is not None else 1
        if increment <= 0:
            raise InvalidIncrementError(request.metric, increment)

        definition = get_metric_definition(request.metric)
        plan = await ensure_plan_for_user(
            session,
            user_id=request.user_id,
            fallback_plan_id=request.plan_id,
            now=now,
        )
        plan_id = plan.id if plan is not None else None
        base_limit = get_plan_limit(plan, request.metric)
        payer = resolve_payer(request)
        credit = resolve_credit_charge(request, payer)

        if not definition.supports_counters or not math.isfinite(base_limit):
            return _unlimited(request, plan_id=plan_id, payer=payer, credit=credit)
        # Cooldown metrics are enforced outside this engine.
        if definition.period == PERIOD_COOLDOWN:
            return _unlimited(request, plan_id=plan_id, payer=payer, credit=credit)

        overrides = await list_limit_overrides(
            session,
            scope_type=definition.scope,
            scope_id=request.scope.id,
            metric=request.metric,
            status="approved",
        )
        active_override = pick_active_override(overrides, now)
        hard_limit = int(active_override.limit_value) if active_override is not None else int(base_limit)
        warn_threshold = compute_warn_threshold(hard_limit, definition.warn_ratio)
        override_id = active_override.id if active_override is not None else None

        period_key = resolve_period_key(definition, now)
        if period_key is None:
            return _unlimited(request, plan_id=plan_id, payer=payer, credit=credit)

        current_count = await get_usage_counter(
            session,
            scope=request.scope,
            metric=request.metric,
            period=definition.period,
            period_key=period_key,
        )
        next_count = current_count + increment
        mode = resolve_mode(next_count, hard_limit, warn_threshold)

        if mode == "blocked":
            await write_limit_event(
                session,
                scope=request.scope,
                plan_id=plan_id,
                metric=request.metric,
                event="block",
                value=next_count,
                limit_value=hard_limit,
                meta=build_event_meta(increment=increment, period_key=period_key, payer=payer, credit=credit),
                created_by=request.user_id,
                created_at=now,
            )
            await emit_limit_analytics(
                ANALYTICS_EVENT_BLOCKED,
                metric=request.metric,
                scope=request.scope,
                plan_id=plan_id,
                count=next_count,
                limit=hard_limit,
                increment=increment,
                period_key=period_key,
                user_id=request.user_id,
                payer=payer,
                credit=credit,
            )
            logger.info(
                "limit_blocked metric=%s scope_type=%s scope_id=%s count=%s limit=%s",
                request.metric,
                request.scope.type,
                request.scope.id,
                current_count,
                hard_limit,
            )
            return LimitCheckResult(
                metric=request.metric,
                mode=mode,
                count=current_count,
                limit=hard_limit,
                remaining=0,
                period_key=period_key,
                plan_id=plan_id,
                payer=payer,
                override_id=override_id,
                credit=credit,
            )

        if not request.dry_run and credit is not None:
            # InsufficientBalanceError escapes here before the counter moves.
            credit.charged_payer = await settle_credit_charge(
                session,
                request=request,
                credit=credit,
                increment=increment,
                period_key=period_key,
            )

        if not request.dry_run:
            await increment_usage_counter(
                session,
                scope=request.scope,
                metric=request.metric,
                period=definition.period,
                period_key=period_key,
                by=increment,
            )
            if mode == "warn":
                await write_limit_event(
                    session,
                    scope=request.scope,
                    plan_id=plan_id,
                    metric=request.metric,
                    event="warn",
                    value=next_count,
                    limit_value=hard_limit,
                    meta=build_event_meta(increment=increment, period_key=period_key, payer=payer, credit=credit),
                    created_by=request.user_id,
                    created_at=now,
                )
                await emit_limit_analytics(
                    ANALYTICS_EVENT_WARNED,
                    metric=request.metric,
                    scope=request.scope,
                    plan_id=plan_id,
                    count=next_count,
                    limit=hard_limit,
                    increment=increment,
                    period_key=period_key,
                    user_id=request.user_id,
                    payer=payer,
                    credit=credit,
                )

        increment_counter(f"limits.mode.{mode}")
        return LimitCheckResult(
            metric=request.metric,
            mode=mode,
            count=next_count,
            limit=hard_limit,
            remaining=max(0, hard_limit - next_count),
            period_key=period_key,
            plan_id=plan_id,
            payer=payer,
            override_id=override_id,
            credit=credit,
        )

    async def enforce_limit(
        self,
        session: AsyncSession,
        request: LimitCheckRequest,
        *,
        message: str | None = None,
    ) -> LimitCheckResult:
        # Raise on block so callers can map it to a user-facing quota error.
        result = await self.check_and_consume_limit(session, request)
        if result.mode == "blocked":
            raise LimitExceededError(result, message or "Limit exceeded")
        return result


_limit_guard: LimitGuard | None = None


def get_limit_guard() -> LimitGuard:
    # Cache the guard for reuse across requests.
    global _limit_guard
    if _limit_guard is None:
        _limit_guard = LimitGuard()
    return _limit_guard


def reset_limit_guard() -> None:
    # Reset cached services for deterministic tests.
    global _limit_guard
    _limit_guard = None


async def check_and_consume_limit(session: AsyncSession, request: LimitCheckRequest) -> LimitCheckResult:
    return await get_limit_guard().check_and_consume_limit(session, request)


async def enforce_limit(
    session: AsyncSession,
    request: LimitCheckRequest,
    *,
    message: str | None = None,
) -> LimitCheckResult:
    return await get_limit_guard().enforce_limit(session, request, message=message)
