from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from limitledger.core.errors import InsufficientBalanceError, InvalidIncrementError, LimitExceededError
from limitledger.domain.credits import CreditPayer
from limitledger.domain.limits import LimitCheckRequest, LimitCreditRequest, LimitScope
from limitledger.domain.models import CreditLedgerEntry, LimitEvent, UserPlanAssignment
from limitledger.persistence.db import transaction
from limitledger.persistence.repos import plans as plans_repo
from limitledger.services.credits import adjust_credit_balance, get_credit_balance
from limitledger.services.limits import (
    LimitGuard,
    assign_user_plan,
    check_and_consume_limit,
    create_manual_limit_override,
    enforce_limit,
    get_usage_counter,
    workspace_covers,
)
from limitledger.services.limits.policies import (
    METRIC_FEATURES,
    METRIC_IDEAS,
    METRIC_JOIN_REQUESTS,
    METRIC_MUTATIONS,
)


def _ideas_request(user_id: str = "u1", **kwargs) -> LimitCheckRequest:
    return LimitCheckRequest(
        scope=LimitScope(type="user", id=user_id),
        metric=METRIC_IDEAS,
        user_id=user_id,
        **kwargs,
    )


async def _ideas_count(session, user_id: str = "u1") -> int:
    return await get_usage_counter(
        session,
        scope=LimitScope(type="user", id=user_id),
        metric=METRIC_IDEAS,
        period="lifetime",
        period_key="lifetime",
    )


async def _events(session, event: str) -> list[LimitEvent]:
    result = await session.execute(select(LimitEvent).where(LimitEvent.event == event))
    return list(result.scalars().all())


async def _custom_plan(session, plan_id: str, features: dict) -> None:
    async with transaction(session):
        await plans_repo.upsert_plan(session, plan_id=plan_id, name=plan_id.title(), features=features)


@pytest.mark.asyncio
async def test_warn_then_block_at_free_plan_boundary(session) -> None:
    modes = []
    for _ in range(6):
        result = await check_and_consume_limit(session, _ideas_request())
        modes.append(result.mode)

    assert modes == ["ok", "ok", "ok", "warn", "warn", "blocked"]
    assert result.count == 5
    assert result.limit == 5
    assert result.remaining == 0
    assert result.allowed is False
    assert await _ideas_count(session) == 5
    assert len(await _events(session, "warn")) == 2
    blocks = await _events(session, "block")
    assert len(blocks) == 1
    assert blocks[0].value == 6
    assert blocks[0].limit_value == 5
    assert blocks[0].meta["period_key"] == "lifetime"
    assert blocks[0].meta["payer_strategy"] == "actor"


@pytest.mark.asyncio
async def test_first_check_enrolls_user_in_default_plan(session) -> None:
    result = await check_and_consume_limit(session, _ideas_request(user_id="fresh"))

    assert result.plan_id == "free"
    assignment = await session.get(UserPlanAssignment, "fresh")
    assert assignment is not None
    assert assignment.plan_id == "free"


@pytest.mark.asyncio
async def test_blocking_is_monotonic_and_never_moves_the_counter(session) -> None:
    for _ in range(5):
        await check_and_consume_limit(session, _ideas_request())

    for _ in range(3):
        blocked = await check_and_consume_limit(session, _ideas_request())
        assert blocked.mode == "blocked"

    assert await _ideas_count(session) == 5
    assert len(await _events(session, "block")) == 3


@pytest.mark.asyncio
async def test_increment_larger_than_remaining_is_blocked(session) -> None:
    await check_and_consume_limit(session, _ideas_request(increment=3))

    result = await check_and_consume_limit(session, _ideas_request(increment=3))

    assert result.mode == "blocked"
    assert result.count == 3
    assert await _ideas_count(session) == 3


@pytest.mark.asyncio
async def test_approved_override_replaces_plan_limit(session) -> None:
    for _ in range(5):
        await check_and_consume_limit(session, _ideas_request())
    override = await create_manual_limit_override(
        session,
        scope_type="user",
        scope_id="u1",
        metric=METRIC_IDEAS,
        limit_value=10,
        created_by="admin-1",
    )

    result = await check_and_consume_limit(session, _ideas_request())

    assert result.mode == "ok"
    assert result.count == 6
    assert result.limit == 10
    assert result.remaining == 4
    assert result.override_id == override.id


@pytest.mark.asyncio
async def test_expired_override_falls_back_to_plan_limit(session) -> None:
    await create_manual_limit_override(
        session,
        scope_type="user",
        scope_id="u1",
        metric=METRIC_IDEAS,
        limit_value=10,
        expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
    )

    result = await check_and_consume_limit(session, _ideas_request())

    assert result.limit == 5
    assert result.override_id is None


@pytest.mark.asyncio
async def test_cooldown_metric_is_unlimited(session) -> None:
    request = LimitCheckRequest(
        scope=LimitScope(type="idea", id="i1"),
        metric=METRIC_JOIN_REQUESTS,
        user_id="u1",
    )

    result = await check_and_consume_limit(session, request)

    assert result.mode == "unlimited"
    assert result.limit is None
    assert result.remaining is None
    assert result.period_key is None


@pytest.mark.asyncio
async def test_analytics_failure_does_not_fail_checks(session, monkeypatch) -> None:
    async def _broken_track_event(name, properties):
        raise RuntimeError("analytics sink down")

    monkeypatch.setattr("limitledger.services.limits.events.track_event", _broken_track_event)
    await _custom_plan(session, "tight", {METRIC_IDEAS: 2})
    await assign_user_plan(session, user_id="u1", plan_id="tight")

    # Warn threshold is floor(2 * 0.8) = 1, so the first allowed check already warns.
    warned = await check_and_consume_limit(session, _ideas_request())
    await check_and_consume_limit(session, _ideas_request())
    blocked = await check_and_consume_limit(session, _ideas_request())

    assert warned.mode == "warn"
    assert blocked.mode == "blocked"
    assert len(await _events(session, "warn")) == 2
    assert len(await _events(session, "block")) == 1
    assert await _ideas_count(session) == 2


@pytest.mark.asyncio
async def test_plan_without_limit_short_circuits(session) -> None:
    await _custom_plan(session, "enterprise", {})
    await assign_user_plan(session, user_id="u1", plan_id="enterprise")

    result = await check_and_consume_limit(session, _ideas_request())

    assert result.mode == "unlimited"
    assert result.plan_id == "enterprise"
    assert await _ideas_count(session) == 0


@pytest.mark.asyncio
async def test_dry_run_reports_without_consuming(session) -> None:
    result = await check_and_consume_limit(session, _ideas_request(dry_run=True))

    assert result.mode == "ok"
    assert result.count == 1
    assert await _ideas_count(session) == 0


@pytest.mark.asyncio
async def test_non_positive_increment_is_rejected(session) -> None:
    with pytest.raises(InvalidIncrementError):
        await check_and_consume_limit(session, _ideas_request(increment=0))


@pytest.mark.asyncio
async def test_enforce_limit_raises_with_blocked_result(session) -> None:
    for _ in range(5):
        await enforce_limit(session, _ideas_request())

    with pytest.raises(LimitExceededError) as excinfo:
        await enforce_limit(session, _ideas_request(), message="Idea limit reached")

    assert excinfo.value.message == "Idea limit reached"
    assert excinfo.value.result.mode == "blocked"
    assert excinfo.value.result.count == 5


@pytest.mark.asyncio
async def test_daily_counter_rolls_over_at_utc_midnight(session) -> None:
    await _custom_plan(session, "tight", {METRIC_MUTATIONS: 3})
    await assign_user_plan(session, user_id="u1", plan_id="tight")
    clock = {"now": datetime(2026, 3, 1, 23, 0, tzinfo=timezone.utc)}
    guard = LimitGuard(time_provider=lambda: clock["now"])
    request = LimitCheckRequest(scope=LimitScope(type="user", id="u1"), metric=METRIC_MUTATIONS, user_id="u1")

    day_one = [(await guard.check_and_consume_limit(session, request)).mode for _ in range(4)]
    clock["now"] = clock["now"] + timedelta(hours=2)
    next_day = await guard.check_and_consume_limit(session, request)

    assert day_one == ["ok", "warn", "warn", "blocked"]
    assert next_day.mode == "ok"
    assert next_day.count == 1
    assert next_day.period_key == "2026-03-02"


@pytest.mark.asyncio
async def test_credit_charge_falls_back_to_user_when_workspace_is_short(session) -> None:
    await adjust_credit_balance(
        session,
        payer=CreditPayer(type="user", id="u2"),
        delta=10,
        entry_type="adjustment",
    )
    request = LimitCheckRequest(
        scope=LimitScope(type="idea", id="i1"),
        metric=METRIC_FEATURES,
        user_id="u2",
        payer=workspace_covers("w1", fallback_user_id="u2"),
        credit=LimitCreditRequest(amount=3),
    )

    result = await check_and_consume_limit(session, request)

    assert result.mode == "ok"
    assert result.credit is not None
    assert result.credit.charged_payer == CreditPayer(type="user", id="u2")
    user_balance = await get_credit_balance(session, CreditPayer(type="user", id="u2"))
    workspace_balance = await get_credit_balance(session, CreditPayer(type="workspace", id="w1"))
    assert user_balance.available == Decimal("7")
    assert workspace_balance.available == Decimal("0")
    entries = (
        await session.execute(select(CreditLedgerEntry).where(CreditLedgerEntry.entry_type == "usage"))
    ).scalars().all()
    assert len(entries) == 1
    assert entries[0].payer_id == "u2"
    assert entries[0].source == METRIC_FEATURES
    assert entries[0].metadata_json["scope_id"] == "i1"


@pytest.mark.asyncio
async def test_unpaid_credit_charge_leaves_counter_untouched(session) -> None:
    request = _ideas_request(credit=LimitCreditRequest(amount=1))

    with pytest.raises(InsufficientBalanceError) as excinfo:
        await check_and_consume_limit(session, request)

    assert excinfo.value.balance.available == Decimal("0")
    assert await _ideas_count(session) == 0


@pytest.mark.asyncio
async def test_allow_debt_lets_balance_go_negative(session) -> None:
    request = _ideas_request(credit=LimitCreditRequest(amount=2, allow_debt=True))

    result = await check_and_consume_limit(session, request)

    assert result.mode == "ok"
    balance = await get_credit_balance(session, CreditPayer(type="user", id="u1"))
    assert balance.available == Decimal("-2")
