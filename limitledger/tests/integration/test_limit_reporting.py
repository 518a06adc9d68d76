from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from limitledger.domain.limits import LimitCheckRequest, LimitScope
from limitledger.domain.models import UserPlanAssignment
from limitledger.services.limits import (
    check_and_consume_limit,
    get_limit_event_summary,
    get_user_usage_summary,
    write_limit_event,
)
from limitledger.services.limits.policies import METRIC_IDEAS, METRIC_MUTATIONS, METRIC_PUBLIC_IDEAS


NOW = datetime(2026, 5, 10, 12, 0, tzinfo=timezone.utc)


async def _event(session, *, metric: str, event: str, age: timedelta) -> None:
    await write_limit_event(
        session,
        scope=LimitScope(type="user", id="u1"),
        plan_id="free",
        metric=metric,
        event=event,
        value=6,
        limit_value=5,
        meta={"increment": 1},
        created_at=NOW - age,
    )


@pytest.mark.asyncio
async def test_event_summary_buckets_by_window(session) -> None:
    await _event(session, metric=METRIC_IDEAS, event="block", age=timedelta(hours=1))
    await _event(session, metric=METRIC_IDEAS, event="warn", age=timedelta(hours=2))
    await _event(session, metric=METRIC_IDEAS, event="block", age=timedelta(days=3))
    await _event(session, metric=METRIC_IDEAS, event="warn", age=timedelta(days=20))
    await _event(session, metric=METRIC_MUTATIONS, event="warn", age=timedelta(days=2))
    # Outside the 30-day window entirely.
    await _event(session, metric=METRIC_PUBLIC_IDEAS, event="block", age=timedelta(days=45))

    summaries = await get_limit_event_summary(session, now=NOW)

    assert [summary.metric for summary in summaries] == sorted([METRIC_IDEAS, METRIC_MUTATIONS])
    ideas = next(summary for summary in summaries if summary.metric == METRIC_IDEAS)
    assert (ideas.blocks_24h, ideas.warns_24h) == (1, 1)
    assert (ideas.blocks_7d, ideas.warns_7d) == (2, 1)
    assert (ideas.blocks_30d, ideas.warns_30d) == (2, 2)
    assert ideas.last_block_at == NOW - timedelta(hours=1)
    assert ideas.last_warn_at == NOW - timedelta(hours=2)
    mutations = next(summary for summary in summaries if summary.metric == METRIC_MUTATIONS)
    assert mutations.blocks_30d == 0
    assert mutations.last_block_at is None
    assert mutations.to_dict()["warns_7d"] == 1


@pytest.mark.asyncio
async def test_event_summary_empty_without_events(session) -> None:
    assert await get_limit_event_summary(session, now=NOW) == []


@pytest.mark.asyncio
async def test_usage_summary_reports_user_metrics(session) -> None:
    for _ in range(4):
        await check_and_consume_limit(
            session,
            LimitCheckRequest(scope=LimitScope(type="user", id="u1"), metric=METRIC_IDEAS, user_id="u1"),
        )

    summary = await get_user_usage_summary(session, "u1")

    assert summary.plan_id == "free"
    assert summary.plan_name == "Free"
    by_metric = {metric.metric: metric for metric in summary.metrics}
    # Only user-scoped, counter-backed metrics are reported.
    assert set(by_metric) == {METRIC_IDEAS, METRIC_PUBLIC_IDEAS, METRIC_MUTATIONS}
    ideas = by_metric[METRIC_IDEAS]
    assert (ideas.count, ideas.limit, ideas.remaining) == (4, 5, 1)
    assert ideas.status == "warn"
    assert ideas.progress_percent == 80
    assert by_metric[METRIC_MUTATIONS].status == "ok"


@pytest.mark.asyncio
async def test_usage_summary_does_not_enroll(session) -> None:
    summary = await get_user_usage_summary(session, "ghost")

    assert await session.get(UserPlanAssignment, "ghost") is None
    assert summary.plan_id is None
    assert all(metric.limit is None for metric in summary.metrics)
