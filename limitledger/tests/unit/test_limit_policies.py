from __future__ import annotations

from datetime import datetime, timedelta, timezone
import math

import pytest

from limitledger.core.errors import UnknownMetricError
from limitledger.domain.limits import MetricDefinition
from limitledger.domain.models import Plan
from limitledger.services.limits.policies import (
    METRIC_IDEAS,
    METRIC_JOIN_REQUESTS,
    METRIC_MUTATIONS,
    PERIOD_MONTHLY,
    compute_warn_threshold,
    get_metric_definition,
    get_plan_limit,
    list_metric_definitions,
    resolve_mode,
    resolve_period_key,
)


def test_unknown_metric_raises() -> None:
    with pytest.raises(UnknownMetricError) as excinfo:
        get_metric_definition("uploads.per_user.daily")
    assert excinfo.value.metric == "uploads.per_user.daily"


def test_registered_metrics_cover_catalogue() -> None:
    metrics = {definition.metric for definition in list_metric_definitions()}
    assert METRIC_IDEAS in metrics
    assert METRIC_MUTATIONS in metrics
    join_requests = get_metric_definition(METRIC_JOIN_REQUESTS)
    assert join_requests.period == "cooldown"
    assert join_requests.supports_counters is False


def test_warn_threshold_floors_limit_times_ratio() -> None:
    assert compute_warn_threshold(5, 0.8) == 4
    assert compute_warn_threshold(7, 0.8) == 5
    assert compute_warn_threshold(1, 0.5) == 0
    assert compute_warn_threshold(0, 0.8) is None
    assert compute_warn_threshold(math.inf, 0.8) is None


def test_warn_threshold_uses_configured_default_ratio() -> None:
    assert compute_warn_threshold(10) == 8


def test_resolve_mode_boundaries() -> None:
    assert resolve_mode(3, 5, 4) == "ok"
    assert resolve_mode(4, 5, 4) == "warn"
    assert resolve_mode(5, 5, 4) == "warn"
    assert resolve_mode(6, 5, 4) == "blocked"
    assert resolve_mode(1, math.inf, None) == "unlimited"
    # A zero threshold never produces warnings.
    assert resolve_mode(1, 1, 0) == "ok"


def test_plan_features_override_catalogue_values() -> None:
    plan = Plan(id="free", name="Free", features={METRIC_IDEAS: 12})
    assert get_plan_limit(plan, METRIC_IDEAS) == 12
    # Catalogue value for the built-in free plan fills the gap.
    assert get_plan_limit(plan, METRIC_MUTATIONS) == 500


def test_plan_limit_ignores_non_numeric_features() -> None:
    plan = Plan(id="custom", name="Custom", features={METRIC_IDEAS: "10", METRIC_MUTATIONS: True})
    assert get_plan_limit(plan, METRIC_IDEAS) == math.inf
    assert get_plan_limit(plan, METRIC_MUTATIONS) == math.inf
    assert get_plan_limit(None, METRIC_IDEAS) == math.inf


def test_plan_limit_ignores_fractional_features() -> None:
    plan = Plan(id="free", name="Free", features={METRIC_IDEAS: 2.5, METRIC_MUTATIONS: 40.0})
    # Fractional values fall back to the catalogue limit; whole floats are accepted as ints.
    assert get_plan_limit(plan, METRIC_IDEAS) == 5
    limit = get_plan_limit(plan, METRIC_MUTATIONS)
    assert limit == 40
    assert isinstance(limit, int)
    custom = Plan(id="custom", name="Custom", features={METRIC_IDEAS: 2.5})
    assert get_plan_limit(custom, METRIC_IDEAS) == math.inf


def test_daily_period_key_uses_utc_date() -> None:
    definition = get_metric_definition(METRIC_MUTATIONS)
    eastern = timezone(timedelta(hours=-5))
    late_evening = datetime(2026, 3, 1, 21, 30, tzinfo=eastern)
    assert resolve_period_key(definition, late_evening) == "2026-03-02"


def test_lifetime_and_cooldown_period_keys() -> None:
    now = datetime(2026, 3, 1, tzinfo=timezone.utc)
    assert resolve_period_key(get_metric_definition(METRIC_IDEAS), now) == "lifetime"
    assert resolve_period_key(get_metric_definition(METRIC_JOIN_REQUESTS), now) is None


def test_monthly_period_key_rolls_over_at_utc_month_boundary() -> None:
    definition = MetricDefinition(metric="exports.per_user.monthly", scope="user", period=PERIOD_MONTHLY)
    assert resolve_period_key(definition, datetime(2026, 1, 31, 23, 59, tzinfo=timezone.utc)) == "2026-01"
    assert resolve_period_key(definition, datetime(2026, 2, 1, 0, 0, tzinfo=timezone.utc)) == "2026-02"
    # Still January locally, already February in UTC.
    pacific = timezone(timedelta(hours=-8))
    assert resolve_period_key(definition, datetime(2026, 1, 31, 17, 30, tzinfo=pacific)) == "2026-02"
