from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import math
from typing import Any, Callable

from limitledger.core.config import get_settings
from limitledger.core.errors import UnknownMetricError
from limitledger.domain.limits import MetricDefinition
from limitledger.domain.models import Plan


logger = logging.getLogger(__name__)

METRIC_IDEAS = "ideas.per_user.lifetime"
METRIC_FEATURES = "features.per_idea.lifetime"
METRIC_COLLABORATORS = "collaborators.per_idea.lifetime"
METRIC_PUBLIC_IDEAS = "publicIdeas.per_user.lifetime"
METRIC_JOIN_REQUESTS = "joinRequests.per_idea.per_viewer.cooldownDays"
METRIC_MUTATIONS = "mutations.per_user.daily"

WARN_RATIO_DEFAULT = 0.8

PERIOD_LIFETIME = "lifetime"
PERIOD_DAILY = "daily"
PERIOD_MONTHLY = "monthly"
PERIOD_COOLDOWN = "cooldown"

_METRIC_DEFINITIONS: dict[str, MetricDefinition] = {
    definition.metric: definition
    for definition in (
        MetricDefinition(
            metric=METRIC_IDEAS,
            scope="user",
            period=PERIOD_LIFETIME,
            warn_ratio=WARN_RATIO_DEFAULT,
            label="Ideas created",
            description="Total ideas drafted across all time.",
            period_label="Lifetime",
        ),
        MetricDefinition(
            metric=METRIC_FEATURES,
            scope="idea",
            period=PERIOD_LIFETIME,
            warn_ratio=WARN_RATIO_DEFAULT,
            label="Features per idea",
            description="Tracked per idea.",
            period_label="Lifetime",
        ),
        MetricDefinition(
            metric=METRIC_COLLABORATORS,
            scope="idea",
            period=PERIOD_LIFETIME,
            warn_ratio=WARN_RATIO_DEFAULT,
            label="Collaborators per idea",
            description="Tracked per idea.",
            period_label="Lifetime",
        ),
        MetricDefinition(
            metric=METRIC_PUBLIC_IDEAS,
            scope="user",
            period=PERIOD_LIFETIME,
            warn_ratio=WARN_RATIO_DEFAULT,
            label="Public ideas",
            description="Ideas shared publicly.",
            period_label="Lifetime",
        ),
        MetricDefinition(
            metric=METRIC_JOIN_REQUESTS,
            scope="idea",
            period=PERIOD_COOLDOWN,
            supports_counters=False,
            label="Join requests",
            description="Cooldown in days between join requests per idea and viewer.",
            period_label="Cooldown",
        ),
        MetricDefinition(
            metric=METRIC_MUTATIONS,
            scope="user",
            period=PERIOD_DAILY,
            warn_ratio=WARN_RATIO_DEFAULT,
            label="Mutations executed",
            description="Server mutations triggered today.",
            period_label="Today",
        ),
    )
}


@dataclass(frozen=True)
class PlanTemplate:
    # Built-in plan catalogue entry used for seeding and limit fallbacks.
    id: str
    name: str
    description: str
    limits: dict[str, int]


PLAN_CATALOGUE: dict[str, PlanTemplate] = {
    "free": PlanTemplate(
        id="free",
        name="Free",
        description="Starter limits for individual makers.",
        limits={
            METRIC_IDEAS: 5,
            METRIC_FEATURES: 50,
            METRIC_COLLABORATORS: 3,
            METRIC_PUBLIC_IDEAS: 1,
            METRIC_JOIN_REQUESTS: 7,
            METRIC_MUTATIONS: 500,
        },
    ),
    "pro": PlanTemplate(
        id="pro",
        name="Pro",
        description="Higher limits for active builders.",
        limits={
            METRIC_IDEAS: 50,
            METRIC_FEATURES: 500,
            METRIC_COLLABORATORS: 10,
            METRIC_PUBLIC_IDEAS: 10,
            METRIC_JOIN_REQUESTS: 3,
            METRIC_MUTATIONS: 5_000,
        },
    ),
    "team": PlanTemplate(
        id="team",
        name="Team",
        description="Shared workspaces with generous limits.",
        limits={
            METRIC_IDEAS: 500,
            METRIC_FEATURES: 5_000,
            METRIC_COLLABORATORS: 50,
            METRIC_PUBLIC_IDEAS: 100,
            METRIC_JOIN_REQUESTS: 1,
            METRIC_MUTATIONS: 25_000,
        },
    ),
}


def get_metric_definition(metric: str) -> MetricDefinition:
    definition = _METRIC_DEFINITIONS.get(metric)
    if definition is None:
        raise UnknownMetricError(metric)
    return definition


def list_metric_definitions() -> list[MetricDefinition]:
    return list(_METRIC_DEFINITIONS.values())


def _read_numeric(features: Any, metric: str) -> int | None:
    # Limits count whole actions; ignore fractional, non-numeric and non-finite entries.
    if not isinstance(features, dict):
        return None
    value = features.get(metric)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        if not value.is_integer():
            logger.warning("plan_limit_ignored metric=%s value=%s reason=fractional", metric, value)
            return None
        return int(value)
    return value


def get_plan_limit(plan: Plan | None, metric: str) -> float | int:
    """Return the plan's limit for a metric, or math.inf when unset.

    Explicit plan features win; built-in plans fall back to the catalogue
    values for their id. Any other gap means the metric is unlimited.
    """
    if plan is None:
        return math.inf
    value = _read_numeric(plan.features, metric)
    if value is not None:
        return value
    template = PLAN_CATALOGUE.get(plan.id)
    if template is not None and metric in template.limits:
        return template.limits[metric]
    return math.inf


def compute_warn_threshold(limit: float | int, warn_ratio: float | None = None) -> int | None:
    if not math.isfinite(limit) or limit <= 0:
        return None
    ratio = warn_ratio if warn_ratio is not None else get_settings().limits_default_warn_ratio
    return math.floor(limit * ratio)


def resolve_mode(next_count: int, limit: float | int, warn_threshold: int | None) -> str:
    # A zero threshold never warns.
    if not math.isfinite(limit):
        return "unlimited"
    if next_count > limit:
        return "blocked"
    if warn_threshold and next_count >= warn_threshold:
        return "warn"
    return "ok"


_PERIOD_KEY_RESOLVERS: dict[str, Callable[[datetime], str]] = {
    PERIOD_LIFETIME: lambda now: "lifetime",
    PERIOD_DAILY: lambda now: now.strftime("%Y-%m-%d"),
    PERIOD_MONTHLY: lambda now: now.strftime("%Y-%m"),
}


def resolve_period_key(definition: MetricDefinition, now: datetime) -> str | None:
    # Keys are derived from UTC wall-clock time; cooldown has no counter window.
    if definition.period == PERIOD_COOLDOWN:
        return None
    resolver = _PERIOD_KEY_RESOLVERS.get(definition.period)
    if resolver is None:
        return None
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return resolver(now)
