from __future__ import annotations

# Re-export limit services for centralized imports.

from limitledger.services.limits.events import LimitEventSummary, get_limit_event_summary, write_limit_event
from limitledger.services.limits.guard import (
    LimitGuard,
    check_and_consume_limit,
    enforce_limit,
    get_limit_guard,
    reset_limit_guard,
)
from limitledger.services.limits.overrides import (
    create_limit_override_request,
    create_manual_limit_override,
    list_limit_overrides,
    list_pending_limit_overrides,
    pick_active_override,
    resolve_limit_override,
)
from limitledger.services.limits.payer import actor_pays, resolve_payer, workspace_covers
from limitledger.services.limits.plans import assign_user_plan, ensure_default_plan, ensure_plan_for_user
from limitledger.services.limits.policies import (
    compute_warn_threshold,
    get_metric_definition,
    get_plan_limit,
    list_metric_definitions,
)
from limitledger.services.limits.usage import (
    UserUsageSummary,
    get_usage_counter,
    get_user_usage_summary,
    increment_usage_counter,
)

__all__ = [
    "LimitEventSummary",
    "get_limit_event_summary",
    "write_limit_event",
    "LimitGuard",
    "check_and_consume_limit",
    "enforce_limit",
    "get_limit_guard",
    "reset_limit_guard",
    "create_limit_override_request",
    "create_manual_limit_override",
    "list_limit_overrides",
    "list_pending_limit_overrides",
    "pick_active_override",
    "resolve_limit_override",
    "actor_pays",
    "resolve_payer",
    "workspace_covers",
    "assign_user_plan",
    "ensure_default_plan",
    "ensure_plan_for_user",
    "compute_warn_threshold",
    "get_metric_definition",
    "get_plan_limit",
    "list_metric_definitions",
    "UserUsageSummary",
    "get_usage_counter",
    "get_user_usage_summary",
    "increment_usage_counter",
]
