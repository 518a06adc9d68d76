from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from limitledger.apps.api.deps import get_db, require_admin
from limitledger.apps.api.response import ERROR_RESPONSES, SuccessEnvelope, success_response
from limitledger.core.config import get_settings
from limitledger.core.errors import PlanNotFoundError
from limitledger.domain.models import LimitOverride, Plan
from limitledger.services.audit import get_request_id, record_event
from limitledger.services.limits import (
    create_manual_limit_override,
    get_limit_event_summary,
    get_user_usage_summary,
    list_pending_limit_overrides,
    resolve_limit_override,
)
from limitledger.services.limits.plans import get_plan, list_plans


router = APIRouter(prefix="/admin/limits", tags=["limits"], responses=ERROR_RESPONSES)


class LimitOverrideResponse(BaseModel):
    id: str
    scope_type: str
    scope_id: str
    metric: str
    limit_value: int
    plan_id: str | None
    expires_at: str | None
    reason: str | None
    created_by: str | None
    status: str
    resolved_at: str | None
    resolved_by: str | None
    resolution_note: str | None
    created_at: str | None


class LimitOverrideListResponse(BaseModel):
    items: list[LimitOverrideResponse]


class ManualOverrideRequest(BaseModel):
    scope_type: Literal["user", "idea", "org"]
    scope_id: str = Field(min_length=1)
    metric: str = Field(min_length=1)
    limit_value: int = Field(gt=0)
    status: Literal["approved", "rejected"] = "approved"
    plan_id: str | None = None
    expires_at: datetime | None = None
    reason: str | None = None
    resolution_note: str | None = None

    model_config = {"extra": "forbid"}


class ResolveOverrideRequest(BaseModel):
    status: Literal["approved", "rejected"]
    limit_value: int | None = Field(default=None, ge=0)
    expires_at: datetime | None = None
    reason: str | None = None
    plan_id: str | None = None
    resolution_note: str | None = None

    model_config = {"extra": "forbid"}


class PlanResponse(BaseModel):
    id: str
    name: str
    description: str | None
    is_default: bool
    features: dict[str, Any]


class PlanListResponse(BaseModel):
    items: list[PlanResponse]


class LimitEventSummaryResponse(BaseModel):
    items: list[dict[str, Any]]


class UsageSummaryResponse(BaseModel):
    user_id: str
    plan: dict[str, Any]
    metrics: list[dict[str, Any]]


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def override_payload(row: LimitOverride) -> LimitOverrideResponse:
    return LimitOverrideResponse(
        id=row.id,
        scope_type=row.scope_type,
        scope_id=row.scope_id,
        metric=row.metric,
        limit_value=int(row.limit_value),
        plan_id=row.plan_id,
        expires_at=_iso(row.expires_at),
        reason=row.reason,
        created_by=row.created_by,
        status=row.status,
        resolved_at=_iso(row.resolved_at),
        resolved_by=row.resolved_by,
        resolution_note=row.resolution_note,
        created_at=_iso(row.created_at),
    )


def _plan_payload(plan: Plan) -> PlanResponse:
    return PlanResponse(
        id=plan.id,
        name=plan.name,
        description=plan.description,
        is_default=bool(plan.is_default),
        features=dict(plan.features or {}),
    )


@router.get(
    "/overrides/pending",
    response_model=SuccessEnvelope[LimitOverrideListResponse] | LimitOverrideListResponse,
)
async def list_pending_overrides(
    request: Request,
    limit: int | None = Query(default=None, ge=1, le=1000),
    admin_id: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    page_size = limit or get_settings().limit_override_pending_page_size
    rows = await list_pending_limit_overrides(db, limit=page_size)
    payload = LimitOverrideListResponse(items=[override_payload(row) for row in rows])
    return success_response(request=request, data=payload)


@router.post(
    "/overrides",
    status_code=201,
    response_model=SuccessEnvelope[LimitOverrideResponse] | LimitOverrideResponse,
)
async def create_override(
    payload: ManualOverrideRequest,
    request: Request,
    admin_id: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    override = await create_manual_limit_override(
        db,
        scope_type=payload.scope_type,
        scope_id=payload.scope_id,
        metric=payload.metric,
        limit_value=payload.limit_value,
        created_by=admin_id,
        status=payload.status,
        plan_id=payload.plan_id,
        expires_at=payload.expires_at,
        reason=payload.reason,
        resolution_note=payload.resolution_note,
    )
    await record_event(
        session=db,
        actor_type="admin",
        actor_id=admin_id,
        event_type="limits.override.created",
        outcome="success",
        resource_type="limit_override",
        resource_id=override.id,
        request_id=get_request_id(request),
        metadata={
            "scope_type": override.scope_type,
            "scope_id": override.scope_id,
            "metric": override.metric,
            "limit_value": override.limit_value,
            "status": override.status,
        },
    )
    return success_response(request=request, data=override_payload(override))


@router.post(
    "/overrides/{override_id}/resolve",
    response_model=SuccessEnvelope[LimitOverrideResponse] | LimitOverrideResponse,
)
async def resolve_override(
    override_id: str,
    payload: ResolveOverrideRequest,
    request: Request,
    admin_id: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Only fields present in the body are applied; explicit nulls clear stored values.
    optional = payload.model_dump(
        include={"expires_at", "reason", "plan_id", "resolution_note"},
        exclude_unset=True,
    )
    override = await resolve_limit_override(
        db,
        override_id,
        status=payload.status,
        resolved_by=admin_id,
        limit_value=payload.limit_value,
        **optional,
    )
    await record_event(
        session=db,
        actor_type="admin",
        actor_id=admin_id,
        event_type="limits.override.resolved",
        outcome="success",
        resource_type="limit_override",
        resource_id=override.id,
        request_id=get_request_id(request),
        metadata={"status": override.status, "limit_value": override.limit_value},
    )
    return success_response(request=request, data=override_payload(override))


@router.get(
    "/events/summary",
    response_model=SuccessEnvelope[LimitEventSummaryResponse] | LimitEventSummaryResponse,
)
async def limit_events_summary(
    request: Request,
    admin_id: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    summaries = await get_limit_event_summary(db)
    payload = LimitEventSummaryResponse(items=[summary.to_dict() for summary in summaries])
    return success_response(request=request, data=payload)


@router.get(
    "/usage/{user_id}",
    response_model=SuccessEnvelope[UsageSummaryResponse] | UsageSummaryResponse,
)
async def user_usage(
    user_id: str,
    request: Request,
    admin_id: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    summary = (await get_user_usage_summary(db, user_id)).to_dict()
    payload = UsageSummaryResponse(user_id=user_id, plan=summary["plan"], metrics=summary["metrics"])
    return success_response(request=request, data=payload)


@router.get(
    "/plans",
    response_model=SuccessEnvelope[PlanListResponse] | PlanListResponse,
)
async def list_plan_catalogue(
    request: Request,
    admin_id: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    plans = await list_plans(db)
    payload = PlanListResponse(items=[_plan_payload(plan) for plan in plans])
    return success_response(request=request, data=payload)


@router.get(
    "/plans/{plan_id}",
    response_model=SuccessEnvelope[PlanResponse] | PlanResponse,
)
async def get_plan_detail(
    plan_id: str,
    request: Request,
    admin_id: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    plan = await get_plan(db, plan_id)
    if plan is None:
        raise PlanNotFoundError(f"Plan {plan_id} not found")
    return success_response(request=request, data=_plan_payload(plan))
