from __future__ import annotations

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from limitledger.apps.api.deps import get_db, require_actor
from limitledger.apps.api.response import ERROR_RESPONSES, SuccessEnvelope, success_response
from limitledger.apps.api.routes.limits_admin import LimitOverrideResponse, override_payload
from limitledger.services.audit import get_request_id, record_event
from limitledger.services.limits import create_limit_override_request


router = APIRouter(prefix="/limits", tags=["limits"], responses=ERROR_RESPONSES)


class OverrideRequestBody(BaseModel):
    scope_type: Literal["user", "idea", "org"]
    scope_id: str = Field(min_length=1)
    metric: str = Field(min_length=1)
    limit_value: int = Field(ge=0)
    plan_id: str | None = None
    expires_at: datetime | None = None
    reason: str | None = Field(default=None, max_length=2000)

    model_config = {"extra": "forbid"}


@router.post(
    "/overrides/requests",
    status_code=201,
    response_model=SuccessEnvelope[LimitOverrideResponse] | LimitOverrideResponse,
)
async def request_override(
    payload: OverrideRequestBody,
    request: Request,
    actor_id: str = Depends(require_actor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Requests land as pending; an admin approves or rejects them later.
    override = await create_limit_override_request(
        db,
        scope_type=payload.scope_type,
        scope_id=payload.scope_id,
        metric=payload.metric,
        limit_value=payload.limit_value,
        plan_id=payload.plan_id,
        expires_at=payload.expires_at,
        reason=payload.reason,
        created_by=actor_id,
    )
    await record_event(
        session=db,
        actor_type="user",
        actor_id=actor_id,
        event_type="limits.override.requested",
        outcome="success",
        resource_type="limit_override",
        resource_id=override.id,
        request_id=get_request_id(request),
        metadata={"scope_type": override.scope_type, "scope_id": override.scope_id, "metric": override.metric},
    )
    return success_response(request=request, data=override_payload(override))
