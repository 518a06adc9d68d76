from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from limitledger.apps.api.deps import get_db
from limitledger.apps.api.response import ERROR_RESPONSES, SuccessEnvelope, success_response
from limitledger.services.billing_events import handle_billing_event, parse_billing_event


router = APIRouter(prefix="/billing", tags=["billing"], responses=ERROR_RESPONSES)


class BillingEventResponse(BaseModel):
    event_id: str
    event_type: str
    status: str
    details: dict[str, Any]


@router.post(
    "/events",
    response_model=SuccessEnvelope[BillingEventResponse] | BillingEventResponse,
)
async def receive_billing_event(
    request: Request,
    x_billing_signature: str | None = Header(default=None, alias="X-Billing-Signature"),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # The signature covers the raw bytes, so read them before any JSON parsing.
    body = await request.body()
    event = parse_billing_event(body, x_billing_signature)
    result = await handle_billing_event(db, event)
    payload = BillingEventResponse(
        event_id=result.event_id,
        event_type=result.event_type,
        status=result.status,
        details=result.details,
    )
    return success_response(request=request, data=payload)
