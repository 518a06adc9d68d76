from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from limitledger.apps.api.response import ERROR_RESPONSES, SuccessEnvelope, success_response
from limitledger.persistence.db import pool_stats
from limitledger.services.telemetry import counters_snapshot, external_call_stats

router = APIRouter(tags=["health"], responses=ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    db_pool: dict[str, int | None]
    counters: dict[str, int]
    analytics: dict[str, float | int | None]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request) -> dict:
    payload = HealthResponse(
        status="ok",
        db_pool=pool_stats(),
        counters=counters_snapshot(),
        analytics=external_call_stats("analytics.sink"),
    )
    return success_response(request=request, data=payload)
