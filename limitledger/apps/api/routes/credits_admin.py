from __future__ import annotations

from decimal import Decimal
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from limitledger.apps.api.deps import get_db, require_admin
from limitledger.apps.api.response import ERROR_RESPONSES, SuccessEnvelope, success_response
from limitledger.domain.credits import CreditPayer
from limitledger.domain.models import CreditLedgerEntry
from limitledger.services.audit import get_request_id, record_event
from limitledger.services.credits import (
    adjust_credit_balance,
    get_credit_balance,
    list_credit_balances,
    list_ledger_entries,
    update_auto_top_up_settings,
)
from limitledger.services.credits.ledger import as_utc


router = APIRouter(prefix="/admin/credits", tags=["credits"], responses=ERROR_RESPONSES)

PayerTypePath = Literal["user", "workspace"]


class CreditBalanceResponse(BaseModel):
    payer_type: str
    payer_id: str
    available: float
    on_hold: float
    auto_top_up_enabled: bool
    auto_top_up_credits: float
    auto_top_up_threshold: float
    auto_top_up_payment_method_id: str | None
    updated_at: str | None


class CreditBalanceListResponse(BaseModel):
    items: list[CreditBalanceResponse]


class LedgerEntryResponse(BaseModel):
    id: str
    entry_type: str
    delta: float
    balance_after: float
    reference_id: str | None
    source: str | None
    metadata: dict[str, Any]
    created_by: str | None
    occurred_at: str | None
    created_at: str | None


class LedgerEntryListResponse(BaseModel):
    items: list[LedgerEntryResponse]


class GrantCreditsRequest(BaseModel):
    # Positive amounts grant credits; negative amounts claw them back.
    amount: Decimal
    reason: str | None = Field(default=None, max_length=2000)
    reference_id: str | None = None
    allow_negative: bool = False

    model_config = {"extra": "forbid"}


class GrantCreditsResponse(BaseModel):
    balance: CreditBalanceResponse
    entry: LedgerEntryResponse


class AutoTopUpRequest(BaseModel):
    enabled: bool
    credits: Decimal | None = Field(default=None, ge=0)
    threshold: Decimal | None = Field(default=None, ge=0)
    payment_method_id: str | None = None

    model_config = {"extra": "forbid"}


def _entry_payload(entry: CreditLedgerEntry) -> LedgerEntryResponse:
    occurred_at = as_utc(entry.occurred_at)
    created_at = as_utc(entry.created_at)
    return LedgerEntryResponse(
        id=entry.id,
        entry_type=entry.entry_type,
        delta=float(entry.delta),
        balance_after=float(entry.balance_after),
        reference_id=entry.reference_id,
        source=entry.source,
        metadata=entry.metadata_json or {},
        created_by=entry.created_by,
        occurred_at=occurred_at.isoformat() if occurred_at else None,
        created_at=created_at.isoformat() if created_at else None,
    )


@router.get(
    "/balances",
    response_model=SuccessEnvelope[CreditBalanceListResponse] | CreditBalanceListResponse,
)
async def list_balances(
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000),
    admin_id: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    balances = await list_credit_balances(db, limit=limit)
    payload = CreditBalanceListResponse(
        items=[CreditBalanceResponse(**balance.to_dict()) for balance in balances]
    )
    return success_response(request=request, data=payload)


@router.get(
    "/{payer_type}/{payer_id}",
    response_model=SuccessEnvelope[CreditBalanceResponse] | CreditBalanceResponse,
)
async def get_balance(
    payer_type: PayerTypePath,
    payer_id: str,
    request: Request,
    admin_id: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    balance = await get_credit_balance(db, CreditPayer(type=payer_type, id=payer_id))
    return success_response(request=request, data=CreditBalanceResponse(**balance.to_dict()))


@router.post(
    "/{payer_type}/{payer_id}",
    response_model=SuccessEnvelope[GrantCreditsResponse] | GrantCreditsResponse,
)
async def grant_credits(
    payer_type: PayerTypePath,
    payer_id: str,
    payload: GrantCreditsRequest,
    request: Request,
    admin_id: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    payer = CreditPayer(type=payer_type, id=payer_id)
    # Manual clawbacks are recorded as usage so ledger totals reconcile against spend.
    entry_type = "adjustment" if payload.amount > 0 else "usage"
    result = await adjust_credit_balance(
        db,
        payer=payer,
        delta=payload.amount,
        entry_type=entry_type,
        reference_id=payload.reference_id,
        source="admin",
        metadata={"reason": payload.reason} if payload.reason else {},
        created_by=admin_id,
        allow_negative=payload.allow_negative,
    )
    await record_event(
        session=db,
        actor_type="admin",
        actor_id=admin_id,
        event_type="credits.balance.adjusted",
        outcome="success",
        resource_type="credit_balance",
        resource_id=f"{payer.type}:{payer.id}",
        request_id=get_request_id(request),
        metadata={
            "delta": float(result.entry.delta),
            "entry_type": entry_type,
            "balance_after": float(result.balance.available),
            "reason": payload.reason,
        },
    )
    data = GrantCreditsResponse(
        balance=CreditBalanceResponse(**result.balance.to_dict()),
        entry=_entry_payload(result.entry),
    )
    return success_response(request=request, data=data)


@router.get(
    "/{payer_type}/{payer_id}/ledger",
    response_model=SuccessEnvelope[LedgerEntryListResponse] | LedgerEntryListResponse,
)
async def get_ledger(
    payer_type: PayerTypePath,
    payer_id: str,
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000),
    admin_id: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    entries = await list_ledger_entries(db, payer=CreditPayer(type=payer_type, id=payer_id), limit=limit)
    payload = LedgerEntryListResponse(items=[_entry_payload(entry) for entry in entries])
    return success_response(request=request, data=payload)


@router.put(
    "/{payer_type}/{payer_id}/auto-top-up",
    response_model=SuccessEnvelope[CreditBalanceResponse] | CreditBalanceResponse,
)
async def put_auto_top_up(
    payer_type: PayerTypePath,
    payer_id: str,
    payload: AutoTopUpRequest,
    request: Request,
    admin_id: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    payer = CreditPayer(type=payer_type, id=payer_id)
    balance = await update_auto_top_up_settings(
        db,
        payer=payer,
        enabled=payload.enabled,
        credits=payload.credits,
        threshold=payload.threshold,
        payment_method_id=payload.payment_method_id,
    )
    await record_event(
        session=db,
        actor_type="admin",
        actor_id=admin_id,
        event_type="credits.auto_top_up.updated",
        outcome="success",
        resource_type="credit_balance",
        resource_id=f"{payer.type}:{payer.id}",
        request_id=get_request_id(request),
        metadata={
            "enabled": balance.auto_top_up_enabled,
            "credits": float(balance.auto_top_up_credits),
            "threshold": float(balance.auto_top_up_threshold),
        },
    )
    return success_response(request=request, data=CreditBalanceResponse(**balance.to_dict()))
