from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from limitledger.core.errors import InsufficientBalanceError, InvalidCreditAmountError, PayerResolutionError
from limitledger.domain.limits import (
    LimitCheckRequest,
    LimitCreditResult,
    LimitPayer,
    LimitPayerResolution,
    PayerStrategy,
)
from limitledger.services.credits.charges import charge_credits
from limitledger.services.credits.ledger import ZERO, to_credit_amount


logger = logging.getLogger(__name__)


def actor_pays(user_id: str, metadata: dict[str, Any] | None = None) -> LimitPayerResolution:
    return LimitPayerResolution(
        primary=LimitPayer(type="user", id=user_id),
        fallback=None,
        strategy=PayerStrategy.ACTOR,
        metadata=dict(metadata or {}),
    )


def workspace_covers(
    workspace_id: str,
    fallback_user_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> LimitPayerResolution:
    # Owner pays first; the acting user covers the rest when given.
    return LimitPayerResolution(
        primary=LimitPayer(type="workspace", id=workspace_id),
        fallback=LimitPayer(type="user", id=fallback_user_id) if fallback_user_id else None,
        strategy=PayerStrategy.SHARED if fallback_user_id else PayerStrategy.WORKSPACE,
        metadata={"workspace_id": workspace_id, **(metadata or {})},
    )


def normalize_payer_resolution(resolution: LimitPayerResolution) -> LimitPayerResolution:
    return LimitPayerResolution(
        primary=resolution.primary,
        fallback=resolution.fallback or None,
        strategy=PayerStrategy(resolution.strategy),
        metadata=dict(resolution.metadata or {}),
    )


def resolve_payer(request: LimitCheckRequest) -> LimitPayerResolution:
    if request.payer is not None:
        return normalize_payer_resolution(request.payer)
    if request.user_id:
        return actor_pays(request.user_id)
    raise PayerResolutionError(request.metric)


def resolve_credit_charge(
    request: LimitCheckRequest,
    default_payer: LimitPayerResolution,
) -> LimitCreditResult | None:
    # Zero, negative and malformed amounts mean "no charge", not an error.
    if request.credit is None:
        return None
    try:
        amount = to_credit_amount(request.credit.amount)
    except InvalidCreditAmountError:
        return None
    if amount <= ZERO:
        return None
    payer = (
        normalize_payer_resolution(request.credit.payer)
        if request.credit.payer is not None
        else default_payer
    )
    return LimitCreditResult(amount=amount, payer=payer, allow_debt=bool(request.credit.allow_debt))


async def settle_credit_charge(
    session: AsyncSession,
    *,
    request: LimitCheckRequest,
    credit: LimitCreditResult,
    increment: int,
    period_key: str | None,
) -> LimitPayer:
    """Charge the primary payer, then the fallback, and return whoever paid.

    Only the primary may trigger auto top-up. When every candidate is short
    the last InsufficientBalanceError propagates; other errors propagate
    immediately.
    """
    candidates: list[LimitPayer] = [credit.payer.primary]
    if credit.payer.fallback is not None:
        candidates.append(credit.payer.fallback)

    last_error: InsufficientBalanceError | None = None
    for index, candidate in enumerate(candidates):
        try:
            await charge_credits(
                session,
                payer=candidate,
                amount=credit.amount,
                source=request.metric,
                reference_id=request.scope.id,
                metadata={
                    "scope_type": request.scope.type,
                    "scope_id": request.scope.id,
                    "period_key": period_key,
                    "increment": increment,
                    "strategy": credit.payer.strategy.value,
                },
                created_by=request.user_id,
                allow_negative=credit.allow_debt,
                trigger_auto_top_up=index == 0,
            )
            return candidate
        except InsufficientBalanceError as exc:
            logger.info(
                "limit_credit_candidate_short metric=%s payer_type=%s payer_id=%s",
                request.metric,
                candidate.type,
                candidate.id,
            )
            last_error = exc
            continue

    if last_error is not None:
        raise last_error
    raise PayerResolutionError(request.metric)
