from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from limitledger.core.errors import (
    CreditPurchaseNotFoundError,
    CreditPurchasePayerMismatchError,
    InvalidCreditAmountError,
    InvalidCreditPurchaseStatusError,
)
from limitledger.domain.credits import (
    CREDIT_PURCHASE_STATUSES,
    CompleteCreditPurchaseResult,
    CreditPayer,
)
from limitledger.domain.models import CreditPurchase
from limitledger.persistence.db import transaction
from limitledger.services.credits.ledger import (
    ZERO,
    apply_credit_adjustment,
    jsonable,
    read_credit_balance,
    to_credit_amount,
)
from limitledger.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _payer_of(purchase: CreditPurchase) -> CreditPayer:
    return CreditPayer(type=purchase.payer_type, id=purchase.payer_id)  # type: ignore[arg-type]


async def create_credit_purchase(
    session: AsyncSession,
    *,
    payer: CreditPayer,
    credits: Decimal | int | float | str,
    amount_usd: Decimal | int | float | str,
    provider: str,
    provider_reference: str | None = None,
    initiated_by: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> CreditPurchase:
    # Record a pending top-up; no balance change until completion.
    credit_amount = to_credit_amount(credits)
    if credit_amount <= ZERO:
        raise InvalidCreditAmountError("Credits purchased must be a positive number.")
    usd = to_credit_amount(amount_usd)
    if usd < ZERO:
        raise InvalidCreditAmountError("Purchase amount must be a non-negative number.")

    now = _utc_now()
    purchase = CreditPurchase(
        id=uuid4().hex,
        payer_type=payer.type,
        payer_id=payer.id,
        provider=provider,
        provider_reference=provider_reference,
        status="pending",
        credits=credit_amount,
        amount_usd=usd.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP),
        initiated_by=initiated_by,
        metadata_json=jsonable(metadata or {}),
        created_at=now,
        updated_at=now,
    )
    async with transaction(session):
        session.add(purchase)
        await session.flush()
    logger.info(
        "credit_purchase_created purchase_id=%s payer_type=%s payer_id=%s provider=%s credits=%s",
        purchase.id,
        payer.type,
        payer.id,
        provider,
        credit_amount,
    )
    return purchase


async def _lock_purchase(session: AsyncSession, purchase_id: str) -> CreditPurchase | None:
    result = await session.execute(
        select(CreditPurchase)
        .where(CreditPurchase.id == purchase_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_credit_purchase(session: AsyncSession, purchase_id: str) -> CreditPurchase | None:
    result = await session.execute(select(CreditPurchase).where(CreditPurchase.id == purchase_id))
    return result.scalar_one_or_none()


async def find_credit_purchase_by_reference(
    session: AsyncSession,
    *,
    provider: str,
    provider_reference: str,
) -> CreditPurchase | None:
    result = await session.execute(
        select(CreditPurchase)
        .where(
            CreditPurchase.provider == provider,
            CreditPurchase.provider_reference == provider_reference,
        )
        .order_by(CreditPurchase.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def update_credit_purchase_status(
    session: AsyncSession,
    *,
    purchase_id: str,
    status: str,
    failure_reason: str | None = None,
    provider_reference: str | None = None,
) -> CreditPurchase:
    """Mark a purchase pending, failed or canceled without touching balances.

    Completion only happens through complete_credit_purchase, which credits the
    payer in the same transaction. A completed purchase is terminal: later
    status changes leave it as is.
    """
    if status not in CREDIT_PURCHASE_STATUSES:
        raise InvalidCreditPurchaseStatusError(f"Unknown purchase status: {status}")
    if status == "completed":
        raise InvalidCreditPurchaseStatusError(
            "Purchases are completed through complete_credit_purchase so the payer is credited."
        )
    async with transaction(session):
        purchase = await _lock_purchase(session, purchase_id)
        if purchase is None:
            raise CreditPurchaseNotFoundError(f"Credit purchase {purchase_id} not found")
        if purchase.status == "completed":
            logger.warning(
                "credit_purchase_status_ignored purchase_id=%s status=%s current=completed",
                purchase_id,
                status,
            )
            return purchase
        now = _utc_now()
        purchase.status = status
        purchase.updated_at = now
        if provider_reference is not None:
            purchase.provider_reference = provider_reference
        if status == "failed":
            purchase.failed_at = now
            purchase.failure_reason = failure_reason
        await session.flush()
    logger.info("credit_purchase_status_updated purchase_id=%s status=%s", purchase_id, status)
    return purchase


async def complete_credit_purchase(
    session: AsyncSession,
    *,
    purchase_id: str,
    provider_reference: str | None = None,
    reference_credits: Decimal | int | float | None = None,
    metadata: dict[str, Any] | None = None,
    triggered_by: str | None = None,
    expected_payer: CreditPayer | None = None,
) -> CompleteCreditPurchaseResult | None:
    """Credit a purchase exactly once.

    The purchase row is locked for the whole call, so concurrent deliveries
    for the same purchase serialize and only the first one writes a ledger
    entry. Already completed, failed or canceled purchases return the current
    balance unchanged. Returns None when the purchase does not exist.
    """
    async with transaction(session):
        purchase = await _lock_purchase(session, purchase_id)
        if purchase is None:
            return None
        payer = _payer_of(purchase)
        if expected_payer is not None and (
            purchase.payer_type != expected_payer.type or purchase.payer_id != expected_payer.id
        ):
            raise CreditPurchasePayerMismatchError("Credit purchase does not belong to the expected payer.")

        if purchase.status in ("failed", "canceled", "completed"):
            balance = await read_credit_balance(session, payer)
            result = CompleteCreditPurchaseResult(purchase=purchase, balance=balance)
        else:
            credits = (
                to_credit_amount(reference_credits)
                if reference_credits is not None
                else to_credit_amount(purchase.credits)
            )
            if credits <= ZERO:
                raise InvalidCreditAmountError("Completed credit purchase must grant a positive number of credits.")

            now = _utc_now()
            merged_metadata = {**(purchase.metadata_json or {}), **jsonable(metadata or {})}
            adjustment = await apply_credit_adjustment(
                session,
                payer=payer,
                delta=credits,
                entry_type="purchase",
                reference_id=purchase.id,
                source=purchase.provider,
                metadata={**merged_metadata, "purchase_id": purchase.id},
                created_by=triggered_by or purchase.initiated_by,
                # Top-ups must never be blocked by the negative guard.
                allow_negative=True,
                occurred_at=now,
            )
            purchase.status = "completed"
            purchase.credits = credits
            purchase.provider_reference = provider_reference or purchase.provider_reference
            purchase.metadata_json = merged_metadata
            purchase.completed_at = now
            purchase.updated_at = now
            await session.flush()
            increment_counter("credits.purchase.completed")
            logger.info(
                "credit_purchase_completed purchase_id=%s payer_type=%s payer_id=%s credits=%s",
                purchase.id,
                payer.type,
                payer.id,
                credits,
            )
            result = CompleteCreditPurchaseResult(purchase=purchase, balance=adjustment.balance)
    return result
