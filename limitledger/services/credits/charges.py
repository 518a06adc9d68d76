from __future__ import annotations

from decimal import Decimal
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from limitledger.core.errors import InsufficientBalanceError, InvalidCreditAmountError
from limitledger.domain.credits import AdjustCreditBalanceResult, CreditPayer
from limitledger.services.credits.auto_top_up import maybe_trigger_auto_top_up
from limitledger.services.credits.ledger import ZERO, adjust_credit_balance, to_credit_amount


logger = logging.getLogger(__name__)


async def charge_credits(
    session: AsyncSession,
    *,
    payer: CreditPayer,
    amount: Decimal | int | float | str,
    source: str | None = None,
    reference_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    created_by: str | None = None,
    allow_negative: bool = False,
    trigger_auto_top_up: bool = True,
) -> AdjustCreditBalanceResult:
    """Debit a payer as a usage entry.

    On insufficient balance, and only when trigger_auto_top_up is set, one
    auto top-up cycle runs and the debit is retried once without top-up.
    """
    charge = to_credit_amount(amount)
    if charge <= ZERO:
        raise InvalidCreditAmountError("Credit charge amount must be a positive number.")

    async def _debit() -> AdjustCreditBalanceResult:
        return await adjust_credit_balance(
            session,
            payer=payer,
            delta=-charge,
            entry_type="usage",
            reference_id=reference_id,
            source=source,
            metadata={**(metadata or {}), "charge_amount": charge},
            created_by=created_by,
            allow_negative=allow_negative,
        )

    try:
        return await _debit()
    except InsufficientBalanceError as exc:
        if not trigger_auto_top_up:
            raise
        top_up = await maybe_trigger_auto_top_up(
            session,
            payer=payer,
            balance=exc.balance,
            required_amount=charge,
            source=source,
            initiated_by=created_by,
        )
        if top_up is None:
            raise

    logger.info(
        "credit_charge_retry_after_top_up payer_type=%s payer_id=%s amount=%s",
        payer.type,
        payer.id,
        charge,
    )
    return await _debit()
