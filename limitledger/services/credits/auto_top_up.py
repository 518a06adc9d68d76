from __future__ import annotations

from decimal import Decimal
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from limitledger.core.config import get_settings
from limitledger.domain.credits import CompleteCreditPurchaseResult, CreditBalanceSummary, CreditPayer
from limitledger.services.credits.ledger import ZERO, calculate_usd_amount_for_credits, to_credit_amount
from limitledger.services.credits.purchases import complete_credit_purchase, create_credit_purchase
from limitledger.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


async def maybe_trigger_auto_top_up(
    session: AsyncSession,
    *,
    payer: CreditPayer,
    balance: CreditBalanceSummary,
    required_amount: Decimal | int | float,
    source: str | None = None,
    initiated_by: str | None = None,
) -> CompleteCreditPurchaseResult | None:
    """Buy and immediately complete a top-up for a payer that ran short.

    Runs inline with no retries. Returns None unless auto top-up is enabled
    and a payment method is stored for the payer.
    """
    if not balance.auto_top_up_enabled:
        return None
    if not balance.auto_top_up_payment_method_id:
        return None

    required = to_credit_amount(required_amount)
    credits_to_purchase = max(balance.auto_top_up_credits or ZERO, required)
    if credits_to_purchase <= ZERO:
        return None

    provider = get_settings().auto_top_up_provider
    purchase = await create_credit_purchase(
        session,
        payer=payer,
        credits=credits_to_purchase,
        amount_usd=calculate_usd_amount_for_credits(credits_to_purchase),
        provider=provider,
        provider_reference=balance.auto_top_up_payment_method_id,
        initiated_by=initiated_by,
        metadata={
            "trigger": "auto_top_up",
            "source": source,
            "threshold": balance.auto_top_up_threshold,
            "available_before": balance.available,
        },
    )
    result = await complete_credit_purchase(
        session,
        purchase_id=purchase.id,
        provider_reference=balance.auto_top_up_payment_method_id,
        triggered_by=initiated_by,
        expected_payer=payer,
    )
    increment_counter("credits.auto_top_up.triggered")
    logger.info(
        "credit_auto_top_up_triggered payer_type=%s payer_id=%s purchase_id=%s credits=%s",
        payer.type,
        payer.id,
        purchase.id,
        credits_to_purchase,
    )
    return result
