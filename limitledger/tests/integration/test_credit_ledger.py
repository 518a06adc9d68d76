from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import func, select

from limitledger.core.errors import InsufficientBalanceError, InvalidCreditAmountError
from limitledger.domain.credits import CreditPayer
from limitledger.domain.models import CreditLedgerEntry, CreditPurchase
from limitledger.services.credits import (
    adjust_credit_balance,
    calculate_usd_amount_for_credits,
    charge_credits,
    get_credit_balance,
    list_credit_balances,
    list_ledger_entries,
    update_auto_top_up_settings,
)


PAYER = CreditPayer(type="user", id="u1")


async def _entry_count(session, payer: CreditPayer = PAYER) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(CreditLedgerEntry)
        .where(CreditLedgerEntry.payer_type == payer.type, CreditLedgerEntry.payer_id == payer.id)
    )
    return int(result.scalar_one())


@pytest.mark.asyncio
async def test_first_read_creates_zero_balance(session) -> None:
    balance = await get_credit_balance(session, PAYER)

    assert balance.available == Decimal("0")
    assert balance.on_hold == Decimal("0")
    assert balance.auto_top_up_enabled is False
    assert [item.payer for item in await list_credit_balances(session)] == [PAYER]


@pytest.mark.asyncio
async def test_balance_equals_sum_of_ledger_deltas(session) -> None:
    await adjust_credit_balance(session, payer=PAYER, delta=25, entry_type="adjustment", created_by="admin")
    await adjust_credit_balance(session, payer=PAYER, delta="-7.5", entry_type="usage")
    result = await adjust_credit_balance(session, payer=PAYER, delta=Decimal("0.25"), entry_type="refund")

    entries = await list_ledger_entries(session, payer=PAYER)
    total = sum((Decimal(entry.delta) for entry in entries), Decimal("0"))

    assert result.balance.available == Decimal("17.75")
    assert total == result.balance.available
    assert result.entry.balance_after == result.balance.available
    assert len(entries) == 3


@pytest.mark.asyncio
async def test_insufficient_balance_writes_nothing(session) -> None:
    await adjust_credit_balance(session, payer=PAYER, delta=10, entry_type="adjustment")

    with pytest.raises(InsufficientBalanceError) as excinfo:
        await adjust_credit_balance(session, payer=PAYER, delta=-15, entry_type="usage")

    assert excinfo.value.balance.available == Decimal("10")
    assert (await get_credit_balance(session, PAYER)).available == Decimal("10")
    assert await _entry_count(session) == 1


@pytest.mark.asyncio
async def test_allow_negative_permits_debt(session) -> None:
    result = await adjust_credit_balance(
        session,
        payer=PAYER,
        delta=-4,
        entry_type="usage",
        allow_negative=True,
    )
    assert result.balance.available == Decimal("-4")


@pytest.mark.asyncio
@pytest.mark.parametrize("delta", [0, "nan", "inf"])
async def test_zero_or_non_finite_delta_is_rejected(session, delta) -> None:
    with pytest.raises(InvalidCreditAmountError):
        await adjust_credit_balance(session, payer=PAYER, delta=delta, entry_type="adjustment")
    assert await _entry_count(session) == 0


@pytest.mark.asyncio
async def test_unknown_entry_type_is_rejected(session) -> None:
    with pytest.raises(InvalidCreditAmountError):
        await adjust_credit_balance(session, payer=PAYER, delta=5, entry_type="gift")


@pytest.mark.asyncio
async def test_charge_records_usage_entry(session) -> None:
    await adjust_credit_balance(session, payer=PAYER, delta=5, entry_type="adjustment")

    result = await charge_credits(session, payer=PAYER, amount=2, source="features.per_idea.lifetime")

    assert result.balance.available == Decimal("3")
    assert result.entry.entry_type == "usage"
    assert result.entry.delta == Decimal("-2")
    assert result.entry.metadata_json["charge_amount"] == 2.0


@pytest.mark.asyncio
async def test_charge_rejects_non_positive_amount(session) -> None:
    with pytest.raises(InvalidCreditAmountError):
        await charge_credits(session, payer=PAYER, amount=0)


@pytest.mark.asyncio
async def test_auto_top_up_covers_short_charge(session) -> None:
    await update_auto_top_up_settings(
        session,
        payer=PAYER,
        enabled=True,
        credits=100,
        threshold=5,
        payment_method_id="pm_test",
    )

    result = await charge_credits(session, payer=PAYER, amount=20, created_by="u1")

    assert result.balance.available == Decimal("80")
    entries = await list_ledger_entries(session, payer=PAYER)
    assert sorted(entry.entry_type for entry in entries) == ["purchase", "usage"]
    purchases = (await session.execute(select(CreditPurchase))).scalars().all()
    assert len(purchases) == 1
    assert purchases[0].status == "completed"
    assert purchases[0].provider == "auto_top_up"
    assert purchases[0].amount_usd == Decimal("5.00")


@pytest.mark.asyncio
async def test_auto_top_up_buys_at_least_the_shortfall(session) -> None:
    await update_auto_top_up_settings(
        session,
        payer=PAYER,
        enabled=True,
        credits=10,
        payment_method_id="pm_test",
    )

    result = await charge_credits(session, payer=PAYER, amount=30)

    assert result.balance.available == Decimal("0")


@pytest.mark.asyncio
async def test_auto_top_up_without_payment_method_does_not_fire(session) -> None:
    await update_auto_top_up_settings(session, payer=PAYER, enabled=True, credits=100)

    with pytest.raises(InsufficientBalanceError):
        await charge_credits(session, payer=PAYER, amount=1)

    assert await _entry_count(session) == 0


@pytest.mark.asyncio
async def test_disabling_auto_top_up_clears_payment_method(session) -> None:
    await update_auto_top_up_settings(session, payer=PAYER, enabled=True, credits=50, payment_method_id="pm_1")

    balance = await update_auto_top_up_settings(session, payer=PAYER, enabled=False)

    assert balance.auto_top_up_enabled is False
    assert balance.auto_top_up_payment_method_id is None
    assert balance.auto_top_up_credits == Decimal("50")


def test_usd_amount_uses_configured_price() -> None:
    assert calculate_usd_amount_for_credits(100) == Decimal("5.00")
    assert calculate_usd_amount_for_credits(-3) == Decimal("0.00")
