from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from limitledger.core.config import get_settings
from limitledger.core.errors import InsufficientBalanceError, InvalidCreditAmountError
from limitledger.domain.credits import (
    CREDIT_LEDGER_ENTRY_TYPES,
    AdjustCreditBalanceResult,
    CreditBalanceSummary,
    CreditPayer,
)
from limitledger.domain.models import CreditBalance, CreditLedgerEntry
from limitledger.persistence.db import dialect_insert, transaction
from limitledger.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

ZERO = Decimal("0")
# Rounding slack so float-derived amounts do not trip the negative guard.
NEGATIVE_BALANCE_TOLERANCE = Decimal("-0.000001")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_credit_amount(value: Any) -> Decimal:
    # Normalize ints/floats/strings to a fixed-scale Decimal; reject NaN and infinities.
    if isinstance(value, bool):
        raise InvalidCreditAmountError("Credit amount must be numeric")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidCreditAmountError(f"Invalid credit amount: {value!r}") from exc
    if not amount.is_finite():
        raise InvalidCreditAmountError(f"Credit amount must be finite (got {value!r})")
    exponent = Decimal(1).scaleb(-get_settings().credit_decimals)
    return amount.quantize(exponent, rounding=ROUND_HALF_UP)


def _parse_amount(value: Any) -> Decimal:
    # Stored amounts come back as Decimal (or float on SQLite); missing means zero.
    if value is None:
        return ZERO
    try:
        return to_credit_amount(value)
    except InvalidCreditAmountError:
        return ZERO


def jsonable(value: Any) -> Any:
    # JSON columns cannot hold Decimal or datetime values.
    if isinstance(value, dict):
        return {str(key): jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(item) for item in value]
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo; treat stored naive timestamps as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def summarize_balance(payer: CreditPayer, row: CreditBalance | None) -> CreditBalanceSummary:
    if row is None:
        return CreditBalanceSummary(
            payer=payer,
            available=ZERO,
            on_hold=ZERO,
            auto_top_up_enabled=False,
            auto_top_up_credits=ZERO,
            auto_top_up_threshold=ZERO,
            auto_top_up_payment_method_id=None,
            updated_at=None,
        )
    return CreditBalanceSummary(
        payer=payer,
        available=_parse_amount(row.available_credits),
        on_hold=_parse_amount(row.on_hold_credits),
        auto_top_up_enabled=bool(row.auto_top_up_enabled),
        auto_top_up_credits=_parse_amount(row.auto_top_up_credits),
        auto_top_up_threshold=_parse_amount(row.auto_top_up_threshold),
        auto_top_up_payment_method_id=row.auto_top_up_payment_method_id,
        updated_at=as_utc(row.updated_at),
    )


async def _ensure_balance_row(session: AsyncSession, payer: CreditPayer) -> None:
    stmt = dialect_insert(session, CreditBalance).values(
        payer_type=payer.type,
        payer_id=payer.id,
        available_credits=ZERO,
        on_hold_credits=ZERO,
        auto_top_up_enabled=False,
        auto_top_up_credits=ZERO,
        auto_top_up_threshold=ZERO,
    )
    stmt = stmt.on_conflict_do_nothing(index_elements=[CreditBalance.payer_type, CreditBalance.payer_id])
    await session.execute(stmt)


async def _load_balance_row(
    session: AsyncSession,
    payer: CreditPayer,
    *,
    for_update: bool = False,
) -> CreditBalance | None:
    stmt = select(CreditBalance).where(
        CreditBalance.payer_type == payer.type,
        CreditBalance.payer_id == payer.id,
    )
    if for_update:
        stmt = stmt.with_for_update()
    # Always refresh from the database so a cached instance never masks a concurrent write.
    stmt = stmt.execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def read_credit_balance(session: AsyncSession, payer: CreditPayer) -> CreditBalanceSummary:
    # Caller owns the transaction.
    await _ensure_balance_row(session, payer)
    row = await _load_balance_row(session, payer)
    return summarize_balance(payer, row)


async def get_credit_balance(session: AsyncSession, payer: CreditPayer) -> CreditBalanceSummary:
    # Create the balance row on first read so later locks always find it.
    async with transaction(session):
        summary = await read_credit_balance(session, payer)
    return summary


async def apply_credit_adjustment(
    session: AsyncSession,
    *,
    payer: CreditPayer,
    delta: Decimal,
    entry_type: str,
    reference_id: str | None = None,
    source: str | None = None,
    metadata: dict[str, Any] | None = None,
    created_by: str | None = None,
    allow_negative: bool = False,
    occurred_at: datetime | None = None,
) -> AdjustCreditBalanceResult:
    """Lock the payer's balance row, apply delta, and append one ledger entry.

    Caller owns the transaction. The negative guard is evaluated against the
    locked value; on failure nothing is written and the pre-adjustment
    snapshot travels on the raised InsufficientBalanceError.
    """
    await _ensure_balance_row(session, payer)
    row = await _load_balance_row(session, payer, for_update=True)
    if row is None:
        raise InsufficientBalanceError(summarize_balance(payer, None), "Credit balance row is missing")

    current_available = _parse_amount(row.available_credits)
    new_available = current_available + delta
    if not allow_negative and new_available < NEGATIVE_BALANCE_TOLERANCE:
        increment_counter("credits.insufficient_balance")
        logger.info(
            "credit_adjustment_insufficient payer_type=%s payer_id=%s available=%s delta=%s",
            payer.type,
            payer.id,
            current_available,
            delta,
        )
        raise InsufficientBalanceError(summarize_balance(payer, row))

    now = _utc_now()
    row.available_credits = new_available
    row.updated_at = now
    entry = CreditLedgerEntry(
        id=uuid4().hex,
        payer_type=payer.type,
        payer_id=payer.id,
        entry_type=entry_type,
        delta=delta,
        balance_after=new_available,
        reference_id=reference_id,
        source=source,
        metadata_json=jsonable(metadata or {}),
        created_by=created_by,
        occurred_at=occurred_at or now,
        created_at=now,
    )
    session.add(entry)
    await session.flush()
    return AdjustCreditBalanceResult(balance=summarize_balance(payer, row), entry=entry)


async def adjust_credit_balance(
    session: AsyncSession,
    *,
    payer: CreditPayer,
    delta: Decimal | int | float | str,
    entry_type: str,
    reference_id: str | None = None,
    source: str | None = None,
    metadata: dict[str, Any] | None = None,
    created_by: str | None = None,
    allow_negative: bool = False,
    occurred_at: datetime | None = None,
) -> AdjustCreditBalanceResult:
    # Lock, read, write and ledger insert commit together or not at all.
    amount = to_credit_amount(delta)
    if amount == ZERO:
        raise InvalidCreditAmountError("Credit delta must be a non-zero finite number.")
    if entry_type not in CREDIT_LEDGER_ENTRY_TYPES:
        raise InvalidCreditAmountError(f"Unknown ledger entry type: {entry_type}")

    async with transaction(session):
        result = await apply_credit_adjustment(
            session,
            payer=payer,
            delta=amount,
            entry_type=entry_type,
            reference_id=reference_id,
            source=source,
            metadata=metadata,
            created_by=created_by,
            allow_negative=allow_negative,
            occurred_at=occurred_at,
        )
    increment_counter(f"credits.ledger.{entry_type}")
    logger.info(
        "credit_balance_adjusted payer_type=%s payer_id=%s entry_type=%s delta=%s balance_after=%s",
        payer.type,
        payer.id,
        entry_type,
        amount,
        result.balance.available,
    )
    return result


async def update_auto_top_up_settings(
    session: AsyncSession,
    *,
    payer: CreditPayer,
    enabled: bool,
    credits: Decimal | int | float | None = None,
    threshold: Decimal | int | float | None = None,
    payment_method_id: str | None = None,
) -> CreditBalanceSummary:
    # Omitted values keep their current setting; disabling forgets the payment method.
    async with transaction(session):
        await _ensure_balance_row(session, payer)
        row = await _load_balance_row(session, payer, for_update=True)
        current = summarize_balance(payer, row)
        next_credits = to_credit_amount(credits) if credits is not None else current.auto_top_up_credits
        next_threshold = to_credit_amount(threshold) if threshold is not None else current.auto_top_up_threshold
        next_payment_method = payment_method_id or current.auto_top_up_payment_method_id
        if row is not None:
            row.auto_top_up_enabled = enabled
            row.auto_top_up_credits = max(ZERO, next_credits)
            row.auto_top_up_threshold = max(ZERO, next_threshold)
            row.auto_top_up_payment_method_id = next_payment_method if enabled else None
            row.updated_at = _utc_now()
        await session.flush()
        summary = summarize_balance(payer, row)
    logger.info(
        "credit_auto_top_up_updated payer_type=%s payer_id=%s enabled=%s",
        payer.type,
        payer.id,
        enabled,
    )
    return summary


def calculate_usd_amount_for_credits(credits: Decimal | int | float) -> Decimal:
    # Negative or invalid input prices at zero.
    try:
        value = to_credit_amount(credits)
    except InvalidCreditAmountError:
        return Decimal("0.00")
    if value < ZERO:
        return Decimal("0.00")
    price = Decimal(str(get_settings().credit_price_usd_per_unit))
    return (value * price).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


async def list_ledger_entries(
    session: AsyncSession,
    *,
    payer: CreditPayer,
    limit: int = 100,
) -> list[CreditLedgerEntry]:
    result = await session.execute(
        select(CreditLedgerEntry)
        .where(
            CreditLedgerEntry.payer_type == payer.type,
            CreditLedgerEntry.payer_id == payer.id,
        )
        .order_by(CreditLedgerEntry.created_at.desc(), CreditLedgerEntry.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_credit_balances(session: AsyncSession, *, limit: int = 100) -> list[CreditBalanceSummary]:
    result = await session.execute(
        select(CreditBalance)
        .order_by(CreditBalance.updated_at.desc(), CreditBalance.payer_type.asc(), CreditBalance.payer_id.asc())
        .limit(limit)
    )
    return [
        summarize_balance(CreditPayer(type=row.payer_type, id=row.payer_id), row)  # type: ignore[arg-type]
        for row in result.scalars().all()
    ]
