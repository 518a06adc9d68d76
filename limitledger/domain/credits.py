from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Literal

from limitledger.domain.models import CreditLedgerEntry, CreditPurchase


CreditPayerType = Literal["user", "workspace"]
CreditLedgerEntryType = Literal["purchase", "debit", "refund", "adjustment", "top_up", "usage"]
CreditPurchaseStatus = Literal["pending", "completed", "failed", "canceled"]

CREDIT_LEDGER_ENTRY_TYPES: tuple[str, ...] = ("purchase", "debit", "refund", "adjustment", "top_up", "usage")
CREDIT_PURCHASE_STATUSES: tuple[str, ...] = ("pending", "completed", "failed", "canceled")


@dataclass(frozen=True)
class CreditPayer:
    # Identify whose balance a mutation applies to.
    type: CreditPayerType
    id: str


@dataclass(frozen=True)
class CreditBalanceSummary:
    # Snapshot of a balance row detached from the session.
    payer: CreditPayer
    available: Decimal
    on_hold: Decimal
    auto_top_up_enabled: bool
    auto_top_up_credits: Decimal
    auto_top_up_threshold: Decimal
    auto_top_up_payment_method_id: str | None
    updated_at: datetime | None

    def to_dict(self) -> dict:
        return {
            "payer_type": self.payer.type,
            "payer_id": self.payer.id,
            "available": float(self.available),
            "on_hold": float(self.on_hold),
            "auto_top_up_enabled": self.auto_top_up_enabled,
            "auto_top_up_credits": float(self.auto_top_up_credits),
            "auto_top_up_threshold": float(self.auto_top_up_threshold),
            "auto_top_up_payment_method_id": self.auto_top_up_payment_method_id,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class AdjustCreditBalanceResult:
    balance: CreditBalanceSummary
    entry: CreditLedgerEntry


@dataclass(frozen=True)
class CompleteCreditPurchaseResult:
    purchase: CreditPurchase
    balance: CreditBalanceSummary
