from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from limitledger.domain.credits import CreditBalanceSummary
    from limitledger.domain.limits import LimitCheckResult


class LimitLedgerError(Exception):
    """Base error for limitledger."""


class UnknownMetricError(LimitLedgerError):
    """Metric key is not registered in the policy table."""

    def __init__(self, metric: str) -> None:
        super().__init__(f"Unknown limit metric: {metric}")
        self.metric = metric


class InvalidIncrementError(LimitLedgerError):
    """Limit increments must be positive."""

    def __init__(self, metric: str, increment: int) -> None:
        super().__init__(f"Limit increment must be positive for metric {metric} (got {increment})")
        self.metric = metric
        self.increment = increment


class PayerResolutionError(LimitLedgerError):
    """No payer could be derived for a limit request."""

    def __init__(self, metric: str) -> None:
        super().__init__(f"Unable to resolve payer for metric {metric}. Provide a payer or user_id.")
        self.metric = metric


class InvalidCreditAmountError(LimitLedgerError):
    """Credit deltas, charges and purchases must be finite and correctly signed."""


class InsufficientBalanceError(LimitLedgerError):
    """A debit would push the payer below zero."""

    def __init__(self, balance: CreditBalanceSummary, message: str = "Insufficient credits") -> None:
        super().__init__(message)
        # Snapshot taken under the row lock, before any write.
        self.balance = balance


class LimitExceededError(LimitLedgerError):
    """Raised by enforce_limit when a check comes back blocked."""

    def __init__(self, result: LimitCheckResult, message: str = "Limit exceeded") -> None:
        super().__init__(message)
        self.result = result
        self.message = message


class CreditPurchaseNotFoundError(LimitLedgerError):
    """Purchase id does not exist."""


class CreditPurchasePayerMismatchError(LimitLedgerError):
    """Credit purchase does not belong to the expected payer."""


class LimitOverrideNotFoundError(LimitLedgerError):
    """Override id does not exist."""


class InvalidLimitOverrideError(LimitLedgerError):
    """Override payload is inconsistent (e.g. approval without a positive limit)."""


class BillingEventSignatureError(LimitLedgerError):
    """Inbound billing event failed signature or freshness checks."""


class PlanNotFoundError(LimitLedgerError):
    """Plan id does not exist."""


class InvalidCreditPurchaseStatusError(LimitLedgerError):
    """Purchase status is unknown or cannot be set directly."""
