from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Literal

from limitledger.domain.credits import CreditPayer


LimitScopeType = Literal["user", "idea", "org"]
LimitPeriod = Literal["lifetime", "daily", "monthly", "cooldown"]
LimitMode = Literal["unlimited", "ok", "warn", "blocked"]
LimitOverrideStatus = Literal["pending", "approved", "rejected"]
LimitEventType = Literal["warn", "block"]

# Payers for limited actions share the credit payer identity.
LimitPayer = CreditPayer


class PayerStrategy(str, Enum):
    ACTOR = "actor"
    WORKSPACE = "workspace"
    SHARED = "shared"


@dataclass(frozen=True)
class MetricDefinition:
    # Static policy entry; period "cooldown" is never counter-enforced.
    metric: str
    scope: LimitScopeType
    period: LimitPeriod
    warn_ratio: float | None = None
    supports_counters: bool = True
    label: str = ""
    description: str = ""
    period_label: str = ""


@dataclass(frozen=True)
class LimitScope:
    type: LimitScopeType
    id: str


@dataclass(frozen=True)
class LimitPayerResolution:
    # Tagged payer choice: strategy names how primary/fallback were derived.
    primary: LimitPayer
    fallback: LimitPayer | None = None
    strategy: PayerStrategy = PayerStrategy.ACTOR
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "primary": {"type": self.primary.type, "id": self.primary.id},
            "fallback": (
                {"type": self.fallback.type, "id": self.fallback.id} if self.fallback else None
            ),
            "strategy": self.strategy.value,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class LimitCreditRequest:
    amount: Decimal | int | float
    payer: LimitPayerResolution | None = None
    allow_debt: bool = False


@dataclass
class LimitCreditResult:
    # charged_payer is filled in once settlement succeeds.
    amount: Decimal
    payer: LimitPayerResolution
    allow_debt: bool = False
    unit: str = "credits"
    charged_payer: LimitPayer | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "amount": float(self.amount),
            "unit": self.unit,
            "payer": self.payer.to_dict(),
            "allow_debt": self.allow_debt,
            "charged_payer": (
                {"type": self.charged_payer.type, "id": self.charged_payer.id}
                if self.charged_payer
                else None
            ),
        }


@dataclass(frozen=True)
class LimitCheckRequest:
    scope: LimitScope
    metric: str
    increment: int = 1
    plan_id: str | None = None
    user_id: str | None = None
    dry_run: bool = False
    payer: LimitPayerResolution | None = None
    credit: LimitCreditRequest | None = None


@dataclass(frozen=True)
class LimitCheckResult:
    metric: str
    mode: LimitMode
    count: int
    limit: int | None
    remaining: int | None
    period_key: str | None
    plan_id: str | None
    payer: LimitPayerResolution
    override_id: str | None = None
    credit: LimitCreditResult | None = None

    @property
    def allowed(self) -> bool:
        return self.mode != "blocked"

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric": self.metric,
            "mode": self.mode,
            "count": self.count,
            "limit": self.limit,
            "remaining": self.remaining,
            "period_key": self.period_key,
            "plan_id": self.plan_id,
            "override_id": self.override_id,
            "payer": self.payer.to_dict(),
            "credit": self.credit.to_dict() if self.credit else None,
        }
