from __future__ import annotations

from decimal import Decimal

import pytest

from limitledger.core.errors import PayerResolutionError
from limitledger.domain.limits import (
    LimitCheckRequest,
    LimitCreditRequest,
    LimitScope,
    PayerStrategy,
)
from limitledger.services.limits.payer import (
    actor_pays,
    resolve_credit_charge,
    resolve_payer,
    workspace_covers,
)
from limitledger.services.limits.policies import METRIC_FEATURES, METRIC_IDEAS


def _request(**kwargs) -> LimitCheckRequest:
    kwargs.setdefault("scope", LimitScope(type="user", id="u1"))
    kwargs.setdefault("metric", METRIC_IDEAS)
    return LimitCheckRequest(**kwargs)


def test_actor_pays_defaults_to_user() -> None:
    resolution = resolve_payer(_request(user_id="u1"))
    assert resolution.primary.type == "user"
    assert resolution.primary.id == "u1"
    assert resolution.fallback is None
    assert resolution.strategy is PayerStrategy.ACTOR


def test_missing_payer_and_user_raises() -> None:
    with pytest.raises(PayerResolutionError):
        resolve_payer(_request())


def test_workspace_covers_with_fallback_is_shared() -> None:
    resolution = workspace_covers("w1", fallback_user_id="u2")
    assert resolution.primary.type == "workspace"
    assert resolution.fallback is not None
    assert resolution.fallback.id == "u2"
    assert resolution.strategy is PayerStrategy.SHARED
    assert resolution.metadata["workspace_id"] == "w1"


def test_workspace_covers_without_fallback() -> None:
    resolution = workspace_covers("w1")
    assert resolution.fallback is None
    assert resolution.strategy is PayerStrategy.WORKSPACE


def test_explicit_payer_wins_over_user() -> None:
    request = _request(user_id="u1", payer=workspace_covers("w1"))
    assert resolve_payer(request).primary.id == "w1"


@pytest.mark.parametrize("amount", [0, -3, "abc", float("nan")])
def test_non_positive_or_invalid_credit_amount_is_no_charge(amount) -> None:
    request = _request(user_id="u1", credit=LimitCreditRequest(amount=amount))
    assert resolve_credit_charge(request, actor_pays("u1")) is None


def test_credit_payer_defaults_to_action_payer() -> None:
    request = _request(
        scope=LimitScope(type="idea", id="i1"),
        metric=METRIC_FEATURES,
        user_id="u1",
        credit=LimitCreditRequest(amount=2.5, allow_debt=True),
    )
    payer = resolve_payer(request)
    credit = resolve_credit_charge(request, payer)
    assert credit is not None
    assert credit.amount == Decimal("2.500000")
    assert credit.payer == payer
    assert credit.allow_debt is True
    assert credit.charged_payer is None
