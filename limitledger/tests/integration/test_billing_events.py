from __future__ import annotations

from decimal import Decimal

import pytest
from pydantic import ValidationError

from limitledger.core.errors import CreditPurchaseNotFoundError, PlanNotFoundError
from limitledger.domain.credits import CreditPayer
from limitledger.services.audit import list_events
from limitledger.services.billing_events import BillingEvent, handle_billing_event
from limitledger.services.credits import get_credit_balance
from limitledger.services.credits.purchases import get_credit_purchase
from limitledger.services.limits import ensure_plan_for_user
from limitledger.services.limits.plans import seed_plan_catalogue


def _event(event_type: str, data: dict, event_id: str = "evt_1") -> BillingEvent:
    return BillingEvent(id=event_id, type=event_type, created_at=1_760_000_000, data=data)


async def _create_purchase(session) -> str:
    result = await handle_billing_event(
        session,
        _event(
            "credits.purchase.created",
            {
                "payer_type": "user",
                "payer_id": "u1",
                "credits": 200,
                "provider": "stripe",
                "provider_reference": "cs_42",
            },
        ),
    )
    return result.details["purchase_id"]


@pytest.mark.asyncio
async def test_created_event_records_pending_purchase_priced_from_settings(session) -> None:
    purchase_id = await _create_purchase(session)

    purchase = await get_credit_purchase(session, purchase_id)
    assert purchase is not None
    assert purchase.status == "pending"
    assert purchase.amount_usd == Decimal("10.00")
    assert purchase.metadata_json["billing_event_id"] == "evt_1"


@pytest.mark.asyncio
async def test_completed_event_by_provider_reference_credits_once(session) -> None:
    await _create_purchase(session)
    completed = _event(
        "credits.purchase.completed",
        {"provider": "stripe", "provider_reference": "cs_42"},
        event_id="evt_2",
    )

    first = await handle_billing_event(session, completed)
    replay = await handle_billing_event(session, completed)

    assert first.status == "processed"
    assert first.details["balance"]["available"] == 200.0
    assert replay.details["balance"]["available"] == 200.0
    balance = await get_credit_balance(session, CreditPayer(type="user", id="u1"))
    assert balance.available == Decimal("200")
    audit_rows = await list_events(session, event_type="billing.credits.purchase.completed")
    assert len(audit_rows) == 2


@pytest.mark.asyncio
async def test_late_failed_event_keeps_completed_purchase(session) -> None:
    purchase_id = await _create_purchase(session)
    await handle_billing_event(
        session,
        _event("credits.purchase.completed", {"purchase_id": purchase_id}, event_id="evt_2"),
    )

    result = await handle_billing_event(
        session,
        _event(
            "credits.purchase.failed",
            {"purchase_id": purchase_id, "failure_reason": "late"},
            event_id="evt_3",
        ),
    )

    assert result.details["status"] == "completed"
    purchase = await get_credit_purchase(session, purchase_id)
    assert purchase is not None
    assert purchase.status == "completed"
    balance = await get_credit_balance(session, CreditPayer(type="user", id="u1"))
    assert balance.available == Decimal("200")


@pytest.mark.asyncio
async def test_failed_event_marks_purchase(session) -> None:
    purchase_id = await _create_purchase(session)

    result = await handle_billing_event(
        session,
        _event("credits.purchase.failed", {"purchase_id": purchase_id, "failure_reason": "declined"}),
    )

    assert result.details["status"] == "failed"
    purchase = await get_credit_purchase(session, purchase_id)
    assert purchase is not None
    assert purchase.failure_reason == "declined"


@pytest.mark.asyncio
async def test_unknown_purchase_reference_raises(session) -> None:
    with pytest.raises(CreditPurchaseNotFoundError):
        await handle_billing_event(
            session,
            _event("credits.purchase.completed", {"provider": "stripe", "provider_reference": "nope"}),
        )


@pytest.mark.asyncio
async def test_plan_assigned_event_moves_user(session) -> None:
    await seed_plan_catalogue(session)
    await ensure_plan_for_user(session, user_id="u1")

    result = await handle_billing_event(
        session,
        _event("plan.assigned", {"user_id": "u1", "plan_id": "pro"}),
    )

    assert result.details == {"user_id": "u1", "plan_id": "pro"}
    plan = await ensure_plan_for_user(session, user_id="u1")
    assert plan.id == "pro"


@pytest.mark.asyncio
async def test_plan_assigned_to_unknown_plan_raises(session) -> None:
    with pytest.raises(PlanNotFoundError):
        await handle_billing_event(session, _event("plan.assigned", {"user_id": "u1", "plan_id": "gold"}))


@pytest.mark.asyncio
async def test_invalid_event_data_raises_validation_error(session) -> None:
    with pytest.raises(ValidationError):
        await handle_billing_event(
            session,
            _event("credits.purchase.created", {"payer_type": "team", "payer_id": "x", "credits": 1}),
        )


@pytest.mark.asyncio
async def test_unsupported_event_is_ignored(session) -> None:
    result = await handle_billing_event(session, _event("invoice.paid", {}))

    assert result.status == "ignored"
    assert await list_events(session) == []
