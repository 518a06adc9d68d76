from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
import hmac
import json
import logging
import time
from typing import Any, Literal

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from limitledger.core.config import get_settings
from limitledger.core.errors import BillingEventSignatureError, CreditPurchaseNotFoundError
from limitledger.domain.credits import CreditPayer
from limitledger.services.analytics import sign_payload
from limitledger.services.audit import record_event
from limitledger.services.credits.ledger import calculate_usd_amount_for_credits
from limitledger.services.credits.purchases import (
    complete_credit_purchase,
    create_credit_purchase,
    find_credit_purchase_by_reference,
    update_credit_purchase_status,
)
from limitledger.services.limits.plans import assign_user_plan


logger = logging.getLogger(__name__)

EVENT_PURCHASE_CREATED = "credits.purchase.created"
EVENT_PURCHASE_COMPLETED = "credits.purchase.completed"
EVENT_PURCHASE_FAILED = "credits.purchase.failed"
EVENT_PURCHASE_CANCELED = "credits.purchase.canceled"
EVENT_PLAN_ASSIGNED = "plan.assigned"

SUPPORTED_EVENT_TYPES = (
    EVENT_PURCHASE_CREATED,
    EVENT_PURCHASE_COMPLETED,
    EVENT_PURCHASE_FAILED,
    EVENT_PURCHASE_CANCELED,
    EVENT_PLAN_ASSIGNED,
)


class BillingEvent(BaseModel):
    # Provider-neutral envelope; deduping by id is the sender's responsibility.
    id: str = Field(min_length=1, max_length=128)
    type: str
    created_at: int
    data: dict[str, Any] = Field(default_factory=dict)


class PurchaseCreatedData(BaseModel):
    payer_type: Literal["user", "workspace"]
    payer_id: str = Field(min_length=1)
    credits: Decimal = Field(gt=0)
    amount_usd: Decimal | None = Field(default=None, ge=0)
    provider: str = Field(min_length=1, max_length=64)
    provider_reference: str | None = None
    initiated_by: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class PurchaseReferenceData(BaseModel):
    # Either our purchase id or the provider's reference identifies the purchase.
    purchase_id: str | None = None
    provider: str | None = None
    provider_reference: str | None = None
    payer_type: Literal["user", "workspace"] | None = None
    payer_id: str | None = None
    reference_credits: Decimal | None = Field(default=None, gt=0)
    failure_reason: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class PlanAssignedData(BaseModel):
    user_id: str = Field(min_length=1)
    plan_id: str = Field(min_length=1, max_length=64)
    org_id: str | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None


@dataclass(frozen=True)
class BillingEventResult:
    event_id: str
    event_type: str
    status: str
    details: dict[str, Any] = field(default_factory=dict)


def verify_billing_signature(body: bytes, signature: str | None) -> None:
    # Constant-time compare against the configured shared secret.
    secret = get_settings().billing_events_secret
    if not secret:
        raise BillingEventSignatureError("Billing events are not configured")
    if not signature:
        raise BillingEventSignatureError("Missing billing signature")
    expected = sign_payload(secret, body)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise BillingEventSignatureError("Invalid billing signature")


def parse_billing_event(body: bytes, signature: str | None, *, now: float | None = None) -> BillingEvent:
    verify_billing_signature(body, signature)
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise BillingEventSignatureError("Billing event body is not valid JSON") from exc
    event = BillingEvent.model_validate(payload)
    tolerance = get_settings().billing_events_tolerance_s
    current = now if now is not None else time.time()
    if tolerance > 0 and abs(current - event.created_at) > tolerance:
        raise BillingEventSignatureError("Billing event timestamp outside tolerance")
    return event


async def _resolve_purchase_id(session: AsyncSession, data: PurchaseReferenceData) -> str:
    if data.purchase_id:
        return data.purchase_id
    if data.provider and data.provider_reference:
        purchase = await find_credit_purchase_by_reference(
            session,
            provider=data.provider,
            provider_reference=data.provider_reference,
        )
        if purchase is not None:
            return purchase.id
    raise CreditPurchaseNotFoundError("Billing event does not reference a known purchase")


async def handle_billing_event(session: AsyncSession, event: BillingEvent) -> BillingEventResult:
    """Apply one verified billing event to the credit and plan stores."""
    details: dict[str, Any]
    if event.type == EVENT_PURCHASE_CREATED:
        created = PurchaseCreatedData.model_validate(event.data)
        purchase = await create_credit_purchase(
            session,
            payer=CreditPayer(type=created.payer_type, id=created.payer_id),
            credits=created.credits,
            amount_usd=(
                created.amount_usd
                if created.amount_usd is not None
                else calculate_usd_amount_for_credits(created.credits)
            ),
            provider=created.provider,
            provider_reference=created.provider_reference,
            initiated_by=created.initiated_by,
            metadata={**created.metadata, "billing_event_id": event.id},
        )
        details = {"purchase_id": purchase.id, "status": purchase.status}
    elif event.type == EVENT_PURCHASE_COMPLETED:
        reference = PurchaseReferenceData.model_validate(event.data)
        purchase_id = await _resolve_purchase_id(session, reference)
        expected_payer = (
            CreditPayer(type=reference.payer_type, id=reference.payer_id)
            if reference.payer_type and reference.payer_id
            else None
        )
        completed = await complete_credit_purchase(
            session,
            purchase_id=purchase_id,
            provider_reference=reference.provider_reference,
            reference_credits=reference.reference_credits,
            metadata={**reference.metadata, "billing_event_id": event.id},
            expected_payer=expected_payer,
        )
        if completed is None:
            raise CreditPurchaseNotFoundError(f"Credit purchase {purchase_id} not found")
        details = {
            "purchase_id": completed.purchase.id,
            "status": completed.purchase.status,
            "balance": completed.balance.to_dict(),
        }
    elif event.type in (EVENT_PURCHASE_FAILED, EVENT_PURCHASE_CANCELED):
        reference = PurchaseReferenceData.model_validate(event.data)
        purchase_id = await _resolve_purchase_id(session, reference)
        status = "failed" if event.type == EVENT_PURCHASE_FAILED else "canceled"
        purchase = await update_credit_purchase_status(
            session,
            purchase_id=purchase_id,
            status=status,
            failure_reason=reference.failure_reason,
            provider_reference=reference.provider_reference,
        )
        details = {"purchase_id": purchase.id, "status": purchase.status}
    elif event.type == EVENT_PLAN_ASSIGNED:
        assigned = PlanAssignedData.model_validate(event.data)
        plan = await assign_user_plan(
            session,
            user_id=assigned.user_id,
            plan_id=assigned.plan_id,
            org_id=assigned.org_id,
            starts_at=assigned.starts_at or datetime.now(timezone.utc),
            ends_at=assigned.ends_at,
        )
        details = {"user_id": assigned.user_id, "plan_id": plan.id}
    else:
        logger.info("billing_event_ignored event_id=%s event_type=%s", event.id, event.type)
        return BillingEventResult(event_id=event.id, event_type=event.type, status="ignored")

    await record_event(
        session=session,
        actor_type="billing",
        actor_id=None,
        event_type=f"billing.{event.type}",
        outcome="success",
        resource_type="billing_event",
        resource_id=event.id,
        metadata=details,
    )
    logger.info("billing_event_processed event_id=%s event_type=%s", event.id, event.type)
    return BillingEventResult(event_id=event.id, event_type=event.type, status="processed", details=details)
