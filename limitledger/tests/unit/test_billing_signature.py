from __future__ import annotations

import json

import pytest

from limitledger.core.config import get_settings
from limitledger.core.errors import BillingEventSignatureError
from limitledger.services.analytics import sign_payload
from limitledger.services.billing_events import parse_billing_event


SECRET = "billing-secret"
NOW = 1_760_000_000


def _body(**overrides) -> bytes:
    event = {"id": "evt_1", "type": "credits.purchase.created", "created_at": NOW, "data": {}}
    event.update(overrides)
    return json.dumps(event).encode("utf-8")


@pytest.fixture(autouse=True)
def _billing_secret(monkeypatch) -> None:
    monkeypatch.setenv("BILLING_EVENTS_SECRET", SECRET)
    get_settings.cache_clear()


def test_valid_signature_parses_event() -> None:
    body = _body()
    event = parse_billing_event(body, sign_payload(SECRET, body), now=NOW + 10)
    assert event.id == "evt_1"
    assert event.type == "credits.purchase.created"


def test_signature_header_is_case_insensitive() -> None:
    body = _body()
    event = parse_billing_event(body, sign_payload(SECRET, body).upper(), now=NOW)
    assert event.id == "evt_1"


def test_tampered_body_is_rejected() -> None:
    body = _body()
    signature = sign_payload(SECRET, body)
    with pytest.raises(BillingEventSignatureError):
        parse_billing_event(_body(id="evt_2"), signature, now=NOW)


def test_missing_signature_is_rejected() -> None:
    with pytest.raises(BillingEventSignatureError):
        parse_billing_event(_body(), None, now=NOW)


def test_stale_event_is_rejected() -> None:
    body = _body()
    with pytest.raises(BillingEventSignatureError):
        parse_billing_event(body, sign_payload(SECRET, body), now=NOW + 3600)


def test_unconfigured_secret_rejects_everything(monkeypatch) -> None:
    monkeypatch.delenv("BILLING_EVENTS_SECRET")
    get_settings.cache_clear()
    body = _body()
    with pytest.raises(BillingEventSignatureError):
        parse_billing_event(body, sign_payload(SECRET, body), now=NOW)
