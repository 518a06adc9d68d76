from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from limitledger.services.audit import list_events, record_event, sanitize_metadata


def test_sensitive_keys_are_redacted_recursively() -> None:
    payload = {
        "payer_id": "u1",
        "auto_top_up_payment_method_id": "pm_123",
        "nested": {"Authorization": "Bearer abc", "credits": 10},
        "items": [{"api_token": "t"}, {"reason": "goodwill"}],
    }

    sanitized = sanitize_metadata(payload)

    assert sanitized["payer_id"] == "u1"
    assert sanitized["auto_top_up_payment_method_id"] == "[REDACTED]"
    assert sanitized["nested"] == {"Authorization": "[REDACTED]", "credits": 10}
    assert sanitized["items"] == [{"api_token": "[REDACTED]"}, {"reason": "goodwill"}]


@pytest.mark.asyncio
async def test_record_event_commits_redacted_row(session) -> None:
    await record_event(
        session=session,
        actor_type="admin",
        actor_id="admin-1",
        event_type="credits.auto_top_up.updated",
        outcome="success",
        resource_type="credit_balance",
        resource_id="user:u1",
        metadata={"payment_method_id": "pm_1", "enabled": True},
    )

    rows = await list_events(session, resource_id="user:u1")
    assert len(rows) == 1
    assert rows[0].metadata_json == {"payment_method_id": "[REDACTED]", "enabled": True}


@pytest.mark.asyncio
async def test_audit_write_failure_only_raises_when_not_best_effort(session, monkeypatch) -> None:
    async def _failing_commit() -> None:
        raise OperationalError("INSERT INTO audit_events", {}, Exception("disk full"))

    monkeypatch.setattr(session, "commit", _failing_commit)
    event = {
        "session": session,
        "actor_type": "system",
        "actor_id": "grant_credits",
        "event_type": "credits.balance.adjusted",
        "outcome": "success",
    }

    await record_event(**event)
    with pytest.raises(OperationalError):
        await record_event(**event, best_effort=False)
