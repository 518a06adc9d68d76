from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from limitledger.domain.models import AuditEvent


logger = logging.getLogger(__name__)

# Admin and billing metadata can carry tokens or stored payment methods.
_REDACT_KEY_FRAGMENTS = ("authorization", "token", "secret", "password", "payment_method")


def sanitize_metadata(value: Any) -> Any:
    # Redact by key name at any depth; values under safe keys pass through.
    if isinstance(value, dict):
        return {
            str(key): "[REDACTED]"
            if any(fragment in str(key).lower() for fragment in _REDACT_KEY_FRAGMENTS)
            else sanitize_metadata(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def get_request_id(request: Request | None) -> str | None:
    return request.headers.get("X-Request-Id") if request is not None else None


async def record_event(
    *,
    session: AsyncSession,
    actor_type: str,
    actor_id: str | None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    best_effort: bool = True,
) -> None:
    """Append an audit row for an admin, billing or operator action and commit it.

    The domain change is already committed when this runs. A failed audit
    write is logged; it is re-raised only when best_effort is off, which the
    operator scripts use so a missing trail is visible.
    """
    session.add(
        AuditEvent(
            occurred_at=datetime.now(timezone.utc),
            actor_type=actor_type,
            actor_id=actor_id,
            event_type=event_type,
            outcome=outcome,
            resource_type=resource_type,
            resource_id=resource_id,
            request_id=request_id,
            metadata_json=sanitize_metadata(metadata or {}),
        )
    )
    try:
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning(
            "audit_event_write_failed event_type=%s resource_id=%s",
            event_type,
            resource_id,
            exc_info=exc,
        )
        if not best_effort:
            raise


async def list_events(
    session: AsyncSession,
    *,
    event_type: str | None = None,
    resource_id: str | None = None,
    limit: int = 100,
) -> list[AuditEvent]:
    stmt = select(AuditEvent)
    if event_type is not None:
        stmt = stmt.where(AuditEvent.event_type == event_type)
    if resource_id is not None:
        stmt = stmt.where(AuditEvent.resource_id == resource_id)
    result = await session.execute(stmt.order_by(AuditEvent.id.desc()).limit(limit))
    return list(result.scalars().all())
