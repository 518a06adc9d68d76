from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Iterable
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from limitledger.core.errors import InvalidLimitOverrideError, LimitOverrideNotFoundError
from limitledger.domain.models import LimitOverride
from limitledger.persistence.db import transaction
from limitledger.persistence.repos import overrides as overrides_repo
from limitledger.services.limits.policies import get_metric_definition


logger = logging.getLogger(__name__)

_SUPERSEDED_NOTE = "superseded by override {override_id}"
_UNSET: Any = object()

SCOPE_TYPES = ("user", "idea", "org")
RESOLVED_STATUSES = ("approved", "rejected")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite returns naive timestamps; stored values are UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _validate_target(scope_type: str, metric: str) -> None:
    if scope_type not in SCOPE_TYPES:
        raise InvalidLimitOverrideError(f"Unknown scope type: {scope_type}")
    # Raises UnknownMetricError for unregistered keys.
    get_metric_definition(metric)


def pick_active_override(overrides: Iterable[LimitOverride], now: datetime) -> LimitOverride | None:
    # First row without an expiry, or whose expiry is still ahead of `now`.
    for override in overrides:
        expires_at = _as_utc(override.expires_at)
        if expires_at is None or expires_at > now:
            return override
    return None


async def list_limit_overrides(
    session: AsyncSession,
    *,
    scope_type: str,
    scope_id: str,
    metric: str | None = None,
    status: str | None = "approved",
) -> list[LimitOverride]:
    return await overrides_repo.list_limit_overrides(
        session,
        scope_type=scope_type,
        scope_id=scope_id,
        metric=metric,
        status=status,
    )


async def list_pending_limit_overrides(session: AsyncSession, *, limit: int = 200) -> list[LimitOverride]:
    return await overrides_repo.list_pending_limit_overrides(session, limit=max(1, int(limit)))


async def _supersede_active(session: AsyncSession, override: LimitOverride, now: datetime) -> None:
    # At most one approved, unexpired override may exist per scope + metric.
    expired = await overrides_repo.expire_active_overrides(
        session,
        scope_type=override.scope_type,
        scope_id=override.scope_id,
        metric=override.metric,
        now=now,
        exclude_id=override.id,
        note=_SUPERSEDED_NOTE.format(override_id=override.id),
    )
    if expired:
        logger.info(
            "limit_override_superseded override_id=%s scope_type=%s scope_id=%s metric=%s expired=%s",
            override.id,
            override.scope_type,
            override.scope_id,
            override.metric,
            expired,
        )


async def create_limit_override_request(
    session: AsyncSession,
    *,
    scope_type: str,
    scope_id: str,
    metric: str,
    limit_value: int,
    plan_id: str | None = None,
    expires_at: datetime | None = None,
    reason: str | None = None,
    created_by: str | None = None,
) -> LimitOverride:
    # User-submitted requests wait in the pending queue until an admin resolves them.
    _validate_target(scope_type, metric)
    if limit_value < 0:
        raise InvalidLimitOverrideError("Requested limit must not be negative")
    now = _utc_now()
    override = LimitOverride(
        id=uuid4().hex,
        scope_type=scope_type,
        scope_id=scope_id,
        metric=metric,
        limit_value=int(limit_value),
        plan_id=plan_id,
        expires_at=expires_at,
        reason=reason,
        created_by=created_by,
        status="pending",
        created_at=now,
        updated_at=now,
    )
    async with transaction(session):
        session.add(override)
        await session.flush()
    logger.info(
        "limit_override_requested override_id=%s scope_type=%s scope_id=%s metric=%s",
        override.id,
        scope_type,
        scope_id,
        metric,
    )
    return override


async def resolve_limit_override(
    session: AsyncSession,
    override_id: str,
    *,
    status: str,
    resolved_by: str,
    limit_value: int | None = None,
    expires_at: datetime | None = _UNSET,
    reason: str | None = _UNSET,
    plan_id: str | None = _UNSET,
    resolution_note: str | None = _UNSET,
) -> LimitOverride:
    """Approve or reject an override.

    Omitted keyword arguments leave the stored value untouched; passing None
    clears it. Approval needs a positive limit and supersedes any other
    active override for the same scope and metric.
    """
    if status not in RESOLVED_STATUSES:
        raise InvalidLimitOverrideError(f"Cannot resolve override to status {status}")
    now = _utc_now()
    async with transaction(session):
        override = await overrides_repo.get_limit_override(session, override_id, for_update=True)
        if override is None:
            raise LimitOverrideNotFoundError(f"Limit override {override_id} not found")
        if status == "approved":
            effective_limit = limit_value if limit_value is not None else override.limit_value
            if effective_limit is None or effective_limit <= 0:
                raise InvalidLimitOverrideError("A positive limit value is required to approve an override.")
        if limit_value is not None:
            override.limit_value = int(limit_value)
        if expires_at is not _UNSET:
            override.expires_at = expires_at
        if reason is not _UNSET:
            override.reason = reason
        if plan_id is not _UNSET:
            override.plan_id = plan_id
        if resolution_note is not _UNSET:
            override.resolution_note = resolution_note
        override.status = status
        override.resolved_at = now
        override.resolved_by = resolved_by
        override.updated_at = now
        await session.flush()
        if status == "approved":
            await _supersede_active(session, override, now)
    logger.info(
        "limit_override_resolved override_id=%s status=%s resolved_by=%s",
        override_id,
        status,
        resolved_by,
    )
    return override


async def create_manual_limit_override(
    session: AsyncSession,
    *,
    scope_type: str,
    scope_id: str,
    metric: str,
    limit_value: int,
    created_by: str | None = None,
    status: str = "approved",
    plan_id: str | None = None,
    expires_at: datetime | None = None,
    reason: str | None = None,
    resolution_note: str | None = None,
) -> LimitOverride:
    # Admin-created overrides skip the pending queue.
    _validate_target(scope_type, metric)
    if status not in RESOLVED_STATUSES:
        raise InvalidLimitOverrideError(f"Manual overrides must be approved or rejected, not {status}")
    if limit_value <= 0:
        raise InvalidLimitOverrideError("Manual overrides require a positive limit value")
    now = _utc_now()
    override = LimitOverride(
        id=uuid4().hex,
        scope_type=scope_type,
        scope_id=scope_id,
        metric=metric,
        limit_value=int(limit_value),
        plan_id=plan_id,
        expires_at=expires_at,
        reason=reason,
        created_by=created_by,
        status=status,
        resolved_at=now,
        resolved_by=created_by,
        resolution_note=resolution_note,
        created_at=now,
        updated_at=now,
    )
    async with transaction(session):
        session.add(override)
        await session.flush()
        if status == "approved":
            await _supersede_active(session, override, now)
    logger.info(
        "limit_override_created override_id=%s scope_type=%s scope_id=%s metric=%s status=%s",
        override.id,
        scope_type,
        scope_id,
        metric,
        status,
    )
    return override
