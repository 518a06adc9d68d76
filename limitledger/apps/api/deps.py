from __future__ import annotations

import hmac
from typing import AsyncGenerator

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from limitledger.core.config import get_settings
from limitledger.persistence.db import get_session


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; the context manager closes it on success and error.
    async with get_session() as session:
        yield session


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


async def require_admin(
    x_admin_token: str | None = Header(default=None, alias="X-Admin-Token"),
    x_actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
) -> str:
    """Gate admin routes behind the static admin token.

    Returns the acting admin id (X-Actor-Id, or "admin" when absent) so
    handlers can stamp resolved_by/created_by and audit rows.
    """
    expected = get_settings().admin_api_token
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "ADMIN_DISABLED", "message": "Admin API token is not configured"},
        )
    if not x_admin_token:
        raise _auth_error("Missing admin token")
    if not hmac.compare_digest(x_admin_token.encode("utf-8"), expected.encode("utf-8")):
        raise _auth_error("Invalid admin token")
    return (x_actor_id or "").strip() or "admin"


async def require_actor(x_actor_id: str | None = Header(default=None, alias="X-Actor-Id")) -> str:
    # Identity comes from the fronting gateway; this service does not authenticate users.
    actor_id = (x_actor_id or "").strip()
    if not actor_id:
        raise _auth_error("Missing X-Actor-Id header")
    return actor_id
