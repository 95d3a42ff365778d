from __future__ import annotations

import hmac
from typing import AsyncGenerator

from fastapi import Header, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from grantline.core.config import get_settings
from grantline.persistence.db import get_session


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class AdminPrincipal(BaseModel):
    # Operator identity recorded as the actor on audit rows.
    actor_id: str


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


async def require_admin(
    authorization: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
) -> AdminPrincipal:
    """Authenticate the operator surface with the shared admin token."""
    expected = get_settings().admin_api_token
    if not expected:
        raise _auth_error("Admin API is disabled")
    token = _parse_bearer_token(authorization)
    if token is None or not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise _auth_error("Missing or invalid bearer token")
    actor_id = (x_actor_id or "").strip() or "admin"
    return AdminPrincipal(actor_id=actor_id[:200])
