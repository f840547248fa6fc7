from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

bearer_scheme = HTTPBearer(auto_error=False)

READ_ROLES = ["hotel_admin", "hotel_staff", "super_admin"]
WRITE_ROLES = ["hotel_admin", "super_admin"]


def _jwt_secret() -> str:
    # Keep in backend env in future; default only for dev/testing.
    return os.environ.get("JWT_SECRET", "dev_jwt_secret_change_me")


def create_access_token(
    *,
    subject: str,
    roles: list[str],
    hotel_ids: Optional[list[str]] = None,
    minutes: int = 60 * 12,
) -> str:
    """Issued by the surrounding auth service; kept here for tooling and tests."""

    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "roles": roles,
        "hotels": hotel_ids or [],
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=minutes)).timestamp()),
    }
    return jwt.encode(payload, _jwt_secret(), algorithm="HS256")


def decode_token(token: str) -> dict[str, Any]:
    try:
        return jwt.decode(token, _jwt_secret(), algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


async def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> dict[str, Any]:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Authentication required")

    payload = decode_token(credentials.credentials)
    return {
        "email": payload.get("sub"),
        "roles": list(payload.get("roles") or []),
        "hotels": list(payload.get("hotels") or []),
    }


def require_roles(required: list[str]):
    async def _dep(user: dict[str, Any] = Depends(get_current_user)) -> dict[str, Any]:
        roles = set(user.get("roles") or [])
        if not roles.intersection(set(required)):
            raise HTTPException(status_code=403, detail="Insufficient role")
        return user

    return _dep


def ensure_hotel_access(user: dict[str, Any], hotel_id: Optional[str]) -> None:
    """Non super admins only reach the hotels listed in their token."""

    if "super_admin" in (user.get("roles") or []):
        return
    if hotel_id is None or hotel_id not in (user.get("hotels") or []):
        raise HTTPException(status_code=403, detail="No access to this hotel")
