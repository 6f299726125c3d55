"""JWT issuance and FastAPI auth dependencies."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
import structlog
from fastapi import Depends, HTTPException, WebSocket, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from fastapi.websockets import WebSocketDisconnect

from rxshare.config import AppSettings, get_settings
from rxshare.db.models import Account
from rxshare.errors import InvalidRequestError
from rxshare.identity import AccountIdentity, identity_from_claims

logger = structlog.get_logger(__name__)

security = HTTPBearer()
# Used by endpoints that accept either a bearer token or a guest identity.
optional_security = HTTPBearer(auto_error=False)


def create_access_token(
    account: Account,
    *,
    settings: Optional[AppSettings] = None,
    expires_minutes: Optional[int] = None,
) -> str:
    """Create a signed JWT access token for ``account``."""

    settings = settings or get_settings()
    minutes = expires_minutes or settings.access_token_expire_minutes
    payload = {
        "sub": account.id,
        "role": account.role,
        "contact": account.contact,
        "name": account.name,
        "type": "access",
        "exp": datetime.now(timezone.utc) + timedelta(minutes=minutes),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str, *, settings: Optional[AppSettings] = None) -> Dict[str, Any]:
    settings = settings or get_settings()
    try:
        data = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    if data.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    return data


def _claims_to_identity(data: Dict[str, Any]) -> AccountIdentity:
    try:
        return identity_from_claims(data)
    except InvalidRequestError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )


def get_current_claims(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Dict[str, Any]:
    return decode_token(credentials.credentials)


def get_current_account(
    data: Dict[str, Any] = Depends(get_current_claims),
) -> AccountIdentity:
    """Decode the bearer token into the caller's :class:`AccountIdentity`."""

    return _claims_to_identity(data)


def optional_account(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_security),
) -> Optional[AccountIdentity]:
    if credentials is None:
        return None
    return _claims_to_identity(decode_token(credentials.credentials))


def require_role(role: str):
    """Dependency factory ensuring the current account has ``role``."""

    def checker(data: Dict[str, Any] = Depends(get_current_claims)) -> AccountIdentity:
        if data.get("role") != role:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient privileges",
            )
        return _claims_to_identity(data)

    return checker


def _normalise_token(candidate: Optional[str]) -> Optional[str]:
    if not candidate:
        return None
    value = candidate.strip()
    if value.lower().startswith("bearer "):
        _, _, remainder = value.partition(" ")
        value = remainder.strip()
    return value or None


async def ws_authenticate(websocket: WebSocket) -> AccountIdentity:
    """Authenticate a websocket connection.

    The token comes from the ``Authorization`` header or the ``token`` query
    parameter.
    """

    token = _normalise_token(websocket.headers.get("Authorization"))
    if not token:
        token = _normalise_token(websocket.query_params.get("token"))
    if not token:
        await websocket.close(code=1008)
        raise WebSocketDisconnect(code=1008)
    try:
        identity = _claims_to_identity(decode_token(token))
    except HTTPException:
        await websocket.close(code=1008)
        raise WebSocketDisconnect(code=1008)
    return identity


__all__ = [
    "create_access_token",
    "decode_token",
    "get_current_account",
    "get_current_claims",
    "optional_account",
    "optional_security",
    "require_role",
    "security",
    "ws_authenticate",
]
