"""Application settings derived from the environment."""

from __future__ import annotations

import os
import secrets
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

import structlog

APP_NAME = "RxShare"

_DEV_ENVIRONMENTS = {"development", "dev", "local", "test"}
_TRUE_VALUES = {"1", "true", "yes", "on"}

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AppSettings:
    """Resolved runtime configuration for the API and core services."""

    environment: str
    base_url: str
    jwt_secret: str
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60
    require_contact_match: bool = True
    feed_buffer_size: int = 100
    log_level: str = "INFO"

    @property
    def is_development(self) -> bool:
        return self.environment in _DEV_ENVIRONMENTS


def _get_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError as exc:  # pragma: no cover - clearly surface misconfiguration
        raise ValueError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


def _get_bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _resolve_jwt_secret(environment: str) -> str:
    secret: Optional[str] = os.getenv("JWT_SECRET")
    if secret:
        return secret
    if environment in _DEV_ENVIRONMENTS:
        logger.warning("jwt_secret_generated", environment=environment)
        return secrets.token_urlsafe(48)
    raise RuntimeError("JWT_SECRET must be set outside development environments")


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Return the active application settings."""

    environment = (os.getenv("ENVIRONMENT") or "development").strip().lower()
    base_url = (os.getenv("RXSHARE_BASE_URL") or "http://localhost:5173").rstrip("/")
    return AppSettings(
        environment=environment,
        base_url=base_url,
        jwt_secret=_resolve_jwt_secret(environment),
        access_token_expire_minutes=_get_int_env("ACCESS_TOKEN_EXPIRE_MINUTES", 60),
        require_contact_match=_get_bool_env("RXSHARE_REQUIRE_CONTACT_MATCH", True),
        feed_buffer_size=max(1, _get_int_env("RXSHARE_FEED_BUFFER", 100)),
        log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
    )


__all__ = ["APP_NAME", "AppSettings", "get_settings"]
