"""Database helpers for RxShare."""

from __future__ import annotations

from .config import DatabaseSettings, get_database_settings
from .engine import (
    configure_database,
    get_engine,
    get_session_factory,
    init_schema,
    make_session_factory,
    session_scope,
    translate_store_errors,
)
from .models import Account, Base, GrantEvent, HealthRecordEntry, ShareableRecord, ShareGrant

__all__ = [
    "Account",
    "Base",
    "DatabaseSettings",
    "GrantEvent",
    "HealthRecordEntry",
    "ShareableRecord",
    "ShareGrant",
    "configure_database",
    "get_database_settings",
    "get_engine",
    "get_session_factory",
    "init_schema",
    "make_session_factory",
    "session_scope",
    "translate_store_errors",
]
