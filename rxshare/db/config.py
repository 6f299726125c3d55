"""Where the record store lives and how the engine connects to it.

``RXSHARE_DATABASE_URL`` (or ``DATABASE_URL``) selects a server database.
Without one the store is a SQLite file in the user data directory, or in
``RXSHARE_DB_PATH`` when set.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional

from platformdirs import user_data_dir

from rxshare.config import APP_NAME

SQLITE_FILENAME = "rxshare.db"
DEFAULT_SQLITE_BUSY_TIMEOUT = 30.0


@dataclass(frozen=True)
class DatabaseSettings:
    url: str
    echo: bool = False
    pool_size: Optional[int] = None
    max_overflow: Optional[int] = None
    sqlite_busy_timeout: float = DEFAULT_SQLITE_BUSY_TIMEOUT

    @property
    def backend(self) -> str:
        """The dialect name without its driver, e.g. ``sqlite`` or ``postgresql``."""

        return self.url.split(":", 1)[0].split("+", 1)[0]

    def engine_options(self) -> Dict[str, object]:
        """Keyword arguments for :func:`sqlalchemy.create_engine`."""

        options: Dict[str, object] = {"echo": self.echo, "future": True}
        if self.backend == "sqlite":
            # Competing link claims queue on SQLite's write lock until the timeout.
            options["connect_args"] = {
                "check_same_thread": False,
                "timeout": self.sqlite_busy_timeout,
            }
            return options
        options["pool_pre_ping"] = True
        if self.pool_size is not None:
            options["pool_size"] = self.pool_size
        if self.max_overflow is not None:
            options["max_overflow"] = self.max_overflow
        return options


def _env_number(name: str, kind=int):
    raw = os.getenv(name)
    if raw in (None, ""):
        return None
    try:
        return kind(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number; got {raw!r}") from exc


def _server_url(url: str) -> str:
    scheme, sep, rest = url.partition("://")
    if scheme in {"postgres", "postgresql"}:
        return f"postgresql+psycopg{sep}{rest}"
    return url


def _sqlite_url() -> str:
    override = os.getenv("RXSHARE_DB_PATH")
    path = Path(override).expanduser() if override else Path(user_data_dir(APP_NAME, APP_NAME))
    if path.suffix != ".db":
        path = path / SQLITE_FILENAME
    path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{path}"


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
    """Resolve the store settings from the environment once per process."""

    url = os.getenv("RXSHARE_DATABASE_URL") or os.getenv("DATABASE_URL")
    busy_timeout = _env_number("RXSHARE_SQLITE_BUSY_TIMEOUT", float)
    return DatabaseSettings(
        url=_server_url(url) if url else _sqlite_url(),
        echo=(os.getenv("RXSHARE_DB_ECHO") or "").lower() in {"1", "true", "yes"},
        pool_size=_env_number("RXSHARE_DB_POOL_SIZE"),
        max_overflow=_env_number("RXSHARE_DB_MAX_OVERFLOW"),
        sqlite_busy_timeout=DEFAULT_SQLITE_BUSY_TIMEOUT if busy_timeout is None else busy_timeout,
    )


__all__ = ["DatabaseSettings", "SQLITE_FILENAME", "get_database_settings"]
