"""Connection options for the graft store.

Provides StoreOptions for addressing the PostgreSQL database. Supports
environment variable overrides for CI/CD and containerized deployments.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

DEFAULT_DATABASE = "graft"
DEFAULT_HOST = "localhost"
DEFAULT_PORT = 5432
DEFAULT_KEEPALIVE_INTERVAL = 30.0


class GraftConfigError(Exception):
    """Raised when StoreOptions configuration is invalid."""

    pass


@dataclass
class StoreOptions:
    """Options for the single shared database connection.

    The connection always targets a local database without TLS; only the
    credentials are expected to vary between deployments.

    Environment Variables:
        GRAFT_DB_USER: Database user (required if not given explicitly)
        GRAFT_DB_PASSWORD: Database password
        GRAFT_DB_HOST: Database host (default: localhost)
        GRAFT_DB_PORT: Database port (default: 5432)
        GRAFT_DB_NAME: Database name (default: graft)
        GRAFT_KEEPALIVE_INTERVAL: Seconds between connection pings (0 disables)

    Examples:
        options = StoreOptions(user="graft")
        options = StoreOptions.from_env()
    """

    user: str | None = None
    """Database user name."""

    password: str | None = None
    """Database password. Usually supplied through the environment."""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    database: str = DEFAULT_DATABASE

    keepalive_interval: float = DEFAULT_KEEPALIVE_INTERVAL
    """Seconds between liveness pings of the shared connection. 0 disables pings."""

    def __post_init__(self) -> None:
        """Apply environment variable overrides and validate."""
        self._apply_env_overrides()
        self._validate()

    def _apply_env_overrides(self) -> None:
        """Fill unset fields from the environment.

        Explicit values take priority over environment variables.
        """
        if self.user is None:
            self.user = os.environ.get("GRAFT_DB_USER") or None
        if self.password is None:
            self.password = os.environ.get("GRAFT_DB_PASSWORD") or None

        env_host = os.environ.get("GRAFT_DB_HOST")
        if env_host and self.host == DEFAULT_HOST:
            self.host = env_host

        env_port = os.environ.get("GRAFT_DB_PORT")
        if env_port and self.port == DEFAULT_PORT:
            try:
                self.port = int(env_port)
            except ValueError:
                raise GraftConfigError(f"GRAFT_DB_PORT must be an integer, got {env_port!r}")

        env_name = os.environ.get("GRAFT_DB_NAME")
        if env_name and self.database == DEFAULT_DATABASE:
            self.database = env_name

        env_keepalive = os.environ.get("GRAFT_KEEPALIVE_INTERVAL")
        if env_keepalive and self.keepalive_interval == DEFAULT_KEEPALIVE_INTERVAL:
            try:
                self.keepalive_interval = float(env_keepalive)
            except ValueError:
                raise GraftConfigError(
                    f"GRAFT_KEEPALIVE_INTERVAL must be a number, got {env_keepalive!r}"
                )

    def _validate(self) -> None:
        """Validate that options are consistent."""
        if not 0 < self.port < 65536:
            raise GraftConfigError(f"Port out of range: {self.port}")
        if self.keepalive_interval < 0:
            raise GraftConfigError("keepalive_interval cannot be negative.")
        if not self.database:
            raise GraftConfigError("Database name cannot be empty.")

    @classmethod
    def from_env(cls) -> "StoreOptions":
        """Create options from environment variables only."""
        return cls()

    def require_user(self) -> str:
        """Return the configured user, or raise if none was supplied."""
        if not self.user:
            raise GraftConfigError(
                "No database user configured. Set GRAFT_DB_USER or run 'graft init'."
            )
        return self.user

    @property
    def dsn(self) -> str:
        """Connection URL, e.g. postgres://graft@localhost:5432/graft."""
        credentials = quote(self.require_user(), safe="")
        if self.password:
            credentials += ":" + quote(self.password, safe="")
        return f"postgres://{credentials}@{self.host}:{self.port}/{self.database}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary (for debugging/logging). Never includes the password."""
        return {
            "user": self.user,
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "keepalive_interval": self.keepalive_interval,
            "has_password": self.password is not None,
        }
