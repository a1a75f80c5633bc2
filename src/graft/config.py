"""Configuration management for the graft server and CLI.

Manages a single configuration file in ~/.config/graft/config.yaml holding:
- the database user (the password, if any, comes from GRAFT_DB_PASSWORD)
- the listen address and TLS key/certificate for `graft serve`
- the base URL used by the client commands (`graft inbox`, `graft post`, ...)
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .options import StoreOptions


def get_config_dir() -> Path:
    """Get the configuration directory path."""
    config_home = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return Path(config_home) / "graft"


def get_config_path() -> Path:
    """Get the config file path."""
    return get_config_dir() / "config.yaml"


def ensure_config_dir() -> Path:
    """Ensure config directory exists and return its path."""
    config_dir = get_config_dir()
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8088


@dataclass
class ServerConfig:
    """Server and CLI configuration."""

    db_user: str | None = None
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    tls_key: str | None = None  # PEM private key
    tls_cert: str | None = None  # PEM certificate chain
    url: str | None = None  # For client commands; derived from host/port if unset

    @property
    def tls_enabled(self) -> bool:
        return bool(self.tls_key and self.tls_cert)

    @property
    def base_url(self) -> str:
        """URL client commands talk to."""
        if self.url:
            return self.url.rstrip("/")
        scheme = "https" if self.tls_enabled else "http"
        return f"{scheme}://{self.host}:{self.port}"

    def store_options(self) -> StoreOptions:
        """Store options for this configuration (environment still applies)."""
        return StoreOptions(user=self.db_user)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for YAML serialization."""
        data: dict[str, Any] = {"host": self.host, "port": self.port}
        if self.db_user:
            data["db_user"] = self.db_user
        if self.tls_key:
            data["tls_key"] = self.tls_key
        if self.tls_cert:
            data["tls_cert"] = self.tls_cert
        if self.url:
            data["url"] = self.url
        return data

    def save(self) -> None:
        """Save config to file."""
        ensure_config_dir()
        with open(get_config_path(), "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    @classmethod
    def load(cls) -> "ServerConfig":
        """Load config from file, or return defaults."""
        path = get_config_path()

        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls(
            db_user=data.get("db_user"),
            host=data.get("host", DEFAULT_HOST),
            port=int(data.get("port", DEFAULT_PORT)),
            tls_key=data.get("tls_key"),
            tls_cert=data.get("tls_cert"),
            url=data.get("url"),
        )

    @classmethod
    def exists(cls) -> bool:
        """Check if config file exists."""
        return get_config_path().exists()


def prompt_db_user() -> str:
    """Ask for the PostgreSQL user name until one is given."""
    while True:
        user = input("Input PostgreSQL user name: ").strip()
        if user:
            return user


def init_wizard() -> ServerConfig:
    """Interactive wizard for initial configuration."""
    print("Welcome to graft!")
    print("Let's set up your configuration.\n")

    db_user = prompt_db_user()

    host = input(f"Listen host [{DEFAULT_HOST}]: ").strip() or DEFAULT_HOST
    port_str = input(f"Listen port [{DEFAULT_PORT}]: ").strip()
    port = int(port_str) if port_str else DEFAULT_PORT

    print("\nTo serve over HTTPS, give a PEM key and certificate chain.")
    print("Leave blank to serve plain HTTP.\n")
    tls_key = input("TLS key file (optional): ").strip() or None
    tls_cert = input("TLS certificate file (optional): ").strip() or None

    config = ServerConfig(
        db_user=db_user,
        host=host,
        port=port,
        tls_key=tls_key,
        tls_cert=tls_cert,
    )
    config.save()

    print(f"\nConfiguration saved to {get_config_path()}")
    return config
