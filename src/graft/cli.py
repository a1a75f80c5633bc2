"""CLI for graft.

Manages configuration in ~/.config/graft/config.yaml and runs the server.
Mailbox commands talk to a running server over HTTP; `db init` talks to the
database directly.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from typing import Literal

import asyncpg
import cyclopts
import httpx

from .config import ServerConfig, get_config_path, init_wizard, prompt_db_user
from .options import GraftConfigError, StoreOptions
from .store import install_schema

app = cyclopts.App(
    name="graft",
    help="Minimal federated mailbox service",
)

db_app = cyclopts.App(name="db", help="Database management")
actor_app = cyclopts.App(name="actor", help="Actor (user/group) management")

app.command(db_app)
app.command(actor_app)

PREFIXES = {"group": "of", "user": "by"}


def get_config() -> ServerConfig:
    """Get config, running wizard if needed."""
    if not ServerConfig.exists():
        print("No configuration found. Let's set one up.\n")
        return init_wizard()
    return ServerConfig.load()


def api_request(
    method: str,
    path: str,
    *,
    config: ServerConfig | None = None,
    json_data: dict | None = None,
) -> httpx.Response:
    """Make an API request."""
    if config is None:
        config = get_config()

    url = f"{config.base_url}{path}"
    # Self-signed certificates are the norm for local deployments
    response = httpx.request(method, url, json=json_data, timeout=30.0, verify=False)

    if response.status_code >= 400:
        print(f"Error {response.status_code}: {response.text}", file=sys.stderr)
        sys.exit(1)

    return response


def print_json(data):
    """Pretty print JSON data."""
    print(json.dumps(data, indent=2, default=str))


@app.command
def init():
    """Initialize configuration (interactive wizard)."""
    init_wizard()


@app.command
def config():
    """Show current configuration."""
    cfg = ServerConfig.load()
    print(f"Config file: {get_config_path()}")
    print_json(cfg.to_dict())


# --- Database Commands ---


async def _install_schema(options: StoreOptions) -> None:
    connection = await asyncpg.connect(options.dsn, ssl=False)
    try:
        await install_schema(connection)
    finally:
        await connection.close()


@db_app.command(name="init")
def db_init():
    """Create the actor enum and mailbox tables if missing."""
    cfg = get_config()
    options = cfg.store_options()
    try:
        asyncio.run(_install_schema(options))
    except GraftConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    print(f"Schema installed in database {options.database!r}.")


# --- Actor Commands ---


@actor_app.command(name="create")
def actor_create(name: str, *, kind: Literal["group", "user"] = "group"):
    """Create an actor."""
    response = api_request("PUT", f"/{PREFIXES[kind]}/{name}")
    print_json(response.json())


@actor_app.command(name="delete")
def actor_delete(name: str, *, kind: Literal["group", "user"] = "group", force: bool = False):
    """Delete an actor."""
    if not force:
        confirm = input(f"Delete {kind} {name}? [y/N] ").strip().lower()
        if confirm != "y":
            print("Cancelled.")
            return
    response = api_request("DELETE", f"/{PREFIXES[kind]}/{name}")
    print_json(response.json())


@actor_app.command(name="show")
def actor_show(name: str, *, kind: Literal["group", "user"] = "group"):
    """Show an actor object."""
    response = api_request("GET", f"/{PREFIXES[kind]}/{name}")
    print_json(response.json())


# --- Mailbox Commands ---


def _print_collection(data: dict) -> None:
    items = data.get("orderedItems", [])
    if not items:
        print("No messages.")
        return
    for item in items:
        print(f"[{item.get('id')}] {item.get('content')}")


@app.command
def inbox(name: str, *, raw: bool = False):
    """List messages received by an actor."""
    data = api_request("GET", f"/to/{name}").json()
    if raw:
        print_json(data)
    else:
        _print_collection(data)


@app.command
def outbox(name: str, *, kind: Literal["group", "user"] = "group", raw: bool = False):
    """List messages sent by an actor."""
    data = api_request("GET", f"/{PREFIXES[kind]}/{name}/all").json()
    if raw:
        print_json(data)
    else:
        _print_collection(data)


@app.command
def post(
    name: str,
    content: str,
    *,
    to: list[str],
    kind: Literal["group", "user"] = "group",
):
    """Post a message from an actor to one or more recipients.

    Parameters
    ----------
    name
        Sending actor.
    content
        Message text.
    to
        Recipient actor ids (repeat --to for several).
    """
    response = api_request(
        "POST",
        f"/{PREFIXES[kind]}/{name}/all",
        json_data={"content": content, "to": to},
    )
    print(f"Posted message {response.json()['id']}")


# --- Server Command ---


@app.command
def serve(
    *,
    host: str | None = None,
    port: int | None = None,
    tls_key: str | None = None,
    tls_cert: str | None = None,
    log_level: str = "info",
):
    """Run the graft server.

    The database user comes from GRAFT_DB_USER, the config file, or a prompt.
    TLS is enabled when both a key and a certificate are given (by option or
    in the config file).
    """
    import uvicorn

    cfg = ServerConfig.load()

    db_user = os.environ.get("GRAFT_DB_USER") or cfg.db_user
    if not db_user:
        db_user = prompt_db_user()
    os.environ["GRAFT_DB_USER"] = db_user

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    tls_key = tls_key or cfg.tls_key
    tls_cert = tls_cert or cfg.tls_cert
    if bool(tls_key) != bool(tls_cert):
        print("Error: TLS needs both --tls-key and --tls-cert.", file=sys.stderr)
        sys.exit(1)

    uvicorn.run(
        "graft.api:app",
        host=host or cfg.host,
        port=port or cfg.port,
        ssl_keyfile=tls_key,
        ssl_certfile=tls_cert,
        log_level=log_level.lower(),
    )


if __name__ == "__main__":
    app()
