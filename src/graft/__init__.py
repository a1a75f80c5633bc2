"""graft - Minimal federated-actor mailbox service.

Usage:
    from graft import ActorKind, Store, StoreOptions, resolve_recipients

    store = await Store.connect(StoreOptions(user="graft"))
    await store.create_actor(ActorKind.GROUP, "editors")

    message_id = await store.create_message("Hello!")
    await store.add_sender(message_id, "alice")
    await resolve_recipients(["editors", {"id": "bob"}], message_id, store)

    inbox = await store.get_inbox("bob")
"""

__version__ = "0.1.0"

from graft.codec import ActorKind, ColumnType, decode_cell
from graft.errors import ClientInputFault, FatalProcessFault, GraftError, InternalFault
from graft.options import GraftConfigError, StoreOptions
from graft.resolver import resolve_recipients, resolve_senders
from graft.store import Store

__all__ = [
    "__version__",
    "ActorKind",
    "ColumnType",
    "decode_cell",
    "Store",
    "StoreOptions",
    "GraftConfigError",
    "GraftError",
    "ClientInputFault",
    "InternalFault",
    "FatalProcessFault",
    "resolve_senders",
    "resolve_recipients",
]
