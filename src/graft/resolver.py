"""Actor reference resolution.

A message names its senders or recipients with an actor reference, which may
take several JSON shapes:

    "alice"                          bare identifier
    {"id": "alice", ...}             embedded actor object
    ["alice", {"id": "bob"}, [...]]  list of references, nested freely

Resolution walks the reference and issues one link write per identifier.
List elements are resolved concurrently; the walk completes when every
element has completed and then fails with the first error among them.
Each leaf takes exclusive store access only for its own write.

An object without a string "id" resolves to None. The write still happens and
fails at the database on the NOT NULL constraint.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from .errors import InvalidActorReference

if TYPE_CHECKING:
    from .store import Store

logger = logging.getLogger(__name__)

LinkWriter = Callable[[int, "str | None"], Awaitable[None]]


def actor_id_of(reference: dict[str, Any]) -> str | None:
    """Extract the identifier of an embedded actor object."""
    actor_id = reference.get("id")
    return actor_id if isinstance(actor_id, str) else None


def validate_reference(reference: Any) -> None:
    """Check the shape of a reference without writing anything.

    Lets callers reject a malformed reference before creating the message
    it would be linked to.

    Raises:
        InvalidActorReference: If any element is not text, an object or a list.
    """
    if isinstance(reference, list):
        for element in reference:
            validate_reference(element)
    elif not isinstance(reference, (str, dict)):
        raise InvalidActorReference(reference)


async def resolve(reference: Any, message_id: int, write: LinkWriter, role: str = "actor") -> None:
    """Resolve a reference of any supported shape, writing one link per identifier.

    Args:
        reference: Decoded JSON value naming one or more actors.
        message_id: Message the links point to.
        write: Coroutine function called as write(message_id, actor_id) per leaf.
        role: Used in log messages only ("sender" or "recipient").

    Raises:
        InvalidActorReference: If the reference (or any nested element) is a
            number, boolean or null.
        StatementFailed: If a leaf write fails.
    """
    if isinstance(reference, str):
        actor_id: str | None = reference
    elif isinstance(reference, dict):
        actor_id = actor_id_of(reference)
    elif isinstance(reference, list):
        # Wait for every element, then fail with the first error in list order
        results = await asyncio.gather(
            *(resolve(element, message_id, write, role) for element in reference),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return
    else:
        raise InvalidActorReference(reference)

    logger.debug(f"Linking {role} {actor_id!r} to message {message_id}")
    await write(message_id, actor_id)


async def resolve_senders(reference: Any, message_id: int, store: Store) -> None:
    """Record every actor named by reference as a sender of message_id."""
    await resolve(reference, message_id, store.add_sender, "sender")


async def resolve_recipients(reference: Any, message_id: int, store: Store) -> None:
    """Record every actor named by reference as a recipient of message_id."""
    await resolve(reference, message_id, store.add_recipient, "recipient")
