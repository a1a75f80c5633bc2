"""FastAPI application for graft.

Routes (Group actors live under /of, User actors under /by):

    GET    /of/{name}        actor object
    PUT    /of/{name}        create actor
    DELETE /of/{name}        delete actor
    GET    /of/{name}/all    outbox
    POST   /of/{name}/all    publish from {name} to the actors in "to"
    GET    /to/{name}        inbox
    POST   /to/{name}        deliver to {name} from the actors in "attributedTo"
"""

import json
import logging
import time
from contextlib import asynccontextmanager, contextmanager
from typing import Any, Literal

from fastapi import APIRouter, FastAPI, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field

from . import __version__
from .codec import ActorKind, to_json_value
from .errors import ClientInputFault, InternalFault, InvalidRequestBody
from .metrics import metrics
from .options import StoreOptions
from .resolver import resolve_recipients, resolve_senders, validate_reference
from .store import Connector, FatalHandler, Store

logger = logging.getLogger(__name__)

AS_CONTEXT = "https://www.w3.org/ns/activitystreams"

ACTOR_TYPES: dict[ActorKind, Literal["Group", "Person"]] = {
    ActorKind.GROUP: "Group",
    ActorKind.USER: "Person",
}

PREFIXES = {ActorKind.GROUP: "of", ActorKind.USER: "by"}


# --- Response Models ---


class ActorObject(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    context: str = Field(default=AS_CONTEXT, alias="@context")
    id: str
    type: Literal["Group", "Person"]
    preferredUsername: str
    inbox: str
    outbox: str


class OrderedCollection(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    context: str = Field(default=AS_CONTEXT, alias="@context")
    id: str
    type: Literal["OrderedCollection"] = "OrderedCollection"
    totalItems: int
    orderedItems: list[dict[str, Any]]


class ActorStatus(BaseModel):
    id: str
    type: Literal["Group", "Person"]
    status: str


class PostedMessage(BaseModel):
    id: int


# --- Helpers ---


def get_store(request: Request) -> Store:
    return request.app.state.store


@contextmanager
def http_errors():
    """Translate core faults into HTTP errors."""
    try:
        yield
    except ClientInputFault as e:
        raise HTTPException(400, str(e)) from e
    except InternalFault as e:
        logger.error(f"Internal fault: {e}")
        raise HTTPException(500, str(e)) from e


async def read_body(request: Request, actor_field: str) -> dict[str, Any]:
    """Parse a posted body, requiring a JSON object with a valid actor field."""
    try:
        body = await request.json()
    except ValueError:
        raise InvalidRequestBody("Request body is not valid JSON") from None
    if not isinstance(body, dict):
        raise InvalidRequestBody("Request body must be a JSON object")
    if actor_field not in body:
        raise InvalidRequestBody(f"Request body is missing {actor_field!r}")
    validate_reference(body[actor_field])
    return body


def content_of(body: dict[str, Any]) -> str | None:
    """Message content as stored; structured content is kept as its JSON text."""
    content = body.get("content")
    if content is None or isinstance(content, str):
        return content
    return json.dumps(content)


def base_url(request: Request) -> str:
    return str(request.base_url).rstrip("/")


def actor_object(request: Request, kind: ActorKind, name: str) -> ActorObject:
    base = base_url(request)
    prefix = PREFIXES[kind]
    return ActorObject(
        id=f"{base}/{prefix}/{name}",
        type=ACTOR_TYPES[kind],
        preferredUsername=name,
        inbox=f"{base}/to/{name}",
        outbox=f"{base}/{prefix}/{name}/all",
    )


def collection(request: Request, rows: list[dict[str, Any]]) -> OrderedCollection:
    items = [{k: to_json_value(v) for k, v in row.items()} for row in rows]
    return OrderedCollection(id=str(request.url), totalItems=len(items), orderedItems=items)


async def create_actor(request: Request, kind: ActorKind, name: str) -> ActorStatus:
    with http_errors():
        await get_store(request).create_actor(kind, name)
    logger.info(f"Created {kind.name.lower()} {name!r}")
    return ActorStatus(id=name, type=ACTOR_TYPES[kind], status="created")


async def delete_actor(request: Request, kind: ActorKind, name: str) -> ActorStatus:
    with http_errors():
        deleted = await get_store(request).delete_actor(kind, name)
    if not deleted:
        raise HTTPException(404, f"{ACTOR_TYPES[kind]} {name!r} not found")
    logger.info(f"Deleted {kind.name.lower()} {name!r}")
    return ActorStatus(id=name, type=ACTOR_TYPES[kind], status="deleted")


async def get_outbox(request: Request, name: str) -> OrderedCollection:
    with http_errors():
        rows = await get_store(request).get_outbox(name)
    return collection(request, rows)


async def publish(request: Request, name: str) -> PostedMessage:
    """Create a message sent by name to the actors in the body's "to"."""
    store = get_store(request)
    with http_errors():
        body = await read_body(request, "to")
        message_id = await store.create_message(content_of(body))
        await store.add_sender(message_id, name)
        await resolve_recipients(body["to"], message_id, store)
    return PostedMessage(id=message_id)


# --- Routes ---

router = APIRouter()


@router.get("/of/{name}", response_model=ActorObject)
async def get_group(request: Request, name: str):
    """Group actor object."""
    return actor_object(request, ActorKind.GROUP, name)


@router.put("/of/{name}", response_model=ActorStatus)
async def create_group(request: Request, name: str):
    return await create_actor(request, ActorKind.GROUP, name)


@router.delete("/of/{name}", response_model=ActorStatus)
async def delete_group(request: Request, name: str):
    return await delete_actor(request, ActorKind.GROUP, name)


@router.get("/of/{name}/all", response_model=OrderedCollection)
async def get_group_outbox(request: Request, name: str):
    """Messages the group sent, oldest first."""
    return await get_outbox(request, name)


@router.post("/of/{name}/all", response_model=PostedMessage)
async def post_group_outbox(request: Request, name: str):
    return await publish(request, name)


@router.get("/by/{name}", response_model=ActorObject)
async def get_user(request: Request, name: str):
    """User actor object."""
    return actor_object(request, ActorKind.USER, name)


@router.put("/by/{name}", response_model=ActorStatus)
async def create_user(request: Request, name: str):
    return await create_actor(request, ActorKind.USER, name)


@router.delete("/by/{name}", response_model=ActorStatus)
async def delete_user(request: Request, name: str):
    return await delete_actor(request, ActorKind.USER, name)


@router.get("/by/{name}/all", response_model=OrderedCollection)
async def get_user_outbox(request: Request, name: str):
    """Messages the user sent, oldest first."""
    return await get_outbox(request, name)


@router.post("/by/{name}/all", response_model=PostedMessage)
async def post_user_outbox(request: Request, name: str):
    return await publish(request, name)


@router.get("/to/{name}", response_model=OrderedCollection)
async def get_inbox(request: Request, name: str):
    """Messages the actor received, oldest first."""
    with http_errors():
        rows = await get_store(request).get_inbox(name)
    return collection(request, rows)


@router.post("/to/{name}", response_model=PostedMessage)
async def post_inbox(request: Request, name: str):
    """Deliver a message to name from the actors in the body's "attributedTo"."""
    store = get_store(request)
    with http_errors():
        body = await read_body(request, "attributedTo")
        message_id = await store.create_message(content_of(body))
        await store.add_recipient(message_id, name)
        await resolve_senders(body["attributedTo"], message_id, store)
    return PostedMessage(id=message_id)


@router.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok"}


@router.get("/metrics")
def get_metrics():
    """Request and statement timings."""
    return metrics.to_dict()


# --- Request Timing Middleware ---


def endpoint_of(path: str) -> str:
    """Normalize a request path for metrics aggregation."""
    if path.startswith("/to/"):
        return "inbox"
    if path.startswith(("/of/", "/by/")):
        return "outbox" if path.endswith("/all") else "actor"
    if path in ("/health", "/metrics"):
        return path[1:]
    return "other"


async def add_timing_middleware(request: Request, call_next):
    """Middleware to track request timing for metrics."""
    start_time = time.perf_counter()

    response = await call_next(request)

    duration_ms = (time.perf_counter() - start_time) * 1000
    metrics.record_request(endpoint_of(request.url.path), duration_ms)
    response.headers["X-Response-Time-Ms"] = f"{duration_ms:.1f}"

    return response


# --- Application ---


def create_app(
    options: StoreOptions | None = None,
    *,
    connector: Connector | None = None,
    on_fatal: FatalHandler | None = None,
) -> FastAPI:
    """Build the application.

    The store is connected when the application starts and closed when it
    stops. Options default to the environment (see StoreOptions).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store = await Store.connect(
            options or StoreOptions.from_env(),
            connector=connector,
            on_fatal=on_fatal,
        )
        app.state.store = store
        yield
        await store.close()

    app = FastAPI(
        title="graft",
        description="Minimal federated mailbox service",
        version=__version__,
        lifespan=lifespan,
    )
    app.middleware("http")(add_timing_middleware)
    app.include_router(router)
    return app


app = create_app()
