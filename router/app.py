"""FastAPI service exposing one Hub over HTTP.

Offers the hub's management calls as JSON endpoints, an OpenAI-compatible
``/v1`` facade routed by model name, and an SSE stream of hub signals.
"""

import asyncio
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import asdict, is_dataclass
from enum import Enum
from typing import Any, AsyncIterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from hub import (
    Backend,
    BackendError,
    BackendNotFound,
    BackendUnreachable,
    Hub,
    HubError,
    InvalidAddress,
    MalformedResponse,
    Model,
    ModelNotFound,
    QuotaExceeded,
    Signal,
    Status,
    Unauthorized,
)

from .config import config

logger = logging.getLogger(__name__)

DATA_URL_MARKER = ";base64,"

ERROR_STATUS: dict[type[HubError], int] = {
    ModelNotFound: 404,
    BackendNotFound: 404,
    QuotaExceeded: 429,
    Unauthorized: 401,
    InvalidAddress: 400,
    BackendError: 502,
    BackendUnreachable: 502,
    MalformedResponse: 502,
}


# ─────────────────────────────────────────────────────────────────
# Request/Response Models
# ─────────────────────────────────────────────────────────────────

class AddBackendRequest(BaseModel):
    address: str
    credential: str | None = None


class AddressRequest(BaseModel):
    address: str


class CredentialRequest(BaseModel):
    address: str
    credential: str | None = None


class CheckRequest(BaseModel):
    address: str | None = None


class CloudRequest(BaseModel):
    enabled: bool
    token: str | None = None


class LocalRequest(BaseModel):
    enabled: bool


class QuotaRequest(BaseModel):
    token: str | None = None


class ChatCompletionRequest(BaseModel):
    model: str
    messages: list[dict]
    stream: bool = False


class ActionResponse(BaseModel):
    success: bool
    message: str = ""


# ─────────────────────────────────────────────────────────────────
# Serialization helpers
# ─────────────────────────────────────────────────────────────────

def jsonable(value: Any) -> Any:
    """Convert hub dataclasses/enums (possibly nested in lists/dicts) to JSON types."""
    if is_dataclass(value) and not isinstance(value, type):
        return jsonable(asdict(value))
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    return value


def backend_view(backend: Backend) -> dict:
    return {
        "address": backend.address,
        "role": backend.role.value,
        "enabled": backend.enabled,
        "status": backend.health.value,
        "detail": backend.detail,
        "credential": backend.masked_credential,
    }


def status_view(status: Status, quota_state: str) -> dict:
    return {
        "status": status.health.value,
        "active": status.active,
        "model_count": status.model_count,
        "quota": status.quota.to_dict() if status.quota else None,
        "quota_state": quota_state,
        "session_expired": status.session_expired,
    }


def model_view(model: Model) -> dict:
    return {
        "id": model.name,
        "object": "model",
        "owned_by": model.server,
        "multimodal": model.multimodal,
        "pro": model.pro,
        "parameter_size": model.parameter_size,
    }


def event_message(signal: Signal, payload: Any) -> dict:
    """SSE message for a hub signal (event name = signal value)."""
    return {"event": signal.value, "data": json.dumps(jsonable(payload))}


def split_user_message(messages: list[dict]) -> tuple[str, list[str]]:
    """Text and base64 images of the last user message.

    Hub completions are single-turn, so earlier messages are ignored.
    """
    for message in reversed(messages):
        if message.get("role") == "user":
            break
    else:
        raise ValueError("Request contains no user message")

    content = message.get("content")
    if isinstance(content, str):
        return content, []
    if not isinstance(content, list):
        raise ValueError("User message content must be a string or a list of parts")

    texts: list[str] = []
    images: list[str] = []
    for part in content:
        if not isinstance(part, dict):
            continue
        if part.get("type") == "text":
            texts.append(str(part.get("text", "")))
        elif part.get("type") == "image_url":
            image = part.get("image_url") or {}
            url = image.get("url", "") if isinstance(image, dict) else str(image)
            if DATA_URL_MARKER not in url:
                raise ValueError("Only base64 data URL images are supported")
            images.append(url.split(DATA_URL_MARKER, 1)[1])
    return "\n".join(texts), images


def completion_chunk(completion_id: str, created: int, model: str, delta: dict, finish_reason=None) -> str:
    return json.dumps({
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    })


async def signal_events(
    hub: Hub,
    request: Request,
    shutdown_event: asyncio.Event,
    queue_size: int = 100,
) -> AsyncIterator[dict]:
    """Yield a status message, then one message per hub signal until shutdown or disconnect.

    Signals emitted from other threads are handed to the loop with
    ``call_soon_threadsafe``. A full queue drops the newest message.
    """
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)

    def enqueue(message: dict):
        try:
            queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.debug("SSE: client queue full, dropping event")

    def on_signal(signal: Signal, payload: Any):
        loop.call_soon_threadsafe(enqueue, event_message(signal, payload))

    unsubscribe = hub.events.subscribe_all(on_signal)
    try:
        yield {"event": "status", "data": json.dumps(status_view(hub.status(), hub.usage.status.value))}
        while not shutdown_event.is_set():
            if await request.is_disconnected():
                logger.debug("SSE: client disconnected")
                break
            try:
                yield await asyncio.wait_for(queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
    finally:
        unsubscribe()
        logger.debug("SSE: generator exiting")


# ─────────────────────────────────────────────────────────────────
# Application
# ─────────────────────────────────────────────────────────────────

def get_hub(request: Request) -> Hub:
    return request.app.state.hub


def create_app(hub: Hub | None = None) -> FastAPI:
    """Build the service around ``hub`` (a default Hub when omitted)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Router starting up")
        app.state.hub = hub if hub is not None else Hub()
        app.state.shutdown_event = asyncio.Event()
        await app.state.hub.start()
        try:
            yield
        except asyncio.CancelledError:
            logger.debug("Lifespan cancelled (shutdown signal)")
        finally:
            app.state.shutdown_event.set()
            await asyncio.sleep(0.1)
            await app.state.hub.aclose()
            logger.info("Router shutdown complete")

    app = FastAPI(title="Inference Hub", version="0.1.0", lifespan=lifespan)
    register_error_handlers(app)
    register_routes(app)
    return app


def register_error_handlers(app: FastAPI):
    @app.exception_handler(HubError)
    async def hub_error_handler(request: Request, exc: HubError):
        status_code = next(
            (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500,
        )
        body = {"error": exc.kind, "message": exc.message}
        if isinstance(exc, BackendError):
            body["status_code"] = exc.status_code
        if exc.address:
            body["address"] = exc.address
        logger.warning(f"{request.method} {request.url.path} -> {status_code}: {exc.message}")
        return JSONResponse(body, status_code=status_code)

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        logger.warning(f"{request.method} {request.url.path} -> 400: {exc}")
        return JSONResponse({"error": "invalid_request", "message": str(exc)}, status_code=400)


def register_routes(app: FastAPI):

    # ─────────────────────────────────────────────────────────────
    # Status & backends
    # ─────────────────────────────────────────────────────────────

    @app.get("/status")
    def api_status(request: Request):
        hub = get_hub(request)
        return status_view(hub.status(), hub.usage.status.value)

    @app.get("/backends")
    def api_list_backends(request: Request):
        return [backend_view(b) for b in get_hub(request).registry.get_all()]

    @app.post("/backends")
    async def api_add_backend(req: AddBackendRequest, request: Request):
        logger.info(f"API: add backend {req.address}")
        backend = await get_hub(request).add_backend(req.address, req.credential)
        return backend_view(backend)

    @app.delete("/backends")
    def api_remove_backend(address: str, request: Request) -> ActionResponse:
        logger.info(f"API: remove backend {address}")
        if not get_hub(request).remove_backend(address):
            raise BackendNotFound(address)
        return ActionResponse(success=True, message=f"Removed {address}")

    @app.post("/backends/toggle")
    async def api_toggle_backend(req: AddressRequest, request: Request):
        hub = get_hub(request)
        enabled = await hub.toggle_backend(req.address)
        if enabled is None:
            raise BackendNotFound(req.address)
        return {"address": hub.registry.get(req.address).address, "enabled": enabled}

    @app.post("/backends/credential")
    def api_set_credential(req: CredentialRequest, request: Request) -> ActionResponse:
        if not get_hub(request).set_credential(req.address, req.credential):
            raise BackendNotFound(req.address)
        return ActionResponse(success=True, message="Credential updated")

    @app.post("/backends/check")
    async def api_check(req: CheckRequest, request: Request):
        hub = get_hub(request)
        if req.address:
            results = {req.address: await hub.check_backend(req.address)}
        else:
            results = await hub.check_all()
        return {addr: {"status": r.status.value, "detail": r.detail} for addr, r in results.items()}

    @app.post("/local")
    def api_set_local(req: LocalRequest, request: Request) -> ActionResponse:
        get_hub(request).set_local_enabled(req.enabled)
        return ActionResponse(success=True, message=f"Local backend {'enabled' if req.enabled else 'disabled'}")

    # ─────────────────────────────────────────────────────────────
    # Cloud session & quota
    # ─────────────────────────────────────────────────────────────

    @app.post("/cloud")
    async def api_set_cloud(req: CloudRequest, request: Request):
        hub = get_hub(request)
        if not await hub.set_cloud_enabled(req.enabled, req.token):
            raise Unauthorized("Sign in before enabling the cloud backend")
        return status_view(hub.status(), hub.usage.status.value)

    @app.post("/quota/refresh")
    async def api_refresh_quota(req: QuotaRequest, request: Request):
        hub = get_hub(request)
        snapshot = await hub.refresh_quota(req.token)
        return {
            "quota": snapshot.to_dict() if snapshot else None,
            "state": hub.usage.status.value,
            "upgrade_prompted": hub.usage.upgrade_prompted,
        }

    # ─────────────────────────────────────────────────────────────
    # Catalog & OpenAI-compatible facade
    # ─────────────────────────────────────────────────────────────

    @app.post("/catalog/refresh")
    async def api_refresh_catalog(request: Request):
        models = await get_hub(request).refresh_catalog()
        return {"object": "list", "data": [model_view(m) for m in models]}

    @app.get("/v1/models")
    def api_models(request: Request):
        return {"object": "list", "data": [model_view(m) for m in get_hub(request).models()]}

    @app.post("/v1/chat/completions")
    async def api_chat_completions(req: ChatCompletionRequest, request: Request):
        hub = get_hub(request)
        content, images = split_user_message(req.messages)
        completion_id = f"chatcmpl-{uuid.uuid4().hex[:24]}"
        created = int(time.time())
        logger.info(f"Chat request: model={req.model} stream={req.stream} images={len(images)}")

        if not req.stream:
            text = await hub.send(req.model, content, images=images)
            return {
                "id": completion_id,
                "object": "chat.completion",
                "created": created,
                "model": req.model,
                "choices": [{
                    "index": 0,
                    "message": {"role": "assistant", "content": text},
                    "finish_reason": "stop",
                }],
            }

        # Resolve up front so an unknown model is a 404, not a broken stream
        hub.router.resolve(req.model)

        async def stream_response():
            try:
                async for fragment in hub.stream(req.model, content, images):
                    yield {"data": completion_chunk(completion_id, created, req.model, {"content": fragment})}
                yield {"data": completion_chunk(completion_id, created, req.model, {}, "stop")}
            except HubError as e:
                logger.warning(f"Chat stream failed: {e.message}")
                yield {"data": json.dumps({"error": e.kind, "message": e.message})}
            yield {"data": "[DONE]"}

        return EventSourceResponse(stream_response())

    # ─────────────────────────────────────────────────────────────
    # Event stream
    # ─────────────────────────────────────────────────────────────

    @app.get("/events")
    async def api_events(request: Request):
        """Server-Sent Events stream of hub signals.

        Each message's event name is the signal value (e.g. "catalog-changed")
        and its data is the JSON-encoded payload.
        """
        logger.debug("SSE: client connected to /events")
        return EventSourceResponse(signal_events(
            get_hub(request), request, request.app.state.shutdown_event, config.event_queue_size,
        ))


app = create_app()
