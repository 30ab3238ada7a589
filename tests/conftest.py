"""Shared fixtures: a fake network of backends behind httpx.MockTransport."""

import json
from typing import Callable

import httpx
import pytest
import sse_starlette.sse

from hub import EventBus, Hub, StateStore
from hub.config import HubSettings

CLOUD = "https://cloud.test"
QUOTA_URL = "https://cloud.test/quota"
LOCAL = "http://local.test:3838"
CUSTOM_A = "http://a.test:8000"
CUSTOM_B = "http://b.test:8000"
CUSTOM_C = "http://c.test:8000"

Handler = Callable[[httpx.Request], httpx.Response]


def models_payload(*names: str) -> dict:
    return {"object": "list", "data": [{"id": name, "object": "model"} for name in names]}


def completion_payload(text) -> dict:
    return {"choices": [{"index": 0, "message": {"role": "assistant", "content": text}}]}


def sse_body(*fragments: str, done: bool = True) -> str:
    frames = [
        "data: " + json.dumps({"choices": [{"index": 0, "delta": {"content": f}}]})
        for f in fragments
    ]
    if done:
        frames.append("data: [DONE]")
    return "\n\n".join(frames) + "\n\n"


def respond(status: int = 200, json_body=None, text: str | None = None) -> Handler:
    def handler(request: httpx.Request) -> httpx.Response:
        if text is not None:
            return httpx.Response(status, text=text)
        return httpx.Response(status, json=json_body)
    return handler


class FakeNetwork:
    """Routes requests by method and URL (query ignored).

    Unrouted URLs behave like a host that refuses connections.
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], Handler] = {}
        self.requests: list[httpx.Request] = []

    def route(self, method: str, url: str, handler: Handler):
        self.routes[(method, url)] = handler

    def models(self, address: str, *names: str):
        self.route("GET", f"{address}/v1/models", respond(200, models_payload(*names)))

    def completion(self, address: str, handler: Handler):
        self.route("POST", f"{address}/v1/chat/completions", handler)

    def calls(self, method: str, url: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and str(r.url).split("?")[0] == url]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, str(request.url).split("?")[0]))
        if handler is None:
            raise httpx.ConnectError("Connection refused", request=request)
        response = handler(request)
        if not isinstance(response, httpx.Response):
            response = await response
        return response


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def client(network):
    return httpx.AsyncClient(transport=httpx.MockTransport(network))


@pytest.fixture
def settings() -> HubSettings:
    return HubSettings(
        cloud_address=CLOUD,
        quota_url=QUOTA_URL,
        local_address=LOCAL,
        state_file=None,
        health_interval=0,
    )


@pytest.fixture
def store() -> StateStore:
    return StateStore()


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(events):
    """List of (signal, payload) tuples emitted on the shared bus."""
    received = []
    events.subscribe_all(lambda signal, payload: received.append((signal, payload)))
    return received


@pytest.fixture
def hub(settings, store, client, events) -> Hub:
    return Hub(settings=settings, store=store, client=client, events=events)


@pytest.fixture(autouse=True)
def reset_sse_app_status():
    """sse-starlette keeps a module-level exit event bound to the first loop."""
    app_status = getattr(sse_starlette.sse, "AppStatus", None)
    if app_status is not None and hasattr(app_status, "should_exit_event"):
        app_status.should_exit_event = None
    yield
