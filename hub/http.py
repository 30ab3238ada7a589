"""Shared HTTP helpers."""

import httpx

from .config import HubSettings


def auth_headers(credential: str | None) -> dict[str, str]:
    """Request headers, with a bearer token when a credential is set."""
    headers = {"Content-Type": "application/json"}
    if credential:
        headers["Authorization"] = f"Bearer {credential}"
    return headers


def create_client(settings: HubSettings, transport: httpx.AsyncBaseTransport | None = None) -> httpx.AsyncClient:
    """Create the shared async client.

    Completions have no read timeout; probes and catalog fetches pass their
    own per-request timeouts.
    """
    return httpx.AsyncClient(
        timeout=httpx.Timeout(None, connect=settings.connect_timeout),
        transport=transport,
    )
