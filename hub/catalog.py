"""Model catalog aggregated across the active backends.

Each active backend is listed independently and concurrently; a backend that
fails or answers with garbage contributes no models and never aborts the
aggregation. Results are merged in the order the addresses were given
(registry order), and only the newest refresh is ever applied.
"""

import asyncio
import logging
import threading
from typing import Any, Callable

import httpx

from .errors import MalformedResponse
from .events import EventBus, Signal
from .http import auth_headers
from .interface import Model

logger = logging.getLogger(__name__)


def parse_models(payload: Any, address: str) -> list[Model]:
    """Map a /v1/models payload to Models owned by ``address``.

    Accepts the OpenAI ``{"data": [...]}`` envelope or a bare list.
    Descriptors without a string ``id`` are skipped.
    """
    items = payload.get("data") if isinstance(payload, dict) else payload
    if not isinstance(items, list):
        raise MalformedResponse("Expected a list of model descriptors", address=address)

    models = []
    for item in items:
        if not isinstance(item, dict) or not isinstance(item.get("id"), str):
            logger.debug(f"Skipping malformed model descriptor from {address}: {item!r}")
            continue
        parameter_size = item.get("parameter_size")
        models.append(Model(
            name=item["id"],
            server=address,
            multimodal=bool(item.get("multimodal", False)),
            pro=bool(item.get("pro", False)),
            parameter_size=str(parameter_size) if parameter_size is not None else None,
        ))
    return models


class ModelCatalog:
    """Flat, ordered list of models across active backends.

    ``current()`` never blocks on the network: it returns the last applied
    aggregation, which may be stale while a refresh is in flight.
    """

    def __init__(self, client: httpx.AsyncClient, events: EventBus | None = None, timeout: float = 10.0):
        self._client = client
        self._events = events if events is not None else EventBus()
        self.timeout = timeout
        self._models: list[Model] = []
        self._issued = 0   # last ticket handed out
        self._applied = 0  # ticket of the catalog in _models
        self._lock = threading.Lock()

    def current(self) -> list[Model]:
        """Last completed aggregation (copy)."""
        with self._lock:
            return list(self._models)

    def find(self, name: str, server: str | None = None) -> Model | None:
        """First model named ``name`` in catalog order, optionally on one server."""
        for model in self.current():
            if model.name == name and (server is None or model.server == server):
                return model
        return None

    async def fetch(self, address: str, credential: str | None = None) -> list[Model]:
        """List one backend's models. Failures yield an empty list."""
        url = f"{address}/v1/models"
        try:
            resp = await self._client.get(url, headers=auth_headers(credential), timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.warning(f"Failed to list models on {address}: {e}")
            return []

        if not resp.is_success:
            logger.warning(f"Failed to list models on {address}: status {resp.status_code}")
            return []

        try:
            models = parse_models(resp.json(), address)
        except (ValueError, MalformedResponse) as e:
            logger.warning(f"Malformed model listing from {address}: {e}")
            return []

        logger.debug(f"Found {len(models)} models on {address}")
        return models

    async def refresh(self, addresses: list[str], credential_for: Callable[[str], str | None]) -> list[Model]:
        """Re-aggregate the catalog over ``addresses``.

        Returns the catalog in effect afterwards. If a newer refresh was
        applied while this one was running, its result is discarded.
        """
        with self._lock:
            self._issued += 1
            ticket = self._issued

        addresses = list(addresses)
        logger.debug(f"Catalog refresh #{ticket} over {addresses}")
        results = await asyncio.gather(
            *(self.fetch(address, credential_for(address)) for address in addresses),
            return_exceptions=True,
        )

        models: list[Model] = []
        for address, result in zip(addresses, results):
            if isinstance(result, BaseException):
                logger.warning(f"Unexpected error listing models on {address}: {result!r}")
                continue
            models.extend(result)

        with self._lock:
            if ticket < self._applied:
                logger.debug(f"Discarding stale catalog refresh #{ticket} (have #{self._applied})")
                return list(self._models)
            changed = models != self._models
            self._models = models
            self._applied = ticket

        logger.info(f"Catalog refreshed: {len(models)} models from {len(addresses)} backend(s)")
        if changed:
            self._events.emit(Signal.CATALOG_CHANGED, list(models))
        return list(models)
