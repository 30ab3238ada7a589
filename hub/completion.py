"""Completion routing: model name -> owning backend -> chat completion.

Requests are single-turn: one user message whose content is plain text, or
a text part followed by one PNG image part per image. Streaming responses
are OpenAI-style SSE frames (``data: <json>`` ... ``data: [DONE]``).
"""

import inspect
import json
import logging
from typing import Any, AsyncIterator, Callable

import httpx

from .catalog import ModelCatalog
from .errors import (
    BackendError,
    BackendUnreachable,
    MalformedResponse,
    ModelNotFound,
    QuotaExceeded,
    Unauthorized,
)
from .http import auth_headers
from .interface import Model
from .registry import BackendRegistry
from .usage import UsageTracker

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], Any]

SSE_PREFIX = "data: "
SSE_DONE = "[DONE]"
DETAIL_LIMIT = 200


def build_messages(content: str, images: list[str] | None = None) -> list[dict]:
    """Single user message; images are base64 PNG data, kept in input order."""
    if not images:
        return [{"role": "user", "content": content}]
    parts: list[dict] = [{"type": "text", "text": content}]
    parts.extend(
        {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{image}"}}
        for image in images
    )
    return [{"role": "user", "content": parts}]


def extract_detail(body: str) -> str:
    """Short diagnostic from an error body: JSON ``detail`` or the first 200 chars."""
    try:
        data = json.loads(body)
    except ValueError:
        data = None
    if isinstance(data, dict) and data.get("detail"):
        detail = data["detail"]
        return detail if isinstance(detail, str) else json.dumps(detail)
    return body.strip()[:DETAIL_LIMIT]


def _delta_content(chunk: Any) -> str | None:
    try:
        content = chunk["choices"][0]["delta"]["content"]
    except (KeyError, IndexError, TypeError):
        return None
    return content if isinstance(content, str) else None


async def iter_sse_content(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield the text fragments of an SSE completion stream.

    Stops at ``[DONE]`` or end of stream. Lines without the ``data: `` prefix
    and frames that do not decode are skipped.
    """
    async for line in lines:
        if not line.startswith(SSE_PREFIX):
            continue
        data = line[len(SSE_PREFIX):]
        if data == SSE_DONE:
            return
        try:
            chunk = json.loads(data)
        except ValueError:
            logger.debug(f"Skipping malformed stream frame: {data[:80]!r}")
            continue
        content = _delta_content(chunk)
        if content:
            yield content


def raise_for_status(resp: httpx.Response, address: str):
    """Map a non-2xx completion response to a hub error."""
    if resp.is_success:
        return
    if resp.status_code == 429:
        logger.warning(f"Quota exceeded on {address}")
        raise QuotaExceeded("Access denied. Quota may be exceeded.", address=address)
    if resp.status_code == 401:
        logger.warning(f"Unauthorized on {address}")
        raise Unauthorized("Authorization rejected by backend", address=address)
    detail = extract_detail(resp.text)
    logger.error(f"API error from {address}: status {resp.status_code} body={detail!r}")
    raise BackendError(resp.status_code, detail, address=address)


class CompletionRouter:
    """Dispatches chat completions to the backend owning a model.

    The cloud backend is called with the caller's session token; every other
    backend with its own stored credential.
    """

    def __init__(
        self,
        catalog: ModelCatalog,
        registry: BackendRegistry,
        usage: UsageTracker,
        client: httpx.AsyncClient,
    ):
        self._catalog = catalog
        self._registry = registry
        self._usage = usage
        self._client = client

    def resolve(self, model_name: str) -> Model:
        """First catalog entry with this name, else ModelNotFound."""
        model = self._catalog.find(model_name)
        if model is None:
            logger.warning(f"Model '{model_name}' not found in catalog")
            raise ModelNotFound(model_name)
        return model

    def _prepare(
        self,
        model_name: str,
        content: str,
        images: list[str] | None,
        token: str | None,
        stream: bool,
    ) -> tuple[str, dict, dict]:
        model = self.resolve(model_name)
        address = model.server

        if self._registry.is_cloud(address):
            credential = token
        else:
            credential = self._registry.credential_for(address)

        payload = {
            "model": model_name,
            "messages": build_messages(content, images),
            "stream": stream,
        }

        if self._registry.is_cloud(address) and token:
            self._usage.optimistic_decrement()

        logger.info(
            f"Dispatching completion: model={model_name} backend={address} "
            f"stream={stream} images={len(images or [])}"
        )
        return address, auth_headers(credential), payload

    async def send(
        self,
        model_name: str,
        content: str,
        images: list[str] | None = None,
        token: str | None = None,
        stream: bool = False,
        on_chunk: ChunkCallback | None = None,
    ) -> str:
        """Run a completion and return its full text.

        With ``stream``, each fragment is passed to ``on_chunk`` (sync or async)
        before the next frame is read.
        """
        if stream:
            parts: list[str] = []
            async for fragment in self.stream(model_name, content, images, token):
                parts.append(fragment)
                if on_chunk is not None:
                    result = on_chunk(fragment)
                    if inspect.isawaitable(result):
                        await result
            return "".join(parts)

        address, headers, payload = self._prepare(model_name, content, images, token, False)
        url = f"{address}/v1/chat/completions"
        try:
            resp = await self._client.post(url, json=payload, headers=headers)
        except httpx.RequestError as e:
            logger.error(f"Completion request to {address} failed: {e}")
            raise BackendUnreachable(f"Backend request failed: {e}", address=address) from e

        raise_for_status(resp, address)

        try:
            data = resp.json()
            text = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError):
            logger.error(f"Unexpected API response structure from {address}: {resp.text[:DETAIL_LIMIT]!r}")
            raise MalformedResponse("Unexpected API response structure", address=address)
        if text is None:
            text = ""
        if not isinstance(text, str):
            raise MalformedResponse("Completion content is not text", address=address)
        return text

    async def stream(
        self,
        model_name: str,
        content: str,
        images: list[str] | None = None,
        token: str | None = None,
    ) -> AsyncIterator[str]:
        """Yield completion fragments as they arrive.

        Closing the generator (or cancelling its consumer) closes the
        connection; nothing accumulated so far is kept.
        """
        address, headers, payload = self._prepare(model_name, content, images, token, True)
        url = f"{address}/v1/chat/completions"
        try:
            async with self._client.stream("POST", url, json=payload, headers=headers) as resp:
                if not resp.is_success:
                    await resp.aread()
                    raise_for_status(resp, address)
                async for fragment in iter_sse_content(resp.aiter_lines()):
                    yield fragment
        except httpx.RequestError as e:
            logger.error(f"Streaming request to {address} failed: {e}")
            raise BackendUnreachable(f"Backend request failed: {e}", address=address) from e
