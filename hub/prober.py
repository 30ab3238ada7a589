"""Single-endpoint health probes."""

import logging

import httpx

from .http import auth_headers
from .interface import HealthStatus, ProbeResult

logger = logging.getLogger(__name__)


class HealthProber:
    """Reachability/auth check against one backend.

    A probe is one GET to {address}/v1/models with no retries. Any 2xx means
    online; anything else, including transport failures, means offline.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        timeout: float = 2.5,
        local_catalog_path: str = "/api/tags",
        local_catalog_timeout: float = 1.0,
    ):
        self._client = client
        self.timeout = timeout
        self.local_catalog_path = local_catalog_path
        self.local_catalog_timeout = local_catalog_timeout

    async def probe(self, address: str, credential: str | None = None) -> ProbeResult:
        """Probe a backend. Never raises for network failures."""
        url = f"{address}/v1/models"
        logger.debug(f"Probing {url}")
        try:
            resp = await self._client.get(url, headers=auth_headers(credential), timeout=self.timeout)
        except httpx.TimeoutException:
            logger.warning(f"Probe of {address} timed out after {self.timeout}s")
            return ProbeResult(HealthStatus.OFFLINE, f"Timed out after {self.timeout}s")
        except httpx.RequestError as e:
            logger.warning(f"Probe of {address} failed: {e}")
            return ProbeResult(HealthStatus.OFFLINE, "Could not connect to server")

        if resp.is_success:
            return ProbeResult(HealthStatus.ONLINE)

        logger.warning(f"Probe of {address} returned status {resp.status_code}")
        return ProbeResult(HealthStatus.OFFLINE, f"Server responded with status {resp.status_code}")

    async def count_local_models(self, address: str) -> int | None:
        """Number of models installed on a local daemon, or None if unknown.

        Only daemons exposing the native listing path answer this; any failure
        means "not that kind of daemon" and is not an error.
        """
        url = f"{address}{self.local_catalog_path}"
        try:
            resp = await self._client.get(url, timeout=self.local_catalog_timeout)
            if not resp.is_success:
                logger.debug(f"Local listing at {url} returned {resp.status_code}")
                return None
            models = resp.json().get("models")
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.debug(f"Local listing not available at {url}: {e}")
            return None
        if not isinstance(models, list):
            return None
        return len(models)
