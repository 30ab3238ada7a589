"""Hub context: owns the registry, catalog, router and usage tracker.

Construct one Hub at process start and pass it to every collaborator.
Registry changes to the active address set schedule a catalog refresh;
refreshes are coalesced so at most one runs at a time and requests that
arrive meanwhile cause exactly one follow-up run.
"""

import asyncio
import logging
from typing import AsyncIterator

import httpx

from .catalog import ModelCatalog
from .completion import ChunkCallback, CompletionRouter
from .config import HubSettings, get_settings
from .errors import BackendNotFound
from .events import EventBus, Signal
from .http import create_client
from .interface import Backend, BackendRole, HealthStatus, Model, ProbeResult, QuotaSnapshot, Status
from .prober import HealthProber
from .registry import BackendRegistry, normalize_address
from .state import StateStore
from .usage import UsageTracker

logger = logging.getLogger(__name__)


class Hub:
    """Single logical inference service over all configured backends.

    Example:
        async with Hub() as hub:
            await hub.add_backend("http://192.168.1.50:11434")
            await hub.check_all()
            text = await hub.send("llama3", "Hello")
    """

    def __init__(
        self,
        settings: HubSettings | None = None,
        store: StateStore | None = None,
        client: httpx.AsyncClient | None = None,
        events: EventBus | None = None,
    ):
        self.settings = settings or get_settings()
        self.events = events if events is not None else EventBus()
        self.store = store if store is not None else StateStore(self.settings.state_file)
        self._owns_client = client is None
        self.client = client if client is not None else create_client(self.settings)

        self.registry = BackendRegistry(
            cloud_address=self.settings.cloud_address,
            local_address=self.settings.local_address,
            store=self.store,
            events=self.events,
            local_enabled=self.settings.local_enabled,
        )
        self.prober = HealthProber(
            self.client,
            timeout=self.settings.probe_timeout,
            local_catalog_path=self.settings.local_catalog_path,
            local_catalog_timeout=self.settings.local_catalog_timeout,
        )
        self.catalog = ModelCatalog(self.client, self.events, timeout=self.settings.catalog_timeout)
        self.usage = UsageTracker(self.client, self.settings.quota_url, self.store, self.events)
        self.router = CompletionRouter(self.catalog, self.registry, self.usage, self.client)

        self._session_token: str | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._refresh_task: asyncio.Task | None = None
        self._refresh_pending = False
        self._sweep_task: asyncio.Task | None = None

        self.events.subscribe(Signal.ACTIVE_SET_CHANGED, self._on_active_changed)

    # ─────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────

    async def start(self):
        """Load persisted backends, run a first health sweep and catalog refresh."""
        self._loop = asyncio.get_running_loop()
        self.registry.load()
        await self.check_all()
        await self.refresh_catalog()

        if self.settings.health_interval > 0:
            self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(f"Hub started with {len(self.registry)} backend(s)")

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.settings.health_interval)
            try:
                await self.check_all()
            except Exception:
                logger.exception("Background health sweep failed")

    async def aclose(self):
        """Stop background work and close the HTTP client if we created it."""
        for task in (self._sweep_task, self._refresh_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._sweep_task = None
        self._refresh_task = None
        if self._owns_client:
            await self.client.aclose()
        logger.info("Hub closed")

    async def __aenter__(self) -> "Hub":
        await self.start()
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    # ─────────────────────────────────────────────────────────────────
    # Catalog refresh (coalesced)
    # ─────────────────────────────────────────────────────────────────

    def _on_active_changed(self, signal: Signal, addresses):
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is not None:
            self.request_refresh()
        elif self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self.request_refresh)
        else:
            logger.debug("Active set changed outside an event loop; refresh deferred")

    def request_refresh(self) -> asyncio.Task:
        """Schedule a catalog refresh, coalescing with one already running."""
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_pending = True
            return self._refresh_task
        self._refresh_task = asyncio.get_running_loop().create_task(self._run_refreshes())
        return self._refresh_task

    async def _run_refreshes(self) -> list[Model]:
        while True:
            self._refresh_pending = False
            models = await self.catalog.refresh(
                self.registry.active_addresses(), self.registry.credential_for,
            )
            if not self._refresh_pending:
                return models
            logger.debug("Active set changed during refresh, running follow-up")

    async def refresh_catalog(self) -> list[Model]:
        """Refresh now and wait for the result (including any follow-up run)."""
        return await asyncio.shield(self.request_refresh())

    def models(self) -> list[Model]:
        """Current catalog without touching the network."""
        return self.catalog.current()

    # ─────────────────────────────────────────────────────────────────
    # Health
    # ─────────────────────────────────────────────────────────────────

    async def check_backend(self, address: str) -> ProbeResult:
        """Probe one backend and record the verdict."""
        backend = self.registry.get(address)
        if backend is None:
            raise BackendNotFound(address)
        address = backend.address

        credential = self._session_token if backend.role is BackendRole.CLOUD else backend.credential
        logger.info(f"Checking {backend.role.value} backend at {address}...")
        result = await self.prober.probe(address, credential)
        self.registry.set_health(address, result.status, result.detail)

        if backend.role is BackendRole.LOCAL and result.online:
            count = await self.prober.count_local_models(address)
            if count == 0:
                logger.info(f"Local daemon at {address} has no models installed")
                self.events.emit(Signal.EMPTY_LOCAL_CATALOG, {"address": address})
        return result

    async def check_local(self) -> ProbeResult:
        return await self.check_backend(self.registry.local_address)

    async def check_all(self) -> dict[str, ProbeResult]:
        """Probe the local and every enabled custom backend concurrently."""
        addresses = [
            b.address for b in self.registry.get_all()
            if b.role is not BackendRole.CLOUD and b.enabled
        ]
        results = await asyncio.gather(
            *(self.check_backend(a) for a in addresses), return_exceptions=True,
        )

        verdicts = {}
        for address, result in zip(addresses, results):
            if isinstance(result, BackendNotFound):
                logger.debug(f"Backend {address} removed during health sweep")
            elif isinstance(result, BaseException):
                logger.warning(f"Health check of {address} failed: {result!r}")
            else:
                verdicts[address] = result
        return verdicts

    # ─────────────────────────────────────────────────────────────────
    # Backend management
    # ─────────────────────────────────────────────────────────────────

    async def add_backend(self, address: str, credential: str | None = None, check: bool = True) -> Backend:
        """Add a custom backend (no-op if it exists) and probe it."""
        normalized = normalize_address(address)
        self.registry.add(normalized, credential)
        if check:
            await self.check_backend(normalized)
        return self.registry.get(normalized)

    def remove_backend(self, address: str) -> bool:
        return self.registry.remove(address)

    async def toggle_backend(self, address: str) -> bool | None:
        """Toggle a backend; a newly enabled, never-checked backend is probed."""
        enabled = self.registry.toggle(address)
        backend = self.registry.get(address)
        if enabled and backend and backend.role is not BackendRole.CLOUD \
                and backend.health is HealthStatus.UNCHECKED:
            await self.check_backend(address)
        return enabled

    def set_credential(self, address: str, credential: str | None) -> bool:
        return self.registry.set_credential(address, credential)

    def set_local_enabled(self, enabled: bool) -> bool:
        return self.registry.set_enabled(self.registry.local_address, enabled)

    # ─────────────────────────────────────────────────────────────────
    # Cloud session & quota
    # ─────────────────────────────────────────────────────────────────

    @property
    def session_token(self) -> str | None:
        return self._session_token

    def set_session(self, token: str | None):
        """Set (or clear) the cloud session token."""
        self._session_token = token or None
        self.registry.set_authenticated(self._session_token is not None)
        if self._session_token is None:
            self.usage.reset()

    async def set_cloud_enabled(self, enabled: bool, token: str | None = None) -> bool:
        """Enable or disable the cloud backend. Enabling requires a session."""
        if token is not None:
            self.set_session(token)
        if enabled and not self.registry.authenticated:
            logger.warning("Refusing to enable the cloud backend without a session")
            return False

        self.registry.set_enabled(self.registry.cloud_address, enabled)
        if enabled:
            await self.refresh_quota()
        else:
            self.usage.reset()
        return True

    async def refresh_quota(self, token: str | None = None) -> QuotaSnapshot | None:
        """Refresh the cloud quota; cleared when the cloud backend is off."""
        token = token or self._session_token
        cloud = self.registry.get(self.registry.cloud_address)
        if not token or not cloud.enabled:
            self.usage.reset()
            return None
        return await self.usage.refresh(token)

    # ─────────────────────────────────────────────────────────────────
    # Completions & status
    # ─────────────────────────────────────────────────────────────────

    async def send(
        self,
        model_name: str,
        content: str,
        images: list[str] | None = None,
        stream: bool = False,
        on_chunk: ChunkCallback | None = None,
        token: str | None = None,
    ) -> str:
        """Send a single-turn completion to the backend owning ``model_name``."""
        return await self.router.send(
            model_name,
            content,
            images=images,
            token=token or self._session_token,
            stream=stream,
            on_chunk=on_chunk,
        )

    def stream(
        self,
        model_name: str,
        content: str,
        images: list[str] | None = None,
        token: str | None = None,
    ) -> AsyncIterator[str]:
        """Async iterator over completion fragments (see CompletionRouter.stream)."""
        return self.router.stream(model_name, content, images, token or self._session_token)

    def status(self) -> Status:
        """Aggregate connectivity and quota across all backends."""
        return Status(
            health=self.registry.aggregate_health(),
            active=self.registry.active_addresses(),
            model_count=len(self.catalog.current()),
            quota=self.usage.snapshot,
            session_expired=self.usage.session_expired,
        )
