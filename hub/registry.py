"""Backend registry - single source of truth for known backends.

Holds the fixed cloud and local backends plus user-defined custom backends,
and derives the active address set from their enabled/health state. The
registry does no network I/O; it notifies ACTIVE_SET_CHANGED listeners so
the owner can refresh the model catalog.
"""

import logging
import threading
from dataclasses import replace
from typing import Iterator

from .errors import InvalidAddress
from .events import EventBus, Signal
from .interface import Backend, BackendRole, HealthStatus
from .state import CUSTOM_SERVERS_KEY, StateStore

logger = logging.getLogger(__name__)


def _key(address: str) -> str:
    """Lookup form of an address: trimmed, no trailing slash, not validated."""
    return (address or "").strip().rstrip("/")


def normalize_address(address: str) -> str:
    """Trim whitespace and trailing slashes, and require an http(s) scheme."""
    normalized = _key(address)
    if not normalized:
        raise InvalidAddress("Please enter a server address")
    if not normalized.startswith(("http://", "https://")):
        raise InvalidAddress(
            f"URL must start with http:// or https:// (got {normalized!r})",
            address=normalized,
        )
    return normalized


class BackendRegistry:
    """Registry of known backends and the active address set.

    Iteration order is registration order: cloud, local, then custom
    backends in the order they were added. All mutations are synchronous
    and leave the registry consistent before listeners are notified.
    """

    def __init__(
        self,
        cloud_address: str,
        local_address: str,
        store: StateStore | None = None,
        events: EventBus | None = None,
        local_enabled: bool = True,
    ):
        self._store = store if store is not None else StateStore()
        self._events = events if events is not None else EventBus()
        self._backends: dict[str, Backend] = {}
        self._active: set[str] = set()
        self._authenticated = False
        self._lock = threading.RLock()  # Protects _backends, _active, _authenticated

        self.cloud_address = normalize_address(cloud_address)
        self.local_address = normalize_address(local_address)
        self._backends[self.cloud_address] = Backend(
            address=self.cloud_address, role=BackendRole.CLOUD, enabled=False,
        )
        self._backends[self.local_address] = Backend(
            address=self.local_address, role=BackendRole.LOCAL, enabled=local_enabled,
        )

    @property
    def events(self) -> EventBus:
        return self._events

    # ─────────────────────────────────────────────────────────────────
    # Persistence
    # ─────────────────────────────────────────────────────────────────

    def load(self) -> int:
        """Load custom backends from the store. Returns the number loaded.

        Health is reset to unchecked; a loaded backend only joins the active
        set after it has been probed.
        """
        records = self._store.get(CUSTOM_SERVERS_KEY, [])
        if not isinstance(records, list):
            logger.warning(f"Ignoring stored custom backends: expected a list, got {type(records).__name__}")
            return 0

        loaded = 0
        with self._lock:
            for record in records:
                try:
                    backend = Backend.from_record(record)
                    backend.address = normalize_address(backend.address)
                except (KeyError, TypeError, AttributeError, InvalidAddress) as e:
                    logger.warning(f"Skipping invalid custom backend record {record!r}: {e}")
                    continue
                if backend.address in self._backends:
                    logger.debug(f"Skipping duplicate custom backend {backend.address}")
                    continue
                backend.health = HealthStatus.UNCHECKED
                self._backends[backend.address] = backend
                loaded += 1
            self._save()

        logger.info(f"Loaded {loaded} custom backend(s)")
        return loaded

    def _save(self):
        records = [b.to_record() for b in self._backends.values() if b.role is BackendRole.CUSTOM]
        self._store.set(CUSTOM_SERVERS_KEY, records)

    # ─────────────────────────────────────────────────────────────────
    # Active set derivation
    # ─────────────────────────────────────────────────────────────────

    def _eligible(self, backend: Backend) -> bool:
        if not backend.enabled:
            return False
        if backend.role is BackendRole.CLOUD:
            return self._authenticated
        return backend.health is HealthStatus.ONLINE

    def _rederive(self, address: str):
        backend = self._backends.get(address)
        if backend is not None and self._eligible(backend):
            self._active.add(address)
        else:
            self._active.discard(address)

    def _ordered_active(self) -> list[str]:
        return [a for a in self._backends if a in self._active]

    def _notify_if_changed(self, before: list[str]):
        after = self.active_addresses()
        if after != before:
            logger.info(f"Active backends changed: {after}")
            self._events.emit(Signal.ACTIVE_SET_CHANGED, after)

    # ─────────────────────────────────────────────────────────────────
    # Mutations
    # ─────────────────────────────────────────────────────────────────

    def add(self, address: str, credential: str | None = None) -> bool:
        """Add a custom backend. Returns False if the address already exists."""
        address = normalize_address(address)
        with self._lock:
            if address in self._backends:
                logger.debug(f"Backend {address} already registered")
                return False
            self._backends[address] = Backend(
                address=address,
                role=BackendRole.CUSTOM,
                credential=credential or None,
            )
            self._save()
        logger.info(f"Added custom backend {address}")
        return True

    def remove(self, address: str) -> bool:
        """Remove a custom backend and retract it from the active set.

        Returns False if the address was not registered. The fixed cloud and
        local backends cannot be removed.
        """
        address = _key(address)
        with self._lock:
            before = self._ordered_active()
            backend = self._backends.get(address)
            if backend is not None and backend.role is not BackendRole.CUSTOM:
                raise ValueError(f"Cannot remove the {backend.role.value} backend")
            self._active.discard(address)
            removed = self._backends.pop(address, None) is not None
            if removed:
                self._save()
        if removed:
            logger.info(f"Removed custom backend {address}")
        self._notify_if_changed(before)
        return removed

    def toggle(self, address: str) -> bool | None:
        """Flip a backend's enabled flag. Returns the new value, or None if unknown."""
        address = _key(address)
        with self._lock:
            before = self._ordered_active()
            backend = self._backends.get(address)
            if backend is None:
                logger.warning(f"Cannot toggle unknown backend {address}")
                return None
            backend.enabled = not backend.enabled
            self._rederive(address)
            if backend.role is BackendRole.CUSTOM:
                self._save()
            enabled = backend.enabled
        logger.info(f"Backend {address} {'enabled' if enabled else 'disabled'}")
        self._notify_if_changed(before)
        return enabled

    def set_enabled(self, address: str, enabled: bool) -> bool:
        """Enable or disable a backend. Returns False if unknown."""
        address = _key(address)
        with self._lock:
            backend = self._backends.get(address)
            if backend is None:
                return False
            needs_toggle = backend.enabled != enabled
        if needs_toggle:
            self.toggle(address)
        return True

    def set_credential(self, address: str, credential: str | None) -> bool:
        """Store a backend's bearer credential. Empty clears it."""
        address = _key(address)
        with self._lock:
            backend = self._backends.get(address)
            if backend is None:
                logger.warning(f"Cannot set credential on unknown backend {address}")
                return False
            backend.credential = (credential or "").strip() or None
            if backend.role is BackendRole.CUSTOM:
                self._save()
        logger.debug(f"Updated credential for {address}")
        return True

    def set_health(self, address: str, status: HealthStatus, detail: str = "") -> bool:
        """Record a health verdict and re-derive active-set membership."""
        address = _key(address)
        with self._lock:
            before = self._ordered_active()
            backend = self._backends.get(address)
            if backend is None:
                logger.debug(f"Ignoring health for unknown backend {address}")
                return False
            changed = backend.health is not status
            backend.health = status
            backend.detail = detail
            self._rederive(address)
            if backend.role is BackendRole.CUSTOM:
                self._save()
        if changed:
            logger.info(f"Backend {address} is {status.value}" + (f": {detail}" if detail else ""))
            self._events.emit(Signal.HEALTH_CHANGED, {"address": address, "status": status.value})
        self._notify_if_changed(before)
        return True

    def set_authenticated(self, authenticated: bool):
        """Record whether the caller holds a cloud session."""
        with self._lock:
            before = self._ordered_active()
            self._authenticated = authenticated
            self._rederive(self.cloud_address)
        self._notify_if_changed(before)

    # ─────────────────────────────────────────────────────────────────
    # Queries (snapshot copies)
    # ─────────────────────────────────────────────────────────────────

    @property
    def authenticated(self) -> bool:
        return self._authenticated

    def get(self, address: str) -> Backend | None:
        """Get a copy of a backend by address."""
        address = _key(address)
        with self._lock:
            backend = self._backends.get(address)
            return replace(backend) if backend else None

    def get_all(self) -> list[Backend]:
        """All backends in registration order (copies)."""
        with self._lock:
            return [replace(b) for b in self._backends.values()]

    def custom(self) -> list[Backend]:
        return [b for b in self.get_all() if b.role is BackendRole.CUSTOM]

    def credential_for(self, address: str) -> str | None:
        address = _key(address)
        with self._lock:
            backend = self._backends.get(address)
            return backend.credential if backend else None

    def active_addresses(self) -> list[str]:
        """Active addresses in registration order."""
        with self._lock:
            return self._ordered_active()

    def is_active(self, address: str) -> bool:
        address = _key(address)
        with self._lock:
            return address in self._active

    def is_cloud(self, address: str) -> bool:
        return _key(address) == self.cloud_address

    def aggregate_health(self) -> HealthStatus:
        """Combined connectivity across all backends."""
        with self._lock:
            cloud = self._backends[self.cloud_address]
            local = self._backends[self.local_address]
            custom = [b for b in self._backends.values() if b.role is BackendRole.CUSTOM]

            cloud_online = cloud.enabled and self._authenticated
            local_online = local.enabled and local.health is HealthStatus.ONLINE
            custom_online = any(b.enabled and b.health is HealthStatus.ONLINE for b in custom)
            if cloud_online or local_online or custom_online:
                return HealthStatus.ONLINE

            checked = any(b.health is not HealthStatus.UNCHECKED for b in custom)
            if not custom or checked:
                return HealthStatus.OFFLINE
            return HealthStatus.UNCHECKED

    def __iter__(self) -> Iterator[Backend]:
        return iter(self.get_all())

    def __len__(self) -> int:
        with self._lock:
            return len(self._backends)

    def __contains__(self, address: str) -> bool:
        address = _key(address)
        with self._lock:
            return address in self._backends
