"""Quota and session tracking for the metered cloud backend.

The tracker keeps the last authoritative quota snapshot, a persisted
"remaining" figure used for optimistic display between refreshes, and a
sticky session-expired flag. The upgrade prompt fires at most once per
tracker lifetime.
"""

import logging
import threading
from enum import Enum

import httpx

from .events import EventBus, Signal
from .http import auth_headers
from .interface import QuotaSnapshot, QuotaTier
from .state import QUOTA_REMAINING_KEY, StateStore

logger = logging.getLogger(__name__)

# Utilization at which metered users are prompted to upgrade
UPGRADE_THRESHOLD = 0.5


class QuotaState(str, Enum):
    AVAILABLE = "available"
    SESSION_EXPIRED = "session_expired"
    UNAVAILABLE = "unavailable"


def _as_int(value) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def parse_quota(data) -> QuotaSnapshot | None:
    """Build a snapshot from a quota response body, or None if malformed."""
    if not isinstance(data, dict):
        return None
    remaining = _as_int(data.get("remaining"))
    limit = _as_int(data.get("limit"))
    if remaining is None or limit is None:
        return None
    used = _as_int(data.get("used"))
    return QuotaSnapshot(
        used=used if used is not None else max(limit - remaining, 0),
        remaining=remaining,
        limit=limit,
        tier=QuotaTier.parse(data.get("tier", "free")),
    )


class UsageTracker:
    """Locally cached quota figures for the cloud backend."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        quota_url: str,
        store: StateStore | None = None,
        events: EventBus | None = None,
        timeout: float = 10.0,
    ):
        self._client = client
        self.quota_url = quota_url
        self.timeout = timeout
        self._store = store if store is not None else StateStore()
        self._events = events if events is not None else EventBus()
        self._snapshot: QuotaSnapshot | None = None
        self._session_expired = False
        self._upgrade_prompted = False
        self._lock = threading.Lock()  # Protects snapshot and flags

    # ─────────────────────────────────────────────────────────────────
    # State
    # ─────────────────────────────────────────────────────────────────

    @property
    def snapshot(self) -> QuotaSnapshot | None:
        with self._lock:
            return QuotaSnapshot(**vars(self._snapshot)) if self._snapshot else None

    @property
    def session_expired(self) -> bool:
        return self._session_expired

    @property
    def status(self) -> QuotaState:
        if self._session_expired:
            return QuotaState.SESSION_EXPIRED
        if self._snapshot is None:
            return QuotaState.UNAVAILABLE
        return QuotaState.AVAILABLE

    @property
    def upgrade_prompted(self) -> bool:
        return self._upgrade_prompted

    def cached_remaining(self) -> int | None:
        """Persisted remaining figure, if one exists."""
        return _as_int(self._store.get(QUOTA_REMAINING_KEY))

    def reset(self):
        """Forget the snapshot and expired flag (cloud backend switched off)."""
        with self._lock:
            self._snapshot = None
            self._session_expired = False

    # ─────────────────────────────────────────────────────────────────
    # Refresh
    # ─────────────────────────────────────────────────────────────────

    async def refresh(self, token: str) -> QuotaSnapshot | None:
        """Query the quota endpoint with a session token.

        Returns the new snapshot, or None when the session expired or the
        quota is unavailable; check ``status`` to tell them apart.
        """
        try:
            resp = await self._client.get(self.quota_url, headers=auth_headers(token), timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.error(f"Error fetching quota from {self.quota_url}: {e}")
            self._set_unavailable()
            return None

        if resp.status_code == 401:
            logger.warning("Session expired. Quota check failed with 401.")
            with self._lock:
                self._snapshot = None
                self._session_expired = True
            self._events.emit(Signal.SESSION_EXPIRED)
            return None

        if resp.status_code != 200:
            logger.error(f"Failed to fetch quota, status: {resp.status_code}")
            self._set_unavailable()
            return None

        try:
            snapshot = parse_quota(resp.json())
        except ValueError:
            snapshot = None
        if snapshot is None:
            logger.error(f"Malformed quota response from {self.quota_url}")
            self._set_unavailable()
            return None

        with self._lock:
            self._snapshot = snapshot
            self._session_expired = False
        self._store.set(QUOTA_REMAINING_KEY, snapshot.remaining)
        logger.info(
            f"Quota: {snapshot.remaining}/{snapshot.limit} remaining (tier={snapshot.tier.value})"
        )
        self._events.emit(Signal.QUOTA_UPDATED, snapshot.to_dict())
        self._check_threshold()
        return self.snapshot

    def _set_unavailable(self):
        with self._lock:
            self._snapshot = None

    # ─────────────────────────────────────────────────────────────────
    # Optimistic estimate
    # ─────────────────────────────────────────────────────────────────

    def optimistic_decrement(self) -> int | None:
        """Decrement the cached remaining figure by one.

        No-op (returns None) when nothing is cached. Never goes below zero.
        """
        current = self.cached_remaining()
        if current is None:
            return None
        remaining = max(current - 1, 0)
        self._store.set(QUOTA_REMAINING_KEY, remaining)
        with self._lock:
            if self._snapshot is not None:
                self._snapshot.remaining = remaining
        logger.debug(f"Optimistic quota estimate: {remaining}")
        self._events.emit(Signal.QUOTA_UPDATED, {"remaining": remaining})
        self._check_threshold()
        return remaining

    def _check_threshold(self):
        with self._lock:
            snapshot = self._snapshot
            if snapshot is None or self._upgrade_prompted or not snapshot.tier.metered:
                return
            utilization = snapshot.utilization
            if utilization is None or utilization < UPGRADE_THRESHOLD:
                return
            self._upgrade_prompted = True
            payload = snapshot.to_dict()

        logger.info(f"Quota usage at {utilization:.0%}, prompting upgrade")
        self._events.emit(Signal.QUOTA_THRESHOLD_CROSSED, payload)
