"""Small key-value state store, optionally backed by a JSON file."""

import json
import logging
import threading
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Storage keys
CUSTOM_SERVERS_KEY = "custom-servers"
QUOTA_REMAINING_KEY = "quota-remaining"


class StateStore:
    """Key-value state storage.

    With a path, every write is flushed to a JSON file so custom backends and
    the cached quota survive restarts. Without one, state is in-memory only.
    """

    def __init__(self, path: Path | None = None):
        self._path = Path(path) if path else None
        self._data: dict[str, Any] = {}
        self._lock = threading.Lock()  # Protects _data and the file
        self._load()

    @property
    def path(self) -> Path | None:
        return self._path

    def _load(self):
        if self._path is None or not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to load state from {self._path}: {e}")
            return
        if isinstance(data, dict):
            self._data = data
            logger.debug(f"Loaded state keys {sorted(data)} from {self._path}")
        else:
            logger.warning(f"Ignoring state file {self._path}: expected an object")

    def _flush(self):
        if self._path is None:
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self._path.with_suffix(self._path.suffix + ".tmp")
            tmp.write_text(json.dumps(self._data, indent=2), encoding="utf-8")
            tmp.replace(self._path)
        except OSError as e:
            logger.error(f"Failed to save state to {self._path}: {e}")

    def get(self, key: str, default: Any = None) -> Any:
        """Get a stored value."""
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value: Any):
        """Store a value."""
        logger.debug(f"Setting state key: {key}")
        with self._lock:
            self._data[key] = value
            self._flush()

    def delete(self, key: str):
        """Remove a value if present."""
        with self._lock:
            if self._data.pop(key, None) is not None:
                logger.debug(f"Deleted state key: {key}")
                self._flush()

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._data
