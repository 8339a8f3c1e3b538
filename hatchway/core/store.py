"""Key-value stores used for credentials, caches and preferences.

The host application normally supplies its own persistent store. Two
implementations ship with Hatchway: an in-process store for tests and
short-lived tools, and a JSON file store for the CLI.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol, Tuple, Union, runtime_checkable


@runtime_checkable
class ConfigStore(Protocol):
    """Protocol for the host's persistent key-value store."""

    def get(self, key: str, default: Any = None) -> Any:
        """Return the stored value, or ``default`` when missing or expired."""
        ...

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store a JSON-serializable value, expiring after ``ttl`` seconds."""
        ...

    def delete(self, key: str) -> None:
        """Remove a value if present."""
        ...


class MemoryConfigStore:
    """Thread-safe in-memory store with per-key expiry.

    Attributes:
        clock: Callable returning the current epoch time
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self.clock = clock
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._lock = threading.RLock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return default
            value, expires_at = entry
            if expires_at is not None and expires_at <= self.clock():
                del self._data[key]
                return default
            return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        expires_at = self.clock() + ttl if ttl is not None else None
        with self._lock:
            self._data[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class JsonFileConfigStore(MemoryConfigStore):
    """Store persisted to a JSON file on every write.

    The file is rewritten through a temporary file and ``os.replace`` so a
    crash never leaves a half-written store behind.
    """

    def __init__(
            self,
            path: Union[str, Path],
            clock: Callable[[], float] = time.time
    ) -> None:
        super().__init__(clock=clock)
        self.path = Path(path)
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return

        with open(self.path, "r", encoding="utf-8") as f:
            raw = json.load(f)

        now = self.clock()
        for key, entry in raw.items():
            expires_at = entry.get("expires_at")
            if expires_at is not None and expires_at <= now:
                continue
            self._data[key] = (entry.get("value"), expires_at)

    def _persist(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            key: {"value": value, "expires_at": expires_at}
            for key, (value, expires_at) in self._data.items()
        }

        with tempfile.NamedTemporaryFile(
                mode="w",
                suffix=".json",
                dir=self.path.parent,
                delete=False,
                encoding="utf-8",
        ) as tmp:
            json.dump(data, tmp, indent=2)
            tmp_path = tmp.name

        os.replace(tmp_path, self.path)

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        with self._lock:
            super().set(key, value, ttl)
            self._persist()

    def delete(self, key: str) -> None:
        with self._lock:
            if key in self._data:
                super().delete(key)
                self._persist()
