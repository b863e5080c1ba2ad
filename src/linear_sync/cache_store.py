"""
Key/value cache with per-entry timestamps, lazy TTL expiry and a persisted subset.

Entries whose key starts with one of the persisted prefixes (issue lists, teams,
workflow states, projects) are written as one full snapshot to durable storage
on every mutation that touches them, and reloaded once when the store is built.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)

PERSIST_NAMESPACE = "linearCache"
PERSISTED_PREFIXES = ("issues", "teams", "workflowStates", "projects")
DEFAULT_CACHE_DIR = os.getenv(
    "LINEAR_SYNC_CACHE_DIR", os.path.expanduser("~/.cache/linear-sync")
)


class _Missing:
    """Marker for absent or expired keys; never equal to a cached value."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


@dataclass
class CacheEntry:
    """A cached value and the bookkeeping needed for expiry and delta sync."""

    data: Any
    stored_at: float
    last_sync_marker: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "data": self.data,
            "storedAt": self.stored_at,
            "lastSyncMarker": self.last_sync_marker,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> CacheEntry:
        return cls(
            data=raw["data"],
            stored_at=float(raw["storedAt"]),
            last_sync_marker=raw.get("lastSyncMarker"),
        )


class DurableStorage(Protocol):
    def load(self, namespace: str) -> Any | None: ...

    def save(self, namespace: str, value: Any) -> None: ...


class MemoryStorage:
    """In-process storage. Values are JSON round-tripped to mimic a real backend."""

    def __init__(self) -> None:
        self._values: dict[str, str] = {}
        self.save_count = 0

    def load(self, namespace: str) -> Any | None:
        raw = self._values.get(namespace)
        if raw is None:
            return None
        return json.loads(raw)

    def save(self, namespace: str, value: Any) -> None:
        self._values[namespace] = json.dumps(value)
        self.save_count += 1


class JsonFileStorage:
    """One JSON document per namespace inside a directory."""

    def __init__(self, directory: str | Path = DEFAULT_CACHE_DIR):
        self._directory = Path(directory)

    def _path(self, namespace: str) -> Path:
        return self._directory / f"{namespace}.json"

    def load(self, namespace: str) -> Any | None:
        path = self._path(namespace)
        if not path.exists():
            return None
        with path.open(encoding="utf-8") as fh:
            return json.load(fh)

    def save(self, namespace: str, value: Any) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        path = self._path(namespace)
        fd, tmp_name = tempfile.mkstemp(
            dir=self._directory, prefix=f".{namespace}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(value, fh)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


class CacheStore:
    """
    In-memory cache that owns every CacheEntry.

    `get` returns MISSING (not None) for absent or expired keys, so a cached
    None or empty collection is still a hit.
    """

    def __init__(
        self,
        storage: DurableStorage | None = None,
        *,
        persisted_prefixes: Iterable[str] = PERSISTED_PREFIXES,
        namespace: str = PERSIST_NAMESPACE,
        clock: Callable[[], float] = time.time,
    ):
        self._storage = storage
        self._persisted_prefixes = tuple(persisted_prefixes)
        self._namespace = namespace
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._persist_failures = 0
        self._last_persist_error: str | None = None
        self._last_persist_error_at: float | None = None
        self._last_persisted_at: float | None = None
        self._load_persisted()

    def _should_persist(self, key: str) -> bool:
        return key.startswith(self._persisted_prefixes)

    def _load_persisted(self) -> None:
        if self._storage is None:
            return
        try:
            snapshot = self._storage.load(self._namespace)
        except Exception as exc:
            logger.warning("Failed to load persisted cache, starting empty: %s", exc)
            return
        if not snapshot:
            logger.info("Loading cache: 0 items")
            return
        if not isinstance(snapshot, dict):
            logger.warning("Ignoring persisted cache with unexpected type %s", type(snapshot).__name__)
            return

        loaded = 0
        for key, raw in snapshot.items():
            try:
                self._entries[key] = CacheEntry.from_dict(raw)
                loaded += 1
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping corrupt persisted cache entry %s: %s", key, exc)
        logger.info("Loading cache: %d items", loaded)

    def _persist(self) -> None:
        if self._storage is None:
            return
        snapshot = {
            key: entry.to_dict()
            for key, entry in self._entries.items()
            if self._should_persist(key)
        }
        try:
            self._storage.save(self._namespace, snapshot)
        except Exception as exc:
            # The in-memory map stays authoritative for this process.
            self._persist_failures += 1
            self._last_persist_error = f"{exc.__class__.__name__}: {exc}"
            self._last_persist_error_at = self._clock()
            logger.warning("Failed to persist cache snapshot: %s", exc)
            return
        self._last_persisted_at = self._clock()

    def get(self, key: str, ttl: float) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return MISSING
        if ttl > 0 and self._clock() - entry.stored_at > ttl:
            self.delete(key)
            return MISSING
        return entry.data

    def peek(self, key: str) -> CacheEntry | None:
        """Return the entry regardless of age, without evicting it."""
        return self._entries.get(key)

    def set(self, key: str, data: Any, sync_marker: str | None = None) -> None:
        self._entries[key] = CacheEntry(
            data=data, stored_at=self._clock(), last_sync_marker=sync_marker
        )
        if self._should_persist(key):
            self._persist()

    def delete(self, key: str) -> None:
        if self._entries.pop(key, None) is None:
            return
        if self._should_persist(key):
            self._persist()

    def invalidate_by_prefix(self, prefix: str) -> list[str]:
        removed = [key for key in self._entries if key.startswith(prefix)]
        for key in removed:
            del self._entries[key]
        if any(self._should_persist(key) for key in removed):
            self._persist()
        return removed

    def get_last_sync_marker(self, key: str) -> str | None:
        entry = self._entries.get(key)
        return entry.last_sync_marker if entry else None

    def clear(self) -> None:
        self._entries.clear()
        self._persist()

    def keys(self) -> list[str]:
        return list(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get_health(self) -> dict[str, Any]:
        return {
            "entries": len(self._entries),
            "persistedEntries": sum(1 for key in self._entries if self._should_persist(key)),
            "persistenceEnabled": self._storage is not None,
            "persistFailures": self._persist_failures,
            "lastPersistError": self._last_persist_error,
            "lastPersistErrorAt": self._last_persist_error_at,
            "lastPersistedAt": self._last_persisted_at,
        }
