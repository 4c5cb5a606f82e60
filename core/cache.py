"""
Multi-layer cache for fetched datasets.

Namespaces are read in order (fastest first). Writes go to every namespace and
failures are isolated per namespace, so one broken layer never blocks the
others. Every namespace guards its state with a lock: a clear is all-or-nothing
and never interleaves with a read of the same namespace.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from core.errors import CacheError
from core.models import CacheClearReport, CacheEntry

logger = logging.getLogger("cache")

Clock = Callable[[], float]


class CacheNamespace:
    """Base storage namespace."""

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[CacheEntry]:
        raise NotImplementedError

    def put(self, entry: CacheEntry) -> None:
        raise NotImplementedError

    def clear(self) -> int:
        """Remove every entry; returns how many were removed."""
        raise NotImplementedError

    def __len__(self) -> int:
        raise NotImplementedError


class MemoryNamespace(CacheNamespace):
    """Process-local dict storage."""

    def __init__(self, name: str = "memory"):
        super().__init__(name)
        self._entries: Dict[str, CacheEntry] = {}

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(key)

    def put(self, entry: CacheEntry) -> None:
        with self._lock:
            self._entries[entry.key] = entry

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries = {}
            return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class JsonFileNamespace(CacheNamespace):
    """JSON file storage that survives restarts."""

    def __init__(self, name: str, path: Path):
        super().__init__(name)
        self.path = Path(path)

    def _read_locked(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise CacheError(self.name, "read", e) from e
        if not isinstance(payload, dict):
            raise CacheError(self.name, "read", "unexpected file layout")
        return payload

    def _write_locked(self, state: Dict[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(json.dumps(state, ensure_ascii=True, default=str), encoding="utf-8")
            tmp.replace(self.path)
        except OSError as e:
            raise CacheError(self.name, "write", e) from e

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            raw = self._read_locked().get(key)
        if not isinstance(raw, dict):
            return None
        try:
            return CacheEntry.from_dict(key, raw)
        except (KeyError, TypeError, ValueError) as e:
            raise CacheError(self.name, "read", e) from e

    def put(self, entry: CacheEntry) -> None:
        with self._lock:
            try:
                state = self._read_locked()
            except CacheError as e:
                logger.warning(f"Discarding unreadable cache file {self.path}: {e}")
                state = {}
            state[entry.key] = entry.to_dict()
            self._write_locked(state)

    def clear(self) -> int:
        with self._lock:
            if not self.path.exists():
                return 0
            try:
                count = len(self._read_locked())
            except CacheError:
                count = 0
            try:
                # single unlink: either the file is gone or left untouched
                self.path.unlink()
            except FileNotFoundError:
                return 0
            except OSError as e:
                raise CacheError(self.name, "clear", e) from e
            return count

    def __len__(self) -> int:
        with self._lock:
            try:
                return len(self._read_locked())
            except CacheError:
                return 0


class CacheStore:
    """Ordered set of namespaces shared by every scheduler in a session."""

    def __init__(self, namespaces: Sequence[CacheNamespace], clock: Clock = time.time):
        if not namespaces:
            raise ValueError("CacheStore needs at least one namespace")
        self._namespaces: Dict[str, CacheNamespace] = {}
        for ns in namespaces:
            self._namespaces[ns.name] = ns
        self.clock = clock

    @classmethod
    def from_config(cls, names: Iterable[str], cache_dir: Path, clock: Clock = time.time) -> "CacheStore":
        namespaces: List[CacheNamespace] = []
        for name in names:
            if name == "memory":
                namespaces.append(MemoryNamespace(name))
            else:
                namespaces.append(JsonFileNamespace(name, Path(cache_dir) / f"{name}_cache.json"))
        return cls(namespaces, clock=clock)

    @property
    def namespace_names(self) -> List[str]:
        return list(self._namespaces)

    def namespace(self, name: str) -> CacheNamespace:
        return self._namespaces[name]

    def put(self, key: str, payload: Any, ttl: float, timestamp: Optional[float] = None) -> CacheEntry:
        """Write to every namespace. Per-namespace failures are logged and ignored."""
        entry = CacheEntry(
            key=key,
            payload=payload,
            timestamp=self.clock() if timestamp is None else float(timestamp),
            ttl=float(ttl),
        )
        for ns in self._namespaces.values():
            try:
                ns.put(entry)
            except CacheError as e:
                logger.warning(f"Cache write skipped: {e}")
        return entry

    def get_entry(self, key: str, include_expired: bool = False) -> Optional[CacheEntry]:
        """
        First hit across namespaces, in order. Hits from a later namespace are
        promoted into the earlier ones. Read errors count as misses.
        """
        now = self.clock()
        names = list(self._namespaces)
        for idx, name in enumerate(names):
            ns = self._namespaces[name]
            try:
                entry = ns.get(key)
            except CacheError as e:
                logger.warning(f"Cache read fell through: {e}")
                continue
            if entry is None:
                continue
            if not include_expired and not entry.is_fresh(now):
                continue
            for earlier in names[:idx]:
                try:
                    self._namespaces[earlier].put(entry)
                except CacheError as e:
                    logger.debug(f"Cache promotion skipped: {e}")
            return entry
        return None

    def get(self, key: str) -> Optional[Any]:
        entry = self.get_entry(key)
        return entry.payload if entry else None

    def clear(self, namespaces: Optional[Iterable[str]] = None) -> CacheClearReport:
        """Best-effort clear of each namespace; failures are reported, not raised."""
        report = CacheClearReport()
        targets = list(namespaces) if namespaces is not None else list(self._namespaces)
        for name in targets:
            ns = self._namespaces.get(name)
            if ns is None:
                report.errors.append(f"unknown cache namespace '{name}'")
                continue
            try:
                report.cleared_count += ns.clear()
                report.cleared_namespaces.append(name)
            except CacheError as e:
                logger.warning(f"Cache clear failed: {e}")
                report.errors.append(str(e))
            except Exception as e:
                logger.warning(f"Cache clear failed in '{name}': {e}")
                report.errors.append(f"cache clear failed in '{name}': {e}")
        report.success = not report.errors
        return report
