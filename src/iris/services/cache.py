"""In-memory TTL cache for analysis results.

Caching is a performance optimisation, not a correctness dependency: every
public method swallows internal failures, logs them and behaves like a miss.
"""

import copy
import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


class VisionCache:
    """Thread-safe TTL cache; evicts expired then oldest-inserted entries when full."""

    def __init__(
        self,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        try:
            with self._lock:
                entry = self._entries.get(key)
                if entry is None:
                    return None
                if entry.expires_at <= self._clock():
                    del self._entries[key]
                    return None
                return _copy(entry.value)
        except Exception as e:
            logger.warning("Cache get failed for %s, treating as miss: %s", key[:24], e)
            return None

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        try:
            stored = _copy(value)
            with self._lock:
                # 覆盖写入时移到末尾，保持插入顺序即淘汰顺序
                self._entries.pop(key, None)
                if len(self._entries) >= self._max_entries:
                    self._evict()
                self._entries[key] = CacheEntry(
                    value=stored, expires_at=self._clock() + ttl_seconds
                )
        except Exception as e:
            logger.warning("Cache set failed for %s, skipping: %s", key[:24], e)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def size(self) -> int:
        try:
            with self._lock:
                self._purge_expired()
                return len(self._entries)
        except Exception as e:
            logger.warning("Cache size check failed: %s", e)
            return 0

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.expires_at <= now]
        for k in expired:
            del self._entries[k]

    def _evict(self) -> None:
        """Make room for one entry (must be called with lock held)."""
        self._purge_expired()
        while len(self._entries) >= self._max_entries:
            oldest, _ = self._entries.popitem(last=False)
            logger.debug("Cache full, evicted oldest entry %s", oldest[:24])


def _copy(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_copy(deep=True)
    return copy.deepcopy(value)


def build_cache_key(
    kind: str,
    identifiers: Sequence[str],
    options: BaseModel,
    *,
    deployment: str,
    api_version: str,
    schema_version: str,
) -> str:
    """Deterministic fingerprint of a request and the model/schema it targets.

    ``force_refresh`` is excluded so a forced refresh overwrites the same entry.
    Identifier order is kept: multi-image prompts are order-sensitive.
    """
    payload = {
        "kind": kind,
        "ids": list(identifiers),
        "options": options.model_dump(mode="json", exclude={"force_refresh"}),
        "deployment": deployment,
        "api_version": api_version,
        "schema_version": schema_version,
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"vision:{digest}"
