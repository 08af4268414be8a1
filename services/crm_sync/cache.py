"""
Process-wide response cache for idempotent remote reads.

Entries are keyed by a hash of endpoint + serialized params and expire
after a per-entry TTL. Mutations do not touch the cache by themselves;
callers invalidate the reads a mutation makes stale.
"""

import hashlib
import json
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class CacheEntry:
    """A cached value with the endpoint it came from."""
    key: str
    endpoint: str
    value: Any
    expires_at: float


def make_cache_key(endpoint: str, params: Optional[Dict[str, Any]] = None) -> str:
    """
    Compute the cache key for a read.

    Params are serialized with sorted keys so that logically equal
    queries share an entry.
    """
    serialized = json.dumps(params or {}, sort_keys=True, default=str)
    digest = hashlib.md5(f"{endpoint}{serialized}".encode("utf-8")).hexdigest()
    return f"api_request_{digest}"


def _normalize_endpoint(endpoint: str) -> str:
    return endpoint.strip("/")


class ResponseCache:
    """
    Thread-safe TTL cache.

    Every read and write holds a single lock, so concurrent reconciliations
    for different entities see a consistent cache.
    """

    def __init__(
        self,
        default_ttl: float = 3600,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        """Return the cached value or None on miss/expiry."""
        key = make_cache_key(_normalize_endpoint(endpoint), params)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                self._misses += 1
                return None
            self._hits += 1
            return entry.value

    def set(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]],
        value: Any,
        ttl: Optional[float] = None,
    ) -> None:
        """Store a value; a TTL of zero or less disables caching for it."""
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            return

        endpoint = _normalize_endpoint(endpoint)
        key = make_cache_key(endpoint, params)
        with self._lock:
            self._entries[key] = CacheEntry(
                key=key,
                endpoint=endpoint,
                value=value,
                expires_at=self._clock() + ttl,
            )

    def invalidate(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> bool:
        """Drop the entry for one exact read. Returns True if one existed."""
        key = make_cache_key(_normalize_endpoint(endpoint), params)
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, endpoint: str) -> int:
        """
        Drop every entry whose endpoint is ``endpoint`` or lies beneath it.

        ``invalidate_prefix("constituents/42")`` removes the constituent
        itself and all of its sub-record listings, but not
        ``constituents/420``.
        """
        prefix = _normalize_endpoint(endpoint)
        with self._lock:
            stale = [
                key for key, entry in self._entries.items()
                if entry.endpoint == prefix
                or entry.endpoint.startswith(prefix + "/")
                or entry.endpoint.startswith(prefix + ".")
            ]
            for key in stale:
                del self._entries[key]

        if stale:
            logger.debug("Cache invalidated", endpoint=prefix, entries=len(stale))
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "hits": self._hits,
                "misses": self._misses,
                "size": len(self._entries),
            }
