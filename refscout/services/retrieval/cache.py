"""Bounded TTL cache for successful retrieval responses."""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Mapping, Optional

from .config import CacheConfig


logger = logging.getLogger(__name__)


def _fingerprint(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


def _is_successful(response: Any) -> bool:
    if isinstance(response, Mapping):
        return bool(response.get("success"))
    return bool(getattr(response, "success", False))


@dataclass
class CacheEntry:
    key: str
    value: Any
    created_at: float  # epoch ms
    access_count: int = 0
    last_accessed: float = 0.0


class CacheManager:
    """Success-only response cache with TTL expiry and oldest-first eviction."""

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or CacheConfig()
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def _is_expired(self, entry: CacheEntry, now_ms: float) -> bool:
        return now_ms - entry.created_at > self._config.ttl_ms

    def create_cache_key(self, mode: str, content: str, parameters: Optional[Dict[str, Any]] = None) -> str:
        params_text = json.dumps(parameters or {}, sort_keys=True, default=str)
        return f"{mode}:{_fingerprint(content)}:{_fingerprint(params_text)}"

    def get_cached_response(self, key: str) -> Optional[Any]:
        now_ms = self._now_ms()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._is_expired(entry, now_ms):
                del self._entries[key]
                logger.debug("Cache entry expired: %s", key)
                return None
            entry.access_count += 1
            entry.last_accessed = now_ms
            return entry.value

    def cache_response(self, key: str, response: Any) -> None:
        if not _is_successful(response):
            return

        now_ms = self._now_ms()
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            self._entries[key] = CacheEntry(
                key=key,
                value=response,
                created_at=now_ms,
                access_count=0,
                last_accessed=now_ms,
            )
            self._evict_locked(now_ms)

    def _evict_locked(self, now_ms: float) -> None:
        expired = [k for k, e in self._entries.items() if self._is_expired(e, now_ms)]
        for k in expired:
            del self._entries[k]
        while len(self._entries) > self._config.max_size:
            oldest_key, _ = self._entries.popitem(last=False)
            logger.debug("Cache evicted oldest entry: %s", oldest_key)

    def cleanup_expired(self) -> int:
        now_ms = self._now_ms()
        with self._lock:
            expired = [k for k, e in self._entries.items() if self._is_expired(e, now_ms)]
            for k in expired:
                del self._entries[k]
        if expired:
            logger.info("Cleaned up %s expired cache entries", len(expired))
        return len(expired)

    def clear_cache(self) -> None:
        with self._lock:
            self._entries.clear()

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(key)
            return replace(entry) if entry else None

    def get_cache_stats(self) -> Dict[str, float]:
        with self._lock:
            timestamps = [e.created_at for e in self._entries.values()]
            return {
                "size": len(self._entries),
                "max_size": self._config.max_size,
                "oldest_entry": min(timestamps) if timestamps else 0,
                "newest_entry": max(timestamps) if timestamps else 0,
            }

    def get_cache_config(self) -> CacheConfig:
        return replace(self._config)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
