"""Coalesce concurrent identical requests into a single execution."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from .config import DebounceConfig
from .errors import DebounceCancelledError


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class DebounceEntry:
    key: str
    future: asyncio.Future
    request_fn: Callable[[], Awaitable[Any]]
    first_call_at: float  # loop time, seconds
    timer: Optional[asyncio.TimerHandle] = None
    task: Optional[asyncio.Task] = None


class DebounceManager:
    """Trailing-edge debouncer keyed by request fingerprint.

    Calls sharing a key inside the quiet window push the fire time out (never
    past ``max_wait_ms`` from the first call) and all of them await the same
    future, so they observe the same value or the same exception. Once the
    underlying request is running, later callers with that key join it.
    """

    def __init__(self, config: Optional[DebounceConfig] = None) -> None:
        self._config = config or DebounceConfig()
        self._entries: Dict[str, DebounceEntry] = {}
        self._debounced_requests_count = 0

    def has_pending(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not entry.future.done()

    async def debounced_request(
        self,
        key: str,
        request_fn: Callable[[], Awaitable[T]],
        force_immediate: bool = False,
    ) -> T:
        if force_immediate:
            return await request_fn()

        loop = asyncio.get_running_loop()
        entry = self._entries.get(key)
        if entry is None or entry.future.done():
            entry = DebounceEntry(
                key=key,
                future=loop.create_future(),
                request_fn=request_fn,
                first_call_at=loop.time(),
            )
            self._entries[key] = entry
            self._schedule(entry, loop)
        else:
            self._debounced_requests_count += 1
            logger.debug("Coalescing request for key %s", key)
            if entry.task is None:
                self._schedule(entry, loop)

        return await asyncio.shield(entry.future)

    def _schedule(self, entry: DebounceEntry, loop: asyncio.AbstractEventLoop) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
        deadline = entry.first_call_at + self._config.max_wait_ms / 1000.0
        fire_at = min(loop.time() + self._config.delay_ms / 1000.0, deadline)
        entry.timer = loop.call_at(fire_at, self._fire, entry)

    def _fire(self, entry: DebounceEntry) -> None:
        entry.timer = None
        if entry.future.done():
            return
        entry.task = asyncio.get_running_loop().create_task(self._execute(entry))

    async def _execute(self, entry: DebounceEntry) -> None:
        try:
            result = await entry.request_fn()
        except asyncio.CancelledError:
            if not entry.future.done():
                entry.future.set_exception(DebounceCancelledError(f"Request {entry.key} was cancelled"))
            raise
        except Exception as exc:
            if not entry.future.done():
                entry.future.set_exception(exc)
        else:
            if not entry.future.done():
                entry.future.set_result(result)
        finally:
            if self._entries.get(entry.key) is entry:
                del self._entries[entry.key]

    def cancel_pending_requests(self) -> int:
        """Reject every waiting or running coalesced request. Returns the number cancelled."""
        entries = list(self._entries.values())
        self._entries.clear()
        for entry in entries:
            if entry.timer is not None:
                entry.timer.cancel()
                entry.timer = None
            if entry.task is not None and not entry.task.done():
                entry.task.cancel()
            if not entry.future.done():
                entry.future.set_exception(DebounceCancelledError(f"Request {entry.key} was cancelled"))
        if entries:
            logger.info("Cancelled %s pending debounced requests", len(entries))
        return len(entries)

    def get_debounce_stats(self) -> Dict[str, int]:
        return {
            "pending_requests_count": sum(1 for e in self._entries.values() if e.task is not None),
            "debounce_timers_count": sum(1 for e in self._entries.values() if e.timer is not None),
            "debounced_requests_count": self._debounced_requests_count,
        }

    def get_debounce_config(self) -> DebounceConfig:
        return replace(self._config)
