"""Sliding-window rate limiting and failure-driven circuit breaking."""

from __future__ import annotations

import asyncio
import logging
import math
import random
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional

import aiohttp

from .config import RateLimitConfig
from .errors import (
    ExtractionTimeoutError,
    RateLimitedError,
    SearchError,
    SearchErrorType,
)


logger = logging.getLogger(__name__)

MINUTE_MS = 60_000
HOUR_MS = 3_600_000
MAX_JITTER_RATIO = 0.3


class ErrorCategory(str, Enum):
    QUOTA_EXCEEDED = "quota_exceeded"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    OTHER = "other"


# Categories that count toward tripping the breaker.
TRIPPING_CATEGORIES = {
    ErrorCategory.QUOTA_EXCEEDED,
    ErrorCategory.RATE_LIMIT,
    ErrorCategory.NETWORK,
}


@dataclass
class RateLimitState:
    minute_window: Deque[float] = field(default_factory=deque)
    hour_window: Deque[float] = field(default_factory=deque)
    is_blocked: bool = False
    block_until: float = 0.0
    consecutive_failures: int = 0
    service_available: bool = True
    last_successful_request: float = 0.0


@dataclass
class RateLimitDecision:
    allowed: bool
    reason: Optional[str] = None
    retry_after: Optional[int] = None  # seconds


class RateLimiter:
    """Per-minute/per-hour quota guard combined with a circuit breaker.

    All timestamps are epoch milliseconds derived from the injected clock.
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        *,
        failure_threshold: int = 5,
        clock: Callable[[], float] = time.time,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.config = config or RateLimitConfig()
        self.failure_threshold = failure_threshold
        self._clock = clock
        self._rng = rng
        self._lock = threading.Lock()
        self.state = RateLimitState(last_successful_request=self._now_ms())

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def _prune_locked(self, now: float) -> None:
        minute_cutoff = now - MINUTE_MS
        hour_cutoff = now - HOUR_MS
        while self.state.minute_window and self.state.minute_window[0] <= minute_cutoff:
            self.state.minute_window.popleft()
        while self.state.hour_window and self.state.hour_window[0] <= hour_cutoff:
            self.state.hour_window.popleft()

    def _refresh_block_locked(self, now: float) -> None:
        if self.state.is_blocked and now >= self.state.block_until:
            self.state.is_blocked = False

    def check_and_record(self) -> RateLimitDecision:
        """Admit and record one request, or deny it with a retry-after hint."""
        now = self._now_ms()
        with self._lock:
            self._refresh_block_locked(now)
            self._prune_locked(now)

            if self.state.is_blocked:
                wait_ms = self.state.block_until - now
                return RateLimitDecision(
                    allowed=False,
                    reason="blocked",
                    retry_after=max(1, math.ceil(wait_ms / 1000)),
                )

            if len(self.state.minute_window) >= self.config.requests_per_minute:
                wait_ms = self.state.minute_window[0] + MINUTE_MS - now
                return RateLimitDecision(
                    allowed=False,
                    reason="Rate limit exceeded: too many requests per minute",
                    retry_after=max(1, math.ceil(wait_ms / 1000)),
                )

            if len(self.state.hour_window) >= self.config.requests_per_hour:
                wait_ms = self.state.hour_window[0] + HOUR_MS - now
                return RateLimitDecision(
                    allowed=False,
                    reason="Rate limit exceeded: too many requests per hour",
                    retry_after=max(1, math.ceil(wait_ms / 1000)),
                )

            self.state.minute_window.append(now)
            self.state.hour_window.append(now)
            return RateLimitDecision(allowed=True)

    def backoff_delay_ms(self, exponent: int) -> float:
        """``base * multiplier**exponent`` with optional jitter, capped at ``max_delay_ms``."""
        delay = self.config.base_delay_ms * (self.config.backoff_multiplier ** max(exponent, 0))
        if self.config.jitter_enabled:
            delay *= 1 + self._rng() * MAX_JITTER_RATIO
        return min(delay, self.config.max_delay_ms)

    @staticmethod
    def classify_error(error: Any) -> ErrorCategory:
        if isinstance(error, SearchError):
            if error.type == SearchErrorType.QUOTA_EXCEEDED:
                return ErrorCategory.QUOTA_EXCEEDED
            if error.type == SearchErrorType.RATE_LIMIT:
                return ErrorCategory.RATE_LIMIT
            if error.type in (
                SearchErrorType.NETWORK,
                SearchErrorType.TIMEOUT,
                SearchErrorType.SERVICE_UNAVAILABLE,
            ):
                return ErrorCategory.NETWORK
            return ErrorCategory.OTHER
        if isinstance(error, RateLimitedError):
            return ErrorCategory.RATE_LIMIT
        if isinstance(error, (aiohttp.ClientError, asyncio.TimeoutError, ExtractionTimeoutError)):
            return ErrorCategory.NETWORK

        message = str(error).lower()
        if "quota" in message:
            return ErrorCategory.QUOTA_EXCEEDED
        if "rate limit" in message or "429" in message:
            return ErrorCategory.RATE_LIMIT
        if "timeout" in message or "connection" in message:
            return ErrorCategory.NETWORK
        return ErrorCategory.OTHER

    def record_failure(self, error: Any) -> float:
        """Account for a failed request and return the backoff delay in ms."""
        category = self.classify_error(error)
        now = self._now_ms()
        with self._lock:
            if category not in TRIPPING_CATEGORIES:
                return 0.0

            self.state.consecutive_failures += 1
            delay = self.backoff_delay_ms(self.state.consecutive_failures)

            retry_after = getattr(error, "retry_after", None)
            if category == ErrorCategory.RATE_LIMIT and retry_after:
                self.state.is_blocked = True
                self.state.block_until = max(self.state.block_until, now + retry_after * 1000.0)

            if self.state.consecutive_failures > self.failure_threshold:
                if self.state.service_available:
                    logger.warning(
                        "Circuit opened after %s consecutive failures (%s); blocking for %.0fms",
                        self.state.consecutive_failures,
                        category.value,
                        delay,
                    )
                self.state.service_available = False
                self.state.is_blocked = True
                self.state.block_until = max(self.state.block_until, now + delay)
            return delay

    def record_success(self) -> None:
        now = self._now_ms()
        with self._lock:
            if not self.state.service_available:
                logger.info("Circuit closed after successful request")
            self.state.consecutive_failures = 0
            self.state.service_available = True
            self.state.is_blocked = False
            self.state.block_until = 0.0
            self.state.last_successful_request = now

    def get_status(self) -> Dict[str, Any]:
        now = self._now_ms()
        with self._lock:
            self._refresh_block_locked(now)
            self._prune_locked(now)
            in_minute = len(self.state.minute_window)
            in_hour = len(self.state.hour_window)
            return {
                "is_blocked": self.state.is_blocked,
                "block_until": self.state.block_until,
                "requests_in_last_minute": in_minute,
                "requests_in_last_hour": in_hour,
                "remaining_minute_requests": max(0, self.config.requests_per_minute - in_minute),
                "remaining_hourly_requests": max(0, self.config.requests_per_hour - in_hour),
                "consecutive_failures": self.state.consecutive_failures,
                "service_available": self.state.service_available,
                "last_successful_request": self.state.last_successful_request,
                "time_since_last_success": now - self.state.last_successful_request,
            }

    def reset(self) -> None:
        with self._lock:
            self.state = RateLimitState(last_successful_request=self._now_ms())
        logger.info("Rate limiter state has been reset")
