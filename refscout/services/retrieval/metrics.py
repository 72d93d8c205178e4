from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict


logger = logging.getLogger(__name__)


def _zeroed() -> Dict[str, float]:
    return {
        "total_requests": 0,
        "cached_requests": 0,
        "debounced_requests": 0,
        "context_optimizations": 0,
        "cache_hit_rate": 0.0,
        "average_response_time": 0.0,
    }


@dataclass
class MetricsCollector:
    """Thread-safe in-process counters for request shaping."""

    log_every_n_requests: int = 50
    _lock: Lock = field(default_factory=Lock, init=False, repr=False)
    _metrics: Dict[str, float] = field(default_factory=_zeroed, init=False, repr=False)

    def _recompute_hit_rate_locked(self) -> None:
        total = self._metrics["total_requests"]
        self._metrics["cache_hit_rate"] = (
            self._metrics["cached_requests"] / total if total > 0 else 0.0
        )

    def increment_total_requests(self) -> None:
        with self._lock:
            self._metrics["total_requests"] += 1
            self._recompute_hit_rate_locked()
            total = self._metrics["total_requests"]
        if self.log_every_n_requests > 0 and total % self.log_every_n_requests == 0:
            logger.info("[RetrievalMetrics] %s", json.dumps(self.get_metrics()))

    def increment_cached_requests(self) -> None:
        with self._lock:
            self._metrics["cached_requests"] += 1
            self._recompute_hit_rate_locked()

    def increment_debounced_requests(self) -> None:
        with self._lock:
            self._metrics["debounced_requests"] += 1

    def increment_context_optimizations(self) -> None:
        with self._lock:
            self._metrics["context_optimizations"] += 1

    def record_cache_hit(self) -> None:
        self.increment_cached_requests()
        self.increment_total_requests()

    def record_cache_miss(self) -> None:
        self.increment_total_requests()

    def record_debounced_request(self) -> None:
        self.increment_debounced_requests()

    def record_context_optimization(self) -> None:
        self.increment_context_optimizations()

    def update_average_response_time(self, response_time: float) -> None:
        """Fold ``response_time`` (ms) into the running mean over total requests."""
        with self._lock:
            n = max(int(self._metrics["total_requests"]), 1)
            previous = self._metrics["average_response_time"]
            self._metrics["average_response_time"] = (previous * (n - 1) + response_time) / n

    def get_metrics(self) -> Dict[str, float]:
        with self._lock:
            return dict(self._metrics)

    def reset_metrics(self) -> None:
        with self._lock:
            self._metrics = _zeroed()
