"""
Performance façade in front of the dedup core service.

This module layers three controls over any ``DeduplicatorProtocol`` backend:
- A TTL-bound result cache checked before anything else
- Rejection-based admission control on in-flight checks
- A debounced batching queue that coalesces near-simultaneous calls

Batches are evaluated synchronously in enqueue order, so two identical
requests in one batch see each other: the first registers as new and the
second as a duplicate.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections import deque
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional
from uuid import uuid4

import structlog
from pydantic import ValidationError
from structlog.contextvars import bound_contextvars

from ..config import OptimizerConfig, format_validation_errors
from ..dedup.fingerprint import fingerprint
from ..dedup.policy import ConfigUpdateResult
from ..errors import OptimizerStoppedError, TooManyConcurrentRequestsError
from ..observability import METRICS
from ..protocols import DeduplicationResult, DeduplicatorProtocol, PerformanceStats, Priority
from ..utils.atomic import atomic_write_json

logger = structlog.get_logger(__name__)

RESPONSE_TIME_WINDOW = 1000
TIMESTAMP_BYTES = 8


@dataclass
class _BatchRequest:
    title: str
    message: str
    category: Optional[str]
    priority: Priority
    future: asyncio.Future[DeduplicationResult]


@dataclass(frozen=True)
class _CachedResult:
    result: DeduplicationResult
    timestamp: float
    content_hash: str


def cache_key(title: str, message: str, category: Optional[str], priority: Priority | str) -> str:
    """Result-cache key over the raw (un-normalized) request fields."""
    return f"{title}|{message}|{category or ''}|{Priority.parse(priority).value}"


class DeduplicationOptimizer:
    """
    Async wrapper that caches, admits and batches duplicate checks.

    Example:
        >>> service = DeduplicationService()
        >>> async with DeduplicationOptimizer(service) as optimizer:
        ...     result = await optimizer.check_duplicate("Budget Alert", "Over budget", "budget", "high")
    """

    def __init__(
        self,
        backend: DeduplicatorProtocol,
        config: Optional[OptimizerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backend = backend
        self.config = config or OptimizerConfig()
        self._clock = clock

        self._queue: List[_BatchRequest] = []
        self._flush_handle: Optional[asyncio.TimerHandle] = None
        self._results: Dict[str, _CachedResult] = {}
        self._last_cleanup = clock()

        self._stats = PerformanceStats()
        self._response_times: Deque[float] = deque(maxlen=RESPONSE_TIME_WINDOW)
        self._active_requests = 0

        self._cleanup_task: Optional[asyncio.Task[None]] = None
        self._started = False
        self._stopped = False

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    async def check_duplicate(
        self,
        title: str,
        message: str,
        category: Optional[str] = None,
        priority: Priority | str = Priority.NORMAL,
    ) -> DeduplicationResult:
        """
        Check content through the result cache, admission limiter and batch queue.

        Raises:
            TooManyConcurrentRequestsError: ``max_concurrent_requests`` checks are already in flight
            OptimizerStoppedError: The optimizer has been stopped
        """
        if self._stopped:
            raise OptimizerStoppedError("Optimizer has been stopped")

        started = time.perf_counter()
        priority = Priority.parse(priority)
        self._stats.total_checks += 1

        key = cache_key(title, message, category, priority)
        if self.config.enable_caching:
            cached = self._results.get(key)
            if cached is not None and self._clock() - cached.timestamp < self.config.cache_ttl:
                self._stats.cache_hits += 1
                METRICS["optimizer_cache_hits_total"].inc()
                self._record_response(started)
                return cached.result
            self._stats.cache_misses += 1
            METRICS["optimizer_cache_misses_total"].inc()

        if self._active_requests >= self.config.max_concurrent_requests:
            self._stats.blocked_requests += 1
            METRICS["optimizer_rejected_total"].inc()
            logger.warning(
                "Rejected duplicate check",
                active=self._active_requests,
                limit=self.config.max_concurrent_requests,
            )
            raise TooManyConcurrentRequestsError(self.config.max_concurrent_requests)

        self._active_requests += 1
        METRICS["optimizer_in_flight"].set(self._active_requests)
        try:
            with bound_contextvars(check_id=uuid4().hex[:12]):
                if self.config.enable_batching:
                    result = await self._enqueue(title, message, category, priority)
                else:
                    result = self.backend.check_duplicate(title, message, category, priority)

                if self.config.enable_caching:
                    self._store(key, result, fingerprint(title, message, category).hash)

                elapsed = self._record_response(started)
                if self.config.enable_profiling and not self.config.enable_batching:
                    logger.debug(
                        "Profiled duplicate check",
                        elapsed_ms=round(elapsed * 1000, 3),
                        active=self._active_requests,
                    )
                return result
        finally:
            self._active_requests -= 1
            METRICS["optimizer_in_flight"].set(self._active_requests)

    async def check_toast(self, title: str, message: str, category: Optional[str] = None) -> DeduplicationResult:
        return await self.check_duplicate(title, message, category, Priority.NORMAL)

    async def check_notification(
        self,
        title: str,
        message: str,
        category: Optional[str] = None,
        priority: Priority | str = Priority.HIGH,
    ) -> DeduplicationResult:
        return await self.check_duplicate(title, message, category, priority)

    async def check_urgent(self, title: str, message: str, category: Optional[str] = None) -> DeduplicationResult:
        return await self.check_duplicate(title, message, category, Priority.URGENT)

    def block(self, title: str, message: str, category: Optional[str] = None) -> None:
        """Block content on the backend and drop cached results that would mask it."""
        self.backend.block(title, message, category)
        self._invalidate(title, message, category)

    def unblock(self, title: str, message: str, category: Optional[str] = None) -> None:
        self.backend.unblock(title, message, category)
        self._invalidate(title, message, category)

    def _invalidate(self, title: str, message: str, category: Optional[str]) -> None:
        """Drop cached results for every spelling of the content and for fuzzy matches onto it."""
        target = fingerprint(title, message, category).hash
        stale = [
            key
            for key, cached in self._results.items()
            if cached.content_hash == target or cached.result.matched_hash == target
        ]
        for key in stale:
            del self._results[key]

    # ------------------------------------------------------------------
    # Batching
    # ------------------------------------------------------------------

    async def _enqueue(
        self,
        title: str,
        message: str,
        category: Optional[str],
        priority: Priority,
    ) -> DeduplicationResult:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[DeduplicationResult] = loop.create_future()
        self._queue.append(_BatchRequest(title, message, category, priority, future))

        if len(self._queue) >= self.config.batch_size:
            self._flush()
        elif self._flush_handle is None:
            # Debounce runs from the first queued item, not the latest.
            self._flush_handle = loop.call_later(self.config.debounce_time, self._flush)

        return await future

    def _flush(self) -> None:
        """Evaluate every queued request in order and resolve its future."""
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None

        batch, self._queue = self._queue, []
        if not batch:
            return

        METRICS["optimizer_batch_size"].observe(len(batch))
        started = time.perf_counter()
        try:
            results = [
                self.backend.check_duplicate(request.title, request.message, request.category, request.priority)
                for request in batch
            ]
        except Exception as e:
            logger.error("Batch evaluation failed", batch_size=len(batch), error=str(e), exc_info=True)
            for request in batch:
                if not request.future.done():
                    request.future.set_exception(e)
            return

        if self.config.enable_profiling:
            logger.debug(
                "Profiled batch flush",
                batch_size=len(batch),
                elapsed_ms=round((time.perf_counter() - started) * 1000, 3),
                active=self._active_requests,
            )

        for request, result in zip(batch, results):
            if not request.future.done():
                request.future.set_result(result)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def _record_response(self, started: float) -> float:
        elapsed = time.perf_counter() - started
        self._response_times.append(elapsed)
        self._stats.average_response_time = sum(self._response_times) / len(self._response_times)
        self._stats.memory_usage = self.estimate_memory_usage()
        return elapsed

    def estimate_memory_usage(self) -> int:
        """Approximate result-cache footprint: encoded key and result bytes plus a timestamp each."""
        size = 0
        for key, cached in self._results.items():
            size += len(key.encode("utf-8"))
            size += len(json.dumps(cached.result.to_dict()).encode("utf-8"))
            size += TIMESTAMP_BYTES
        return size

    def get_stats(self) -> PerformanceStats:
        return replace(self._stats)

    def get_detailed_stats(self) -> Dict[str, Any]:
        lookups = self._stats.cache_hits + self._stats.cache_misses
        return {
            "stats": asdict(self._stats),
            "cache_size": len(self._results),
            "queue_size": len(self._queue),
            "active_requests": self._active_requests,
            "hit_rate": self._stats.cache_hits / lookups if lookups else 0.0,
            "miss_rate": self._stats.cache_misses / lookups if lookups else 0.0,
        }

    def export_stats(self, path: Optional[Path] = None) -> str:
        """Serialize config, detailed stats and cached keys to JSON; also write to ``path`` if given."""
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "config": self.config.model_dump(mode="json"),
            "stats": self.get_detailed_stats(),
            "cache_keys": list(self._results),
        }
        if path is not None:
            atomic_write_json(Path(path), payload)
            logger.info("Optimizer stats exported", path=str(path))
        return json.dumps(payload, indent=2)

    def clear(self) -> None:
        """Drop cached results and reset statistics. Queued requests still resolve."""
        self._results.clear()
        self._response_times.clear()
        self._stats = PerformanceStats()

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def update_config(self, partial: Mapping[str, Any] | OptimizerConfig) -> ConfigUpdateResult:
        """Merge ``partial`` into the current settings; invalid updates leave them untouched."""
        if isinstance(partial, OptimizerConfig):
            data = partial.model_dump()
        else:
            data = {**self.config.model_dump(), **partial}
        try:
            candidate = OptimizerConfig.model_validate(data)
        except ValidationError as e:
            errors = tuple(format_validation_errors(e))
            logger.warning("Rejected optimizer config update", errors=errors)
            return ConfigUpdateResult(applied=False, errors=errors)

        self.config = candidate
        if self._started and not self._stopped:
            if candidate.enable_caching:
                self._ensure_cleanup_task()
        logger.info("Optimizer config updated", **candidate.model_dump())
        return ConfigUpdateResult(applied=True)

    def set_profiling(self, enabled: bool) -> None:
        self.config = self.config.model_copy(update={"enable_profiling": enabled})

    # ------------------------------------------------------------------
    # Result-cache cleanup and lifecycle
    # ------------------------------------------------------------------

    def _store(self, key: str, result: DeduplicationResult, content_hash: str) -> None:
        now = self._clock()
        # Also sweeps optimizers that were never started and have no cleanup task.
        if now - self._last_cleanup >= self.config.cache_ttl:
            self.cleanup_cache()
        self._results[key] = _CachedResult(result=result, timestamp=now, content_hash=content_hash)

    def cleanup_cache(self) -> int:
        """Remove result-cache entries older than the TTL."""
        now = self._clock()
        self._last_cleanup = now
        ttl = self.config.cache_ttl
        expired = [key for key, cached in self._results.items() if now - cached.timestamp > ttl]
        for key in expired:
            del self._results[key]
        if expired:
            logger.debug("Expired optimizer results removed", removed=len(expired))
        return len(expired)

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.cache_ttl)
            if self.config.enable_caching:
                self.cleanup_cache()

    def _ensure_cleanup_task(self) -> None:
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop(), name="toastdedup-optimizer-cleanup")

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        if self.config.enable_caching:
            self._ensure_cleanup_task()
        logger.info("Optimizer started", **self.config.model_dump())

    async def stop(self) -> None:
        """Refuse new checks, resolve anything still queued and cancel the cleanup task."""
        if self._stopped:
            return
        self._stopped = True
        self._flush()

        task, self._cleanup_task = self._cleanup_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Optimizer stopped", total_checks=self._stats.total_checks)

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    async def __aenter__(self) -> DeduplicationOptimizer:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()
