"""
Core duplicate-decision service.

Orchestrates normalization, fingerprinting, policy resolution and the dedup
cache to answer ``check_duplicate``. The decision runs in this order:

1. Resolve the policy; a disabled policy short-circuits to "not a duplicate".
2. Fingerprint the normalized content.
3. Exact path: an entry with the same hash last seen inside the window.
4. Fuzzy path: the best composite similarity against stored content of
   entries inside the window, if it reaches the policy threshold.
5. Otherwise register the content as new.

Content is never rejected: empty, very long and non-ASCII input all produce
a normal result.
"""

from __future__ import annotations

import time
from typing import Callable, Optional, Tuple

import structlog

from ..config import DedupPolicy
from ..observability import METRICS
from ..protocols import CacheStats, DeduplicationResult, MatchPath, Priority
from .cache import CacheEntry, DedupCache
from .fingerprint import fingerprint
from .policy import PolicyRegistry
from .similarity import composite_similarity

logger = structlog.get_logger(__name__)

# Far above any configurable max_duplicates.
BLOCKED_OCCURRENCE_COUNT = 999


class DeduplicationService:
    """Synchronous dedup backend; implements ``DeduplicatorProtocol``."""

    def __init__(
        self,
        registry: Optional[PolicyRegistry] = None,
        cache: Optional[DedupCache] = None,
        clock: Callable[[], float] = time.monotonic,
        record_metrics: bool = True,
    ) -> None:
        self.registry = registry or PolicyRegistry()
        self.cache = cache or DedupCache(clock=clock)
        self._clock = clock
        self._record_metrics = record_metrics

    def check_duplicate(
        self,
        title: str,
        message: str,
        category: Optional[str] = None,
        priority: Priority | str = Priority.NORMAL,
    ) -> DeduplicationResult:
        started = time.perf_counter()
        result, path = self._decide(title, message, category, priority)
        if self._record_metrics:
            METRICS["checks_total"].labels(path=path.value).inc()
            METRICS["check_latency_seconds"].observe(time.perf_counter() - started)
            if result.should_block:
                METRICS["blocked_total"].inc()
        logger.debug(
            "Duplicate check",
            path=path.value,
            category=category,
            priority=str(getattr(priority, "value", priority)),
            is_duplicate=result.is_duplicate,
            should_block=result.should_block,
        )
        return result

    def _decide(
        self,
        title: str,
        message: str,
        category: Optional[str],
        priority: Priority | str,
    ) -> Tuple[DeduplicationResult, MatchPath]:
        policy = self.registry.resolve(category, priority)
        if not policy.enabled:
            return DeduplicationResult(), MatchPath.DISABLED

        fp = fingerprint(title, message, category)
        now = self._clock()

        entry = self.cache.get(fp.hash)
        # Blocked entries hold until unblocked or swept, whatever the window.
        if entry is not None and (entry.blocked or entry.idle(now) <= policy.time_window):
            count = entry.touch(now)
            return (
                DeduplicationResult(
                    is_duplicate=True,
                    should_block=entry.blocked or count > policy.max_duplicates,
                    matched_hash=entry.hash,
                ),
                MatchPath.EXACT,
            )

        match = self._best_fuzzy_match(fp.normalized_title, fp.normalized_message, fp.category, policy, now)
        if match is not None:
            best, similarity = match
            count = best.touch(now)
            return (
                DeduplicationResult(
                    is_duplicate=True,
                    should_block=best.blocked or count > policy.max_duplicates,
                    similarity=similarity,
                    matched_hash=best.hash,
                ),
                MatchPath.FUZZY,
            )

        self.cache.put(
            CacheEntry(
                hash=fp.hash,
                normalized_title=fp.normalized_title,
                normalized_message=fp.normalized_message,
                category=fp.category,
                first_seen=now,
                last_seen=now,
            )
        )
        return DeduplicationResult(), MatchPath.NEW

    def _best_fuzzy_match(
        self,
        title: str,
        message: str,
        category: Optional[str],
        policy: DedupPolicy,
        now: float,
    ) -> Optional[Tuple[CacheEntry, float]]:
        best: Optional[CacheEntry] = None
        best_similarity = 0.0
        for candidate in self.cache.entries_within(policy.time_window, now):
            similarity = composite_similarity(
                title,
                message,
                category,
                candidate.normalized_title,
                candidate.normalized_message,
                candidate.category,
            )
            if best is None or similarity > best_similarity:
                best, best_similarity = candidate, similarity

        if best is None or best_similarity < policy.similarity_threshold:
            return None
        return best, best_similarity

    # -- administrative overrides -----------------------------------------

    def block(self, title: str, message: str, category: Optional[str] = None) -> None:
        """Force-insert the content so every later check reports should_block."""
        fp = fingerprint(title, message, category)
        now = self._clock()
        self.cache.put(
            CacheEntry(
                hash=fp.hash,
                normalized_title=fp.normalized_title,
                normalized_message=fp.normalized_message,
                category=fp.category,
                first_seen=now,
                last_seen=now,
                occurrence_count=BLOCKED_OCCURRENCE_COUNT,
                blocked=True,
            )
        )
        logger.info("Content blocked", hash=fp.hash, category=fp.category)

    def unblock(self, title: str, message: str, category: Optional[str] = None) -> None:
        """Forget the content so it accrues from zero again."""
        fp = fingerprint(title, message, category)
        removed = self.cache.delete(fp.hash)
        logger.info("Content unblocked", hash=fp.hash, category=fp.category, removed=removed)

    # -- convenience wrappers ---------------------------------------------

    def check_toast(self, title: str, message: str, category: Optional[str] = None) -> DeduplicationResult:
        return self.check_duplicate(title, message, category, Priority.NORMAL)

    def check_notification(
        self,
        title: str,
        message: str,
        category: Optional[str] = None,
        priority: Priority | str = Priority.HIGH,
    ) -> DeduplicationResult:
        return self.check_duplicate(title, message, category, priority)

    def check_urgent(self, title: str, message: str, category: Optional[str] = None) -> DeduplicationResult:
        return self.check_duplicate(title, message, category, Priority.URGENT)

    # -- cache management --------------------------------------------------

    def clear_cache(self) -> None:
        self.cache.clear()

    def get_cache_stats(self) -> CacheStats:
        return self.cache.stats()

    def has_space(self) -> bool:
        return self.cache.has_space()

    async def start(self) -> None:
        await self.cache.start()

    async def stop(self) -> None:
        await self.cache.stop()
