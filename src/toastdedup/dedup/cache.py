"""
In-memory store of recently seen notification content.

Each entry keeps the normalized title and message alongside its counters so
the fuzzy path can score new content against what was actually stored. A
periodic sweep removes entries whose age since first sighting exceeds
``CacheConfig.max_age``, independent of any per-policy window.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional

import structlog

from ..config import CacheConfig
from ..observability import METRICS
from ..protocols import CacheStats

logger = structlog.get_logger(__name__)


@dataclass
class CacheEntry:
    """A fingerprint the cache has seen, with its occurrence counters."""

    hash: str
    normalized_title: str
    normalized_message: str
    category: Optional[str]
    first_seen: float
    last_seen: float
    occurrence_count: int = 1
    blocked: bool = False

    def age(self, now: float) -> float:
        return now - self.first_seen

    def idle(self, now: float) -> float:
        return now - self.last_seen

    def touch(self, now: float) -> int:
        """Record another occurrence and return the new count."""
        self.occurrence_count += 1
        self.last_seen = now
        return self.occurrence_count


class DedupCache:
    """
    Authoritative fingerprint store with a cancellable sweep task.

    All mutation happens synchronously; the background task only calls
    :meth:`sweep` between awaits, so it never interleaves with a check.
    """

    def __init__(self, config: Optional[CacheConfig] = None, clock: Callable[[], float] = time.monotonic) -> None:
        self.config = config or CacheConfig()
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._sweep_task: Optional[asyncio.Task[None]] = None

    # -- lookups -----------------------------------------------------------

    def get(self, content_hash: str) -> Optional[CacheEntry]:
        return self._entries.get(content_hash)

    def entries_within(self, window: float, now: Optional[float] = None) -> List[CacheEntry]:
        """Entries whose last sighting is at most ``window`` seconds old."""
        now = self._clock() if now is None else now
        return [entry for entry in self._entries.values() if entry.idle(now) <= window]

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, content_hash: object) -> bool:
        return content_hash in self._entries

    def __iter__(self) -> Iterator[CacheEntry]:
        return iter(list(self._entries.values()))

    # -- mutation ----------------------------------------------------------

    def put(self, entry: CacheEntry) -> None:
        """Insert or overwrite the entry stored under ``entry.hash``."""
        self._entries[entry.hash] = entry
        METRICS["cache_entries"].set(len(self._entries))

    def delete(self, content_hash: str) -> bool:
        removed = self._entries.pop(content_hash, None) is not None
        if removed:
            METRICS["cache_entries"].set(len(self._entries))
        return removed

    def clear(self) -> None:
        self._entries.clear()
        METRICS["cache_entries"].set(0)
        logger.debug("Dedup cache cleared")

    def sweep(self, now: Optional[float] = None) -> int:
        """Remove entries older than ``max_age`` since first seen; return how many went."""
        now = self._clock() if now is None else now
        max_age = self.config.max_age
        expired = [key for key, entry in self._entries.items() if entry.age(now) > max_age]
        for key in expired:
            del self._entries[key]

        if expired:
            METRICS["sweep_removed_total"].inc(len(expired))
            logger.debug("Swept expired dedup entries", removed=len(expired), remaining=len(self._entries))
        METRICS["cache_entries"].set(len(self._entries))
        return len(expired)

    # -- introspection -----------------------------------------------------

    def stats(self) -> CacheStats:
        if not self._entries:
            return CacheStats()
        first_seen = [entry.first_seen for entry in self._entries.values()]
        return CacheStats(size=len(self._entries), oldest=min(first_seen), newest=max(first_seen))

    def has_space(self) -> bool:
        """Advisory: False once the cache holds ``capacity`` entries. Inserts are never refused."""
        return len(self._entries) < self.config.capacity

    # -- lifecycle ---------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def start(self) -> None:
        """Start the periodic sweep. Calling start twice is a no-op."""
        if self.is_running:
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="toastdedup-cache-sweep")
        logger.info(
            "Dedup cache sweep started",
            interval=self.config.cleanup_interval,
            max_age=self.config.max_age,
        )

    async def stop(self) -> None:
        """Cancel the sweep task and wait for it to finish."""
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Dedup cache sweep stopped")

    async def __aenter__(self) -> DedupCache:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.cleanup_interval)
            try:
                self.sweep()
            except Exception as e:
                logger.error("Dedup cache sweep failed", error=str(e), exc_info=True)
