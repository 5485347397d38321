"""
Core contracts and dataclasses for the toastdedup engine.

This module defines the value types exchanged between the deduplication
components and the structural protocol the optimizer depends on:

- Priority levels and the policy tiers they resolve to
- Content fingerprints derived from normalized notification text
- Deduplication results returned to UI/notification callers
- Cache and performance statistics snapshots
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional, Protocol

# ============================================================================
# Enums and Constants
# ============================================================================

DEFAULT_CATEGORY = "general"


class Priority(str, Enum):
    """Caller-facing notification priority."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

    @classmethod
    def parse(cls, value: Any) -> Priority:
        """Coerce a raw priority, falling back to NORMAL for unknown values."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.NORMAL


class PolicyTier(str, Enum):
    """Built-in policy tiers, one per priority level."""

    DIGEST = "digest"
    TOAST = "toast"
    NOTIFICATION = "notification"
    URGENT = "urgent"


PRIORITY_TIERS: Dict[Priority, PolicyTier] = {
    Priority.LOW: PolicyTier.DIGEST,
    Priority.NORMAL: PolicyTier.TOAST,
    Priority.HIGH: PolicyTier.NOTIFICATION,
    Priority.URGENT: PolicyTier.URGENT,
}


class MatchPath(str, Enum):
    """Which branch of the decision algorithm produced a result."""

    DISABLED = "disabled"
    EXACT = "exact"
    FUZZY = "fuzzy"
    NEW = "new"


# ============================================================================
# Core Dataclasses
# ============================================================================


@dataclass(frozen=True)
class ContentFingerprint:
    """Identity of a piece of notification content after normalization."""

    normalized_title: str
    normalized_message: str
    category: Optional[str]
    hash: str


@dataclass(frozen=True)
class DeduplicationResult:
    """Outcome of a single duplicate check."""

    is_duplicate: bool = False
    should_block: bool = False
    similarity: Optional[float] = None
    matched_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-friendly mapping, omitting absent fields."""
        return {key: value for key, value in asdict(self).items() if value is not None}


@dataclass(frozen=True)
class CacheStats:
    """Snapshot of the dedup cache (timestamps are clock readings)."""

    size: int = 0
    oldest: float = 0.0
    newest: float = 0.0


@dataclass
class PerformanceStats:
    """Running counters kept by the optimizer."""

    total_checks: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    average_response_time: float = 0.0
    blocked_requests: int = 0
    memory_usage: int = 0


# ============================================================================
# Protocols
# ============================================================================


class DeduplicatorProtocol(Protocol):
    """Synchronous duplicate-decision backend consumed by the optimizer."""

    def check_duplicate(
        self,
        title: str,
        message: str,
        category: Optional[str] = None,
        priority: Priority | str = Priority.NORMAL,
    ) -> DeduplicationResult:
        """Decide whether the content repeats something recently seen."""
        ...

    def block(self, title: str, message: str, category: Optional[str] = None) -> None:
        """Force every subsequent check of this content to report should_block."""
        ...

    def unblock(self, title: str, message: str, category: Optional[str] = None) -> None:
        """Drop any record of this content so it accrues from zero."""
        ...


__all__ = [
    "DEFAULT_CATEGORY",
    "Priority",
    "PolicyTier",
    "PRIORITY_TIERS",
    "MatchPath",
    "ContentFingerprint",
    "DeduplicationResult",
    "CacheStats",
    "PerformanceStats",
    "DeduplicatorProtocol",
]
