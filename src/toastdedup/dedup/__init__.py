"""
Notification deduplication engine for toastdedup.

Two lookup strategies per check:
1. Exact path: normalized content → SHA-256 fingerprint → in-memory cache hit
2. Fuzzy path: Jaro-Winkler (titles) + cosine (messages) composite score
   against stored entries inside the policy window

Key features:
- Per-category overrides over per-priority tier policies
- Injectable clock for deterministic time windows
- Cancellable background sweep bounding cache growth
- Prometheus metrics (toastdedup_checks_total, toastdedup_check_latency_seconds)
- Simple check_duplicate(title, message, category, priority) -> DeduplicationResult API
"""

from .cache import CacheEntry, DedupCache
from .fingerprint import content_hash, fingerprint
from .normalizer import normalize_content, normalize_text
from .policy import ConfigUpdateResult, PolicyRegistry
from .service import BLOCKED_OCCURRENCE_COUNT, DeduplicationService
from .similarity import (
    SimilarityMethod,
    SimilarityResult,
    compare,
    compare_content,
    composite_similarity,
    quick_check,
    strip_markup,
)

__all__ = [
    "BLOCKED_OCCURRENCE_COUNT",
    "CacheEntry",
    "ConfigUpdateResult",
    "DedupCache",
    "DeduplicationService",
    "PolicyRegistry",
    "SimilarityMethod",
    "SimilarityResult",
    "compare",
    "compare_content",
    "composite_similarity",
    "content_hash",
    "fingerprint",
    "normalize_content",
    "normalize_text",
    "quick_check",
    "strip_markup",
]
