"""
toastdedup - Notification and toast deduplication engine.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .config import Config
from .container import DependencyContainer
from .dedup import DeduplicationService, PolicyRegistry
from .performance import DeduplicationOptimizer
from .protocols import DeduplicationResult, Priority

__all__ = [
    "__version__",
    "Config",
    "DependencyContainer",
    "DeduplicationOptimizer",
    "DeduplicationResult",
    "DeduplicationService",
    "PolicyRegistry",
    "Priority",
]
