"""Batching, result caching and admission control for duplicate checks."""

from .optimizer import DeduplicationOptimizer, cache_key

__all__ = ["DeduplicationOptimizer", "cache_key"]
