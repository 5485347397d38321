"""Exception hierarchy for toastdedup."""

from __future__ import annotations

from typing import Iterable, Tuple


class DedupError(Exception):
    """Base class for all toastdedup errors."""


class ConfigurationError(DedupError):
    """Configuration failed validation; the previous configuration is retained."""

    def __init__(self, message: str, errors: Iterable[str] = ()) -> None:
        self.errors: Tuple[str, ...] = tuple(errors)
        if self.errors:
            message = f"{message}: {'; '.join(self.errors)}"
        super().__init__(message)


class TooManyConcurrentRequestsError(DedupError):
    """Admission limiter rejected a check; callers should retry later."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"Too many concurrent requests (limit={limit})")


class OptimizerStoppedError(DedupError):
    """A check was submitted to an optimizer that has been stopped."""
