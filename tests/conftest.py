"""
Test configuration for toastdedup.

Provides a controllable clock, pre-wired dedup components and task cleanup
so that time windows can be exercised without wall-clock sleeps.
"""

# Standard library imports
import asyncio
from pathlib import Path
from typing import AsyncGenerator, Callable

# Third-party imports
import pytest
import pytest_asyncio

# Local imports
from toastdedup.config import CacheConfig, OptimizerConfig, PolicyConfig
from toastdedup.dedup import DedupCache, DeduplicationService, PolicyRegistry
from toastdedup.performance import DeduplicationOptimizer

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests across modules")


# ============================================================================
# Core Test Fixtures
# ============================================================================


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry() -> PolicyRegistry:
    return PolicyRegistry(PolicyConfig())


@pytest.fixture
def cache(clock: FakeClock) -> DedupCache:
    return DedupCache(CacheConfig(), clock=clock)


@pytest.fixture
def service(registry: PolicyRegistry, cache: DedupCache, clock: FakeClock) -> DeduplicationService:
    return DeduplicationService(registry, cache, clock=clock)


@pytest.fixture
def make_optimizer(service: DeduplicationService, clock: FakeClock) -> Callable[..., DeduplicationOptimizer]:
    """Build an optimizer over the shared service with config overrides."""

    def _make(**overrides) -> DeduplicationOptimizer:
        return DeduplicationOptimizer(service, OptimizerConfig(**overrides), clock=clock)

    return _make


@pytest_asyncio.fixture(autouse=True)
async def cleanup_tasks() -> AsyncGenerator[None, None]:
    """
    Cancel any asyncio task a test leaves behind so background sweeps never
    leak into the next test.
    """
    tasks_before = asyncio.all_tasks()
    yield
    tasks_after = asyncio.all_tasks()
    new_tasks = tasks_after - tasks_before

    for task in new_tasks:
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


# ============================================================================
# Temporary Directory and File Fixtures
# ============================================================================


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """A small valid configuration file with one category override."""
    path = tmp_path / "toastdedup.yaml"
    path.write_text(
        """
policies:
  categories:
    budget:
      time_window: 120
      similarity_threshold: 0.9
      max_duplicates: 1
optimizer:
  batch_size: 5
monitoring:
  log_level: WARNING
""",
        encoding="utf-8",
    )
    return path
