"""
Tests for the batching/caching/admission optimizer.
"""

import asyncio
import json
from typing import List, Optional

import pytest
import structlog
from structlog.testing import capture_logs
from toastdedup.config import OptimizerConfig
from toastdedup.errors import OptimizerStoppedError, TooManyConcurrentRequestsError
from toastdedup.observability import METRICS
from toastdedup.performance import DeduplicationOptimizer, cache_key
from toastdedup.performance import optimizer as optimizer_module
from toastdedup.protocols import DeduplicationResult, Priority

from tests.helpers.metric_delta import metric_delta


class RecordingBackend:
    """Backend double that records calls and can fail on a chosen title."""

    def __init__(self, fail_on: Optional[str] = None) -> None:
        self.calls: List[tuple] = []
        self.blocked: List[tuple] = []
        self.fail_on = fail_on

    def check_duplicate(self, title, message, category=None, priority=Priority.NORMAL):
        self.calls.append((title, message, category, priority))
        if title == self.fail_on:
            raise RuntimeError("backend exploded")
        return DeduplicationResult(is_duplicate=len(self.calls) > 1)

    def block(self, title, message, category=None):
        self.blocked.append((title, message, category))

    def unblock(self, title, message, category=None):
        self.blocked.remove((title, message, category))


@pytest.mark.unit
class TestBatching:
    @pytest.mark.asyncio
    async def test_fifty_identical_concurrent_checks(self, make_optimizer):
        optimizer = make_optimizer(max_concurrent_requests=50)
        results = await asyncio.gather(
            *(optimizer.check_duplicate("Budget Alert", "Food budget exceeded", "budget") for _ in range(50))
        )
        assert len(results) == 50
        assert sum(1 for r in results if not r.is_duplicate) == 1
        assert not results[0].is_duplicate
        assert all(r.is_duplicate for r in results[1:])
        assert optimizer.get_detailed_stats()["active_requests"] == 0

    @pytest.mark.asyncio
    async def test_full_batch_flushes_without_waiting_for_debounce(self, clock):
        backend = RecordingBackend()
        optimizer = DeduplicationOptimizer(backend, OptimizerConfig(batch_size=3, debounce_time=30), clock=clock)
        results = await asyncio.wait_for(
            asyncio.gather(*(optimizer.check_duplicate(f"t{i}", "m") for i in range(3))),
            timeout=2,
        )
        assert len(results) == 3
        assert [call[0] for call in backend.calls] == ["t0", "t1", "t2"]

    @pytest.mark.asyncio
    async def test_partial_batch_flushes_after_debounce(self, clock):
        backend = RecordingBackend()
        optimizer = DeduplicationOptimizer(backend, OptimizerConfig(batch_size=10, debounce_time=0.01), clock=clock)
        task = asyncio.create_task(optimizer.check_duplicate("t", "m"))
        await asyncio.sleep(0)
        assert optimizer.get_detailed_stats()["queue_size"] == 1
        assert backend.calls == []

        result = await asyncio.wait_for(task, timeout=2)
        assert result == DeduplicationResult(is_duplicate=False)
        assert optimizer.get_detailed_stats()["queue_size"] == 0

    @pytest.mark.asyncio
    async def test_batch_failure_rejects_every_member(self, clock):
        backend = RecordingBackend(fail_on="boom")
        optimizer = DeduplicationOptimizer(backend, OptimizerConfig(batch_size=3), clock=clock)
        outcomes = await asyncio.gather(
            optimizer.check_duplicate("ok", "first"),
            optimizer.check_duplicate("boom", "second"),
            optimizer.check_duplicate("ok", "third"),
            return_exceptions=True,
        )
        assert all(isinstance(o, RuntimeError) for o in outcomes)
        assert outcomes[0] is outcomes[1] is outcomes[2]
        assert optimizer.get_detailed_stats()["active_requests"] == 0
        assert optimizer.get_detailed_stats()["cache_size"] == 0

    @pytest.mark.asyncio
    async def test_batching_disabled_calls_backend_directly(self, clock):
        backend = RecordingBackend()
        optimizer = DeduplicationOptimizer(backend, OptimizerConfig(enable_batching=False), clock=clock)
        await optimizer.check_duplicate("t", "m", "budget", "high")
        assert backend.calls == [("t", "m", "budget", Priority.HIGH)]


@pytest.mark.unit
class TestAdmission:
    @pytest.mark.asyncio
    async def test_rejects_beyond_limit(self, make_optimizer):
        optimizer = make_optimizer(max_concurrent_requests=5)
        with metric_delta(METRICS["optimizer_rejected_total"]):
            outcomes = await asyncio.gather(
                *(optimizer.check_duplicate(f"Title {i}", f"distinct body {i}") for i in range(6)),
                return_exceptions=True,
            )
        errors = [o for o in outcomes if isinstance(o, TooManyConcurrentRequestsError)]
        assert len(errors) == 1
        assert errors[0].limit == 5
        assert optimizer.get_stats().blocked_requests == 1
        assert sum(isinstance(o, DeduplicationResult) for o in outcomes) == 5

    @pytest.mark.asyncio
    async def test_budget_recovers_after_failures(self, clock):
        backend = RecordingBackend(fail_on="boom")
        optimizer = DeduplicationOptimizer(
            backend, OptimizerConfig(max_concurrent_requests=1, enable_batching=False), clock=clock
        )
        for _ in range(3):
            with pytest.raises(RuntimeError):
                await optimizer.check_duplicate("boom", "m")
        assert (await optimizer.check_duplicate("fine", "m")) is not None


@pytest.mark.unit
class TestResultCache:
    @pytest.mark.asyncio
    async def test_hit_short_circuits_backend(self, clock):
        backend = RecordingBackend()
        optimizer = DeduplicationOptimizer(backend, OptimizerConfig(), clock=clock)
        first = await optimizer.check_duplicate("t", "m", "budget")
        with metric_delta(METRICS["optimizer_cache_hits_total"]):
            second = await optimizer.check_duplicate("t", "m", "budget")
        assert second is first
        assert len(backend.calls) == 1
        stats = optimizer.get_stats()
        assert (stats.total_checks, stats.cache_hits, stats.cache_misses) == (2, 1, 1)

    @pytest.mark.asyncio
    async def test_priority_is_part_of_the_key(self, clock):
        backend = RecordingBackend()
        optimizer = DeduplicationOptimizer(backend, OptimizerConfig(), clock=clock)
        await optimizer.check_duplicate("t", "m", "budget", "normal")
        await optimizer.check_duplicate("t", "m", "budget", "high")
        assert len(backend.calls) == 2
        assert cache_key("t", "m", None, "HIGH") == "t|m||high"

    @pytest.mark.asyncio
    async def test_ttl_expiry(self, clock):
        backend = RecordingBackend()
        optimizer = DeduplicationOptimizer(backend, OptimizerConfig(cache_ttl=10), clock=clock)
        await optimizer.check_duplicate("t", "m")
        clock.advance(10)
        result = await optimizer.check_duplicate("t", "m")
        assert result.is_duplicate
        assert len(backend.calls) == 2

    @pytest.mark.asyncio
    async def test_cleanup_cache_removes_expired(self, clock):
        optimizer = DeduplicationOptimizer(RecordingBackend(), OptimizerConfig(cache_ttl=10), clock=clock)
        await optimizer.check_duplicate("old", "m")
        clock.advance(8)
        await optimizer.check_duplicate("new", "m")
        clock.advance(3)
        assert optimizer.cleanup_cache() == 1
        assert optimizer.get_detailed_stats()["cache_size"] == 1

    @pytest.mark.asyncio
    async def test_caching_disabled(self, clock):
        backend = RecordingBackend()
        optimizer = DeduplicationOptimizer(backend, OptimizerConfig(enable_caching=False), clock=clock)
        await optimizer.check_duplicate("t", "m")
        await optimizer.check_duplicate("t", "m")
        assert len(backend.calls) == 2
        assert optimizer.get_stats().cache_misses == 0

    @pytest.mark.asyncio
    async def test_block_invalidates_cached_results(self, service, clock):
        optimizer = DeduplicationOptimizer(service, OptimizerConfig(), clock=clock)
        assert not (await optimizer.check_duplicate("Spam", "Buy now", "system")).should_block
        optimizer.block("Spam", "Buy now", "system")
        assert (await optimizer.check_duplicate("Spam", "Buy now", "system")).should_block
        optimizer.unblock("Spam", "Buy now", "system")
        assert not (await optimizer.check_duplicate("Spam", "Buy now", "system")).is_duplicate

    @pytest.mark.asyncio
    async def test_block_invalidates_differently_spelled_keys(self, service, clock):
        optimizer = DeduplicationOptimizer(service, OptimizerConfig(), clock=clock)
        assert not (await optimizer.check_duplicate("spam", "buy now", "system")).should_block

        optimizer.block("Spam!", "Buy now.", "System")
        assert optimizer.get_detailed_stats()["cache_size"] == 0
        assert (await optimizer.check_duplicate("spam", "buy now", "system")).should_block

        optimizer.unblock("SPAM", "buy NOW", "system")
        assert optimizer.get_detailed_stats()["cache_size"] == 0
        assert not (await optimizer.check_duplicate("spam", "buy now", "system")).is_duplicate

    @pytest.mark.asyncio
    async def test_unstarted_optimizer_sweeps_expired_results_on_insert(self, clock):
        optimizer = DeduplicationOptimizer(RecordingBackend(), OptimizerConfig(cache_ttl=10), clock=clock)
        for i in range(5):
            await optimizer.check_duplicate(f"t{i}", "m")
        assert optimizer.get_detailed_stats()["cache_size"] == 5

        clock.advance(11)
        await optimizer.check_duplicate("fresh", "m")
        assert json.loads(optimizer.export_stats())["cache_keys"] == [cache_key("fresh", "m", None, "normal")]


@pytest.mark.unit
class TestStats:
    @pytest.mark.asyncio
    async def test_response_time_window_is_bounded(self, clock):
        optimizer = DeduplicationOptimizer(RecordingBackend(), OptimizerConfig(enable_batching=False), clock=clock)
        for _ in range(1005):
            await optimizer.check_duplicate("t", "m")
        assert len(optimizer._response_times) == 1000
        assert optimizer.get_stats().total_checks == 1005
        assert optimizer.get_stats().average_response_time >= 0

    @pytest.mark.asyncio
    async def test_memory_usage_counts_encoded_bytes(self, clock):
        optimizer = DeduplicationOptimizer(RecordingBackend(), OptimizerConfig(enable_batching=False), clock=clock)
        await optimizer.check_duplicate("Orçamento", "m")
        key = cache_key("Orçamento", "m", None, "normal")
        expected = len(key.encode("utf-8")) + len(json.dumps({"is_duplicate": False, "should_block": False})) + 8
        assert optimizer.get_stats().memory_usage == expected

    @pytest.mark.asyncio
    async def test_detailed_stats_rates_and_clear(self, clock):
        optimizer = DeduplicationOptimizer(RecordingBackend(), OptimizerConfig(), clock=clock)
        assert optimizer.get_detailed_stats()["hit_rate"] == 0.0
        for _ in range(4):
            await optimizer.check_duplicate("t", "m")
        details = optimizer.get_detailed_stats()
        assert details["hit_rate"] == pytest.approx(0.75)
        assert details["miss_rate"] == pytest.approx(0.25)
        assert details["cache_size"] == 1

        optimizer.clear()
        details = optimizer.get_detailed_stats()
        assert details["cache_size"] == 0
        assert details["stats"]["total_checks"] == 0

    @pytest.mark.asyncio
    async def test_export_stats(self, clock, tmp_path):
        optimizer = DeduplicationOptimizer(RecordingBackend(), OptimizerConfig(), clock=clock)
        await optimizer.check_duplicate("t", "m")
        target = tmp_path / "stats.json"
        exported = json.loads(optimizer.export_stats(target))
        assert exported["cache_keys"] == ["t|m||normal"]
        assert exported["config"]["batch_size"] == 10
        assert exported["stats"]["stats"]["total_checks"] == 1
        assert json.loads(target.read_text(encoding="utf-8"))["cache_keys"] == ["t|m||normal"]


@pytest.mark.unit
class TestConfigAndLifecycle:
    def test_update_config_validates(self, clock):
        optimizer = DeduplicationOptimizer(RecordingBackend(), clock=clock)
        rejected = optimizer.update_config({"batch_size": 0})
        assert not rejected
        assert optimizer.config.batch_size == 10

        assert optimizer.update_config({"batch_size": 25, "debounce_time": 0.1})
        assert (optimizer.config.batch_size, optimizer.config.debounce_time) == (25, 0.1)

    def test_set_profiling(self, clock):
        optimizer = DeduplicationOptimizer(RecordingBackend(), clock=clock)
        optimizer.set_profiling(True)
        assert optimizer.config.enable_profiling

    @pytest.mark.asyncio
    async def test_profiled_checks_still_resolve(self, clock):
        optimizer = DeduplicationOptimizer(RecordingBackend(), OptimizerConfig(enable_profiling=True), clock=clock)
        assert await optimizer.check_duplicate("t", "m") == DeduplicationResult()

    @pytest.mark.asyncio
    async def test_profiling_logs_each_flush(self, clock, monkeypatch):
        optimizer = DeduplicationOptimizer(
            RecordingBackend(), OptimizerConfig(enable_profiling=True, batch_size=3), clock=clock
        )
        with capture_logs() as logs:
            monkeypatch.setattr(optimizer_module, "logger", structlog.get_logger(optimizer_module.__name__))
            await asyncio.gather(*(optimizer.check_duplicate(f"t{i}", "m") for i in range(3)))

        flushes = [log for log in logs if log["event"] == "Profiled batch flush"]
        assert len(flushes) == 1
        assert flushes[0]["batch_size"] == 3
        assert flushes[0]["elapsed_ms"] >= 0
        assert not any(log["event"] == "Profiled duplicate check" for log in logs)

    @pytest.mark.asyncio
    async def test_stop_resolves_pending_and_refuses_new_checks(self, clock):
        backend = RecordingBackend()
        optimizer = DeduplicationOptimizer(backend, OptimizerConfig(debounce_time=60), clock=clock)
        await optimizer.start()
        assert optimizer._cleanup_task is not None

        pending = asyncio.create_task(optimizer.check_duplicate("t", "m"))
        await asyncio.sleep(0)
        await optimizer.stop()

        assert (await pending) == DeduplicationResult()
        assert optimizer.is_stopped
        with pytest.raises(OptimizerStoppedError):
            await optimizer.check_duplicate("t", "m")

    @pytest.mark.asyncio
    async def test_context_manager(self, service, clock):
        async with DeduplicationOptimizer(service, clock=clock) as optimizer:
            result = await optimizer.check_urgent("Fraud", "Card blocked")
            assert not result.is_duplicate
            assert (await optimizer.check_toast("Saved", "Transaction saved")) == DeduplicationResult()
            assert (await optimizer.check_notification("Goal", "Halfway")) == DeduplicationResult()
        assert optimizer.is_stopped
