"""
End-to-end notification flows through the container, optimizer and core service.
"""

import asyncio

import pytest
from toastdedup.config import Config, OptimizerConfig
from toastdedup.container import DependencyContainer
from toastdedup.errors import TooManyConcurrentRequestsError


def uncached_config(**optimizer) -> Config:
    return Config(optimizer=OptimizerConfig(enable_caching=False, **optimizer))


@pytest.mark.integration
class TestNotificationFlow:
    @pytest.mark.asyncio
    async def test_budget_alert_escalates_to_block(self, clock):
        async with DependencyContainer(config=uncached_config(), clock=clock, watch_config=False).lifecycle() as c:
            optimizer = await c.get_optimizer()
            results = []
            for _ in range(3):
                results.append(
                    await optimizer.check_duplicate("Budget Alert", "You exceeded your food budget", "budget", "high")
                )
            assert [(r.is_duplicate, r.should_block) for r in results] == [(False, False), (True, False), (True, True)]

            clock.advance(121)
            result = await optimizer.check_notification("Budget Alert", "You exceeded your food budget", "budget")
            assert not result.is_duplicate

    @pytest.mark.asyncio
    async def test_concurrent_burst_registers_once(self, clock):
        config = uncached_config(max_concurrent_requests=50)
        async with DependencyContainer(config=config, clock=clock, watch_config=False).lifecycle() as c:
            optimizer = await c.get_optimizer()
            results = await asyncio.gather(
                *(optimizer.check_toast("Transaction saved", "Groceries R$ 120,00", "transaction") for _ in range(50))
            )
            assert sum(not r.is_duplicate for r in results) == 1
            service = await c.get_service()
            assert len(service.cache) == 1
            assert c.get_health_status()["cache"]["size"] == 1

    @pytest.mark.asyncio
    async def test_overload_is_rejected_and_recovers(self, clock):
        config = uncached_config(max_concurrent_requests=5)
        async with DependencyContainer(config=config, clock=clock, watch_config=False).lifecycle() as c:
            optimizer = await c.get_optimizer()
            outcomes = await asyncio.gather(
                *(optimizer.check_toast(f"Reminder {i}", f"bill number {i} due") for i in range(8)),
                return_exceptions=True,
            )
            assert sum(isinstance(o, TooManyConcurrentRequestsError) for o in outcomes) == 3
            assert optimizer.get_stats().blocked_requests == 3
            assert not (await optimizer.check_toast("Later", "Capacity is back")).is_duplicate

    @pytest.mark.asyncio
    async def test_admin_block_and_unblock(self, clock):
        async with DependencyContainer(config=Config(), clock=clock, watch_config=False).lifecycle() as c:
            optimizer = await c.get_optimizer()
            assert not (await optimizer.check_urgent("Security", "New login detected", "system")).should_block

            optimizer.block("Security", "New login detected", "system")
            assert (await optimizer.check_urgent("Security", "New login detected", "system")).should_block

            optimizer.unblock("Security", "New login detected", "system")
            assert not (await optimizer.check_urgent("Security", "New login detected", "system")).is_duplicate

    @pytest.mark.asyncio
    async def test_policy_update_through_registry(self, clock):
        async with DependencyContainer(config=uncached_config(), clock=clock, watch_config=False).lifecycle() as c:
            registry = c.get_registry()
            rejected = registry.update_config({"categories": {"goal": {"time_window": -5}}})
            assert not rejected

            applied = registry.update_policy(
                {"time_window": 600, "similarity_threshold": 0.9, "max_duplicates": 3}, category="goal"
            )
            assert applied
            optimizer = await c.get_optimizer()
            await optimizer.check_toast("Goal reached", "Vacation fund is complete", "goal")
            clock.advance(300)
            result = await optimizer.check_toast("Goal reached", "Vacation fund is complete", "goal")
            assert result.is_duplicate
            assert not result.should_block
