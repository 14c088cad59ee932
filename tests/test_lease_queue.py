"""
Tests for the FIFO lease queue in front of the browser pool.
"""

import asyncio

import pytest

from src.lms_scraper.errors import ResourceUnavailableError
from src.lms_scraper.lease_queue import LeaseQueue
from src.lms_scraper.pool import BrowserPool
from tests.conftest import FakeLauncher


def _saturated_pool(launcher=None):
    return BrowserPool(launcher or FakeLauncher(), max_browsers=1, max_leases_per_browser=1)


class TestLeaseQueue:
    async def test_runs_immediately_when_capacity_is_free(self):
        pool = _saturated_pool()
        queue = LeaseQueue(pool)

        result = await queue.run(lambda resource: asyncio.sleep(0, result=resource.id))

        assert isinstance(result, str)
        assert pool.stats()["active_leases"] == 0
        assert len(queue) == 0

    async def test_queued_task_waits_for_release(self):
        pool = _saturated_pool()
        queue = LeaseQueue(pool, backoff_base=10, backoff_cap=10)
        held = await pool.acquire()
        assert await pool.acquire() is None
        started = asyncio.Event()

        async def task(resource):
            started.set()
            return resource

        pending = asyncio.create_task(queue.run(task))
        await asyncio.sleep(0.05)
        assert not started.is_set()
        assert len(queue) == 1

        await pool.release(held)
        result = await asyncio.wait_for(pending, timeout=1)

        assert started.is_set()
        assert result is held
        assert held.active_leases == 0
        await queue.close()

    async def test_strict_fifo_order(self):
        pool = _saturated_pool()
        queue = LeaseQueue(pool, backoff_base=10, backoff_cap=10)
        held = await pool.acquire()
        order = []

        def make_task(n):
            async def task(resource):
                order.append(n)
                await asyncio.sleep(0)

            return task

        pending = []
        for n in range(3):
            pending.append(asyncio.create_task(queue.run(make_task(n))))
            await asyncio.sleep(0.01)

        await pool.release(held)
        await asyncio.wait_for(asyncio.gather(*pending), timeout=2)

        assert order == [0, 1, 2]
        assert pool.stats()["active_leases"] == 0

    async def test_escalates_after_consecutive_failures(self):
        launcher = FakeLauncher(fail=True)
        queue = LeaseQueue(
            _saturated_pool(launcher),
            max_consecutive_failures=3,
            backoff_base=0.01,
            backoff_cap=0.02,
        )

        with pytest.raises(ResourceUnavailableError):
            await asyncio.wait_for(queue.run(lambda resource: asyncio.sleep(0)), timeout=2)

        # One direct attempt, then three from the drainer
        assert launcher.attempts == 4
        assert len(queue) == 0

    async def test_all_waiters_fail_together(self):
        queue = LeaseQueue(
            _saturated_pool(FakeLauncher(fail=True)),
            max_consecutive_failures=2,
            backoff_base=0.01,
            backoff_cap=0.01,
        )

        results = await asyncio.gather(
            *(queue.run(lambda resource: asyncio.sleep(0)) for _ in range(3)),
            return_exceptions=True,
        )

        assert all(isinstance(r, ResourceUnavailableError) for r in results)

    async def test_timed_out_waiter_does_not_leak_a_lease(self):
        pool = _saturated_pool()
        queue = LeaseQueue(pool, backoff_base=10, backoff_cap=10)
        held = await pool.acquire()

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(queue.run(lambda resource: asyncio.sleep(0)), timeout=0.05)

        await pool.release(held)
        await asyncio.sleep(0.05)

        assert held.active_leases == 0
        assert len(queue) == 0
        async with pool.lease() as lease:
            assert lease is held

    async def test_failing_task_releases_lease(self):
        pool = _saturated_pool()
        queue = LeaseQueue(pool)

        async def task(resource):
            raise ValueError("upstream markup changed")

        with pytest.raises(ValueError):
            await queue.run(task)

        assert pool.stats()["active_leases"] == 0

    async def test_close_fails_pending_waiters(self):
        pool = _saturated_pool()
        queue = LeaseQueue(pool, backoff_base=10, backoff_cap=10)
        await pool.acquire()

        pending = asyncio.create_task(queue.run(lambda resource: asyncio.sleep(0)))
        await asyncio.sleep(0.01)
        await queue.close()

        with pytest.raises(ResourceUnavailableError):
            await pending
