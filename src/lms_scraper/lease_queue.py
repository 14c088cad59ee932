"""FIFO queue in front of BrowserPool.

LeaseQueue.run(task) executes ``task(browser)`` with a pooled browser. When
the pool is saturated the call is parked in a FIFO and a single drainer task
keeps retrying acquire() with capped exponential backoff (woken early when a
lease is returned). After a run of consecutive failed acquisitions every
parked call fails with ResourceUnavailableError so the queue cannot grow
without bound while the browsers are starved.
"""

import asyncio
from collections import deque
from typing import Awaitable, Callable, TypeVar

from src.lms_scraper.errors import ResourceUnavailableError
from src.lms_scraper.logging import get_logger
from src.lms_scraper.pool import BrowserPool, PooledBrowser

log = get_logger(__name__)

T = TypeVar("T")


class LeaseQueue:
    """Runs tasks against leased browsers, queueing when none is free."""

    def __init__(
        self,
        pool: BrowserPool,
        *,
        max_consecutive_failures: int = 3,
        backoff_base: float = 1.0,
        backoff_cap: float = 5.0,
    ) -> None:
        self.pool = pool
        self.max_consecutive_failures = max_consecutive_failures
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self._waiters: deque[asyncio.Future] = deque()
        self._drainer: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._waiters)

    async def run(self, task: Callable[[PooledBrowser], Awaitable[T]]) -> T:
        """Run ``task`` with a leased browser; the lease is always released.

        Raises:
            ResourceUnavailableError: If the queue gave up waiting for a browser.
        """
        resource = None
        # Only skip the queue when nobody is already waiting (strict FIFO)
        if not self._waiters:
            resource = await self.pool.acquire()

        if resource is None:
            resource = await self._wait_for_lease()

        async with self.pool.hold(resource):
            return await task(resource)

    async def _wait_for_lease(self) -> PooledBrowser:
        waiter: asyncio.Future = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        log.info("lease_queued", queue_length=len(self._waiters))
        self._ensure_drainer()

        try:
            return await waiter
        except asyncio.CancelledError:
            # Lease handed over in the same tick the caller timed out
            if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                await self.pool.release(waiter.result())
            raise

    def _ensure_drainer(self) -> None:
        if self._drainer is None or self._drainer.done():
            self._drainer = asyncio.create_task(self._drain())

    def _discard_abandoned(self) -> None:
        while self._waiters and self._waiters[0].done():
            self._waiters.popleft()

    async def _drain(self) -> None:
        failures = 0
        while True:
            self._discard_abandoned()
            if not self._waiters:
                return

            self.pool.capacity_freed.clear()
            resource = await self.pool.acquire()

            if resource is None:
                failures += 1
                if failures >= self.max_consecutive_failures:
                    self._fail_all(failures)
                    return
                delay = min(self.backoff_base * 2 ** (failures - 1), self.backoff_cap)
                log.warning(
                    "lease_retry_scheduled",
                    attempt=failures,
                    wait_seconds=delay,
                    queue_length=len(self._waiters),
                )
                await self._wait_for_capacity(delay)
                continue

            failures = 0
            self._discard_abandoned()
            if not self._waiters:
                await self.pool.release(resource)
                return
            self._waiters.popleft().set_result(resource)

    async def _wait_for_capacity(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self.pool.capacity_freed.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    def _fail_all(self, failures: int) -> None:
        log.error(
            "lease_queue_exhausted",
            queue_length=len(self._waiters),
            failures=failures,
        )
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(
                    ResourceUnavailableError(
                        "Browser service unavailable: no browser could be leased"
                    )
                )

    async def close(self) -> None:
        """Stop draining and fail anything still queued."""
        if self._drainer is not None and not self._drainer.done():
            self._drainer.cancel()
            try:
                await self._drainer
            except asyncio.CancelledError:
                pass
        if self._waiters:
            self._fail_all(0)
