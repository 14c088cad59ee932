"""Bounded pool of headless Chromium browsers.

Browsers are expensive (the deployment target has ~512MB RAM), so the pool
caps how many are open at once, how many scrapes share one browser, and how
many scrapes a browser serves before it is closed and replaced.

Lifecycle per browser:
  created -> leased(n) <-> idle -> recycling -> closed

acquire() never waits for capacity: it returns None under contention and the
caller (LeaseQueue) decides whether to queue. Launch failures are logged and
also reported as None so a broken Chromium install degrades requests instead
of crashing them.
"""

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, AsyncIterator, Awaitable, Callable

from playwright.async_api import async_playwright

from src.lms_scraper.errors import ResourceUnavailableError, is_browser_closed
from src.lms_scraper.logging import get_logger

if TYPE_CHECKING:
    from playwright.async_api import Browser, Playwright

log = get_logger(__name__)

# Low-memory Chromium flags for small containers.
LAUNCH_ARGS: tuple[str, ...] = (
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-extensions",
    "--disable-background-networking",
    "--disable-background-timer-throttling",
    "--disable-renderer-backgrounding",
    "--disable-sync",
    "--no-first-run",
    "--no-default-browser-check",
    "--password-store=basic",
)

BrowserLauncher = Callable[[], Awaitable["Browser"]]


class PlaywrightLauncher:
    """Starts Playwright lazily and launches Chromium instances on demand."""

    def __init__(self, *, headless: bool = True) -> None:
        self.headless = headless
        self._playwright: "Playwright | None" = None
        self._lock = asyncio.Lock()

    async def __call__(self) -> "Browser":
        async with self._lock:
            if self._playwright is None:
                self._playwright = await async_playwright().start()
        return await self._playwright.chromium.launch(
            headless=self.headless, args=list(LAUNCH_ARGS)
        )

    async def stop(self) -> None:
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None


@dataclass(eq=False)
class PooledBrowser:
    """A pool-owned browser. Callers lease it and must release it."""

    browser: "Browser"
    created_at: float
    last_used_at: float
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    active_leases: int = 0
    leases_served: int = 0
    closed: bool = False


class BrowserPool:
    """Shared, bounded set of browsers handed out as leases.

    All pool state changes happen under a single asyncio.Lock.
    """

    def __init__(
        self,
        launcher: BrowserLauncher,
        *,
        max_browsers: int = 2,
        max_leases_per_browser: int = 3,
        max_uses_per_browser: int = 10,
        idle_timeout: float = 60.0,
        sweep_interval: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._launcher = launcher
        self.max_browsers = max_browsers
        self.max_leases_per_browser = max_leases_per_browser
        self.max_uses_per_browser = max_uses_per_browser
        self.idle_timeout = idle_timeout
        self.sweep_interval = sweep_interval
        self._clock = clock

        self._browsers: list[PooledBrowser] = []
        self._launching = 0
        self._lock = asyncio.Lock()
        self._sweeper: asyncio.Task | None = None
        # Set whenever a lease is returned or a browser slot frees up.
        self.capacity_freed = asyncio.Event()

    # --- Leasing ---

    def _is_leasable(self, resource: PooledBrowser) -> bool:
        return (
            not resource.closed
            and resource.active_leases < self.max_leases_per_browser
            and resource.leases_served < self.max_uses_per_browser
        )

    async def acquire(self) -> PooledBrowser | None:
        """Lease a browser with spare capacity, launching one if under the cap.

        Returns:
            The leased PooledBrowser, or None if the pool is saturated or a
            new browser could not be launched.
        """
        await self.sweep_idle()

        async with self._lock:
            now = self._clock()
            for resource in self._browsers:
                if self._is_leasable(resource):
                    resource.active_leases += 1
                    resource.leases_served += 1
                    resource.last_used_at = now
                    log.debug(
                        "browser_reused",
                        browser_id=resource.id,
                        active_leases=resource.active_leases,
                    )
                    return resource

            if len(self._browsers) + self._launching >= self.max_browsers:
                log.debug("pool_saturated", browsers=len(self._browsers))
                return None
            # Reserve the slot so concurrent acquires respect the hard cap
            self._launching += 1

        try:
            browser = await self._launcher()
        except asyncio.CancelledError:
            self._launching -= 1
            raise
        except Exception as e:
            self._launching -= 1
            log.error("browser_launch_failed", error=str(e), type=type(e).__name__)
            return None

        now = self._clock()
        resource = PooledBrowser(
            browser=browser,
            created_at=now,
            last_used_at=now,
            active_leases=1,
            leases_served=1,
        )
        async with self._lock:
            self._launching -= 1
            self._browsers.append(resource)
        browser.on("disconnected", lambda _: self._forget(resource))

        log.info("browser_created", browser_id=resource.id, pool_size=len(self._browsers))
        return resource

    async def release(self, resource: PooledBrowser) -> None:
        """Return a lease; recycles the browser once it has served its quota."""
        async with self._lock:
            resource.active_leases = max(0, resource.active_leases - 1)
            resource.last_used_at = self._clock()
            exhausted = (
                not resource.closed
                and resource.active_leases == 0
                and resource.leases_served >= self.max_uses_per_browser
            )
        log.debug(
            "browser_released",
            browser_id=resource.id,
            active_leases=resource.active_leases,
        )
        self.capacity_freed.set()

        if exhausted:
            log.info("browser_quota_reached", browser_id=resource.id, served=resource.leases_served)
            await self.recycle(resource)

    async def recycle(self, resource: PooledBrowser) -> None:
        """Close a browser and remove it from the pool."""
        async with self._lock:
            if resource.closed:
                return
            self._detach(resource)
        await self._close(resource)

    @asynccontextmanager
    async def hold(self, resource: PooledBrowser) -> AsyncIterator[PooledBrowser]:
        """Guarantee release of an already-acquired lease on every exit path.

        A browser that reported itself closed is recycled. Upstream resets leave it pooled.
        """
        disconnected = False
        try:
            yield resource
        except Exception as e:
            disconnected = is_browser_closed(e)
            raise
        finally:
            await self.release(resource)
            if disconnected:
                await self.recycle(resource)

    @asynccontextmanager
    async def lease(self) -> AsyncIterator[PooledBrowser]:
        """Acquire a lease without queueing.

        Raises:
            ResourceUnavailableError: If no browser can be leased right now.
        """
        resource = await self.acquire()
        if resource is None:
            raise ResourceUnavailableError("No browser available in the pool")
        async with self.hold(resource):
            yield resource

    @asynccontextmanager
    async def launch_unpooled(self) -> AsyncIterator["Browser"]:
        """A fresh browser owned by the caller, closed when the block exits.

        Raises:
            ResourceUnavailableError: If the browser cannot be launched.
        """
        try:
            browser = await self._launcher()
        except Exception as e:
            log.error("unpooled_launch_failed", error=str(e), type=type(e).__name__)
            raise ResourceUnavailableError(f"Browser service unavailable: {e}") from e
        log.info("unpooled_browser_created")
        try:
            yield browser
        finally:
            try:
                await browser.close()
            except Exception as e:
                log.warning("browser_close_failed", browser_id="unpooled", error=str(e))

    # --- Housekeeping ---

    async def sweep_idle(self) -> int:
        """Close browsers with no leases that have been idle past the timeout."""
        async with self._lock:
            now = self._clock()
            idle = [
                resource
                for resource in self._browsers
                if resource.active_leases == 0
                and now - resource.last_used_at > self.idle_timeout
            ]
            for resource in idle:
                self._detach(resource)

        for resource in idle:
            log.info("browser_idle_recycled", browser_id=resource.id)
            await self._close(resource)
        return len(idle)

    def _detach(self, resource: PooledBrowser) -> None:
        resource.closed = True
        if resource in self._browsers:
            self._browsers.remove(resource)

    def _forget(self, resource: PooledBrowser) -> None:
        """Disconnected browsers leave the pool immediately."""
        if not resource.closed:
            log.warning("browser_disconnected", browser_id=resource.id)
            self._detach(resource)
            self.capacity_freed.set()

    async def _close(self, resource: PooledBrowser) -> None:
        try:
            await resource.browser.close()
        except Exception as e:
            log.warning("browser_close_failed", browser_id=resource.id, error=str(e))
        finally:
            self.capacity_freed.set()

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep_idle()
            except Exception as e:
                log.error("idle_sweep_failed", error=str(e))

    def start(self) -> None:
        """Start the periodic idle sweep (requires a running event loop)."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_forever())

    async def close(self) -> None:
        """Stop the sweeper and close every browser (graceful shutdown)."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

        async with self._lock:
            browsers = list(self._browsers)
            for resource in browsers:
                self._detach(resource)
        log.info("pool_closing", count=len(browsers))
        for resource in browsers:
            await self._close(resource)

    def stats(self) -> dict[str, int]:
        return {
            "pool_size": len(self._browsers),
            "launching": self._launching,
            "active_leases": sum(r.active_leases for r in self._browsers),
            "max_browsers": self.max_browsers,
            "max_leases_per_browser": self.max_leases_per_browser,
        }
