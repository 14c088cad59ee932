"""AttendanceScraper - the entry point for attendance scrapes.

One instance per process owns the browser pool, its lease queue, the result
cache and the authenticator. Every scrape runs:

  cache lookup
    -> join an identical in-flight scrape, or start one bounded by
       scrape_timeout_seconds
      -> tier 1: pooled browser via LeaseQueue
      -> tier 2: dedicated unpooled browser, only when tier 1 failed for
         capacity or connectivity reasons
        -> fresh browser context, login, page strategies
  -> cache store on full success

Internal errors are collapsed into the four ScrapeError types callers see.
"""

import asyncio
import hashlib
import secrets
import time
from typing import TYPE_CHECKING, Awaitable, Callable, TypeVar

from playwright.async_api import Error as PlaywrightError

from src.lms_scraper.cache import ResultCache
from src.lms_scraper.config import ScraperConfig, get_config
from src.lms_scraper.errors import (
    BrowserDisconnectedError,
    FetchError,
    InvalidCredentialsError,
    RequiresInteractiveJSError,
    ResourceUnavailableError,
    ScrapeError,
    ScrapeInvalidCredentialsError,
    ScrapeTimeoutError,
    ScrapingError,
    ServiceUnavailableError,
    SessionExpiredError,
    TransientError,
    UpstreamFormatChangedError,
    UpstreamUnreachableError,
    is_browser_disconnect,
)
from src.lms_scraper.lease_queue import LeaseQueue
from src.lms_scraper.logging import get_logger
from src.lms_scraper.models import AttendanceSummary, DatewiseResult
from src.lms_scraper.pages.attendance import AttendancePage
from src.lms_scraper.pages.dashboard import DashboardPage
from src.lms_scraper.pages.datewise import DatewiseFetch, DatewisePage
from src.lms_scraper.pages.interactive import InteractiveDatewisePage
from src.lms_scraper.pool import BrowserLauncher, BrowserPool, PlaywrightLauncher
from src.lms_scraper.session import AuthenticatedContext, SessionAuthenticator
from src.lms_scraper.utils import DEFAULT_HEADERS, normalize_lms_date, today_lms_date

if TYPE_CHECKING:
    from playwright.async_api import Browser, BrowserContext

log = get_logger(__name__)

T = TypeVar("T")
Operation = Callable[[AuthenticatedContext], Awaitable[T]]


def surface_error(exc: ScrapingError) -> ScrapeError:
    """Collapse an internal error into the error callers are shown."""
    if isinstance(exc, ScrapeError):
        return exc
    if isinstance(exc, (InvalidCredentialsError, SessionExpiredError)):
        return ScrapeInvalidCredentialsError("Invalid LMS credentials")
    if isinstance(exc, FetchError):
        return UpstreamFormatChangedError(f"LMS page structure not recognised: {exc}")
    return ServiceUnavailableError(f"Browser service unavailable: {exc}")


def _browser_error(exc: PlaywrightError, action: str) -> ScrapingError:
    if is_browser_disconnect(exc):
        return BrowserDisconnectedError(f"Browser closed while trying to {action}: {exc}")
    return ResourceUnavailableError(f"Could not {action}: {exc}")


class ScrapeSession:
    """Operation-scoped browser context logged in as one user.

    ``async with ScrapeSession(...) as auth`` opens a fresh context, logs in
    and yields the AuthenticatedContext; the context (and its cookies) is
    closed on every exit path. The password is dropped once login finishes.
    """

    def __init__(
        self,
        browser: "Browser",
        authenticator: SessionAuthenticator,
        username: str,
        password: str,
    ) -> None:
        self.browser = browser
        self.authenticator = authenticator
        self.username = username
        self._password = password
        self._context: "BrowserContext | None" = None

    async def __aenter__(self) -> AuthenticatedContext:
        try:
            self._context = await self.browser.new_context(user_agent=DEFAULT_HEADERS["User-Agent"])
        except PlaywrightError as e:
            raise _browser_error(e, "open a browser context") from e

        try:
            return await self.authenticator.authenticate(
                self._context.request,
                self.username,
                self._password,
                browser_context=self._context,
            )
        except BaseException:
            await self.close()
            raise
        finally:
            self._password = ""

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._context is None:
            return
        context, self._context = self._context, None
        try:
            await context.close()
        except PlaywrightError as e:
            log.debug("context_close_failed", username=self.username, error=str(e))


class AttendanceScraper:
    """Scrapes LMS attendance through a shared, bounded browser pool.

    Usage:
        async with AttendanceScraper(get_config()) as scraper:
            summary = await scraper.scrape_attendance("2021001", "secret")
    """

    def __init__(
        self,
        config: ScraperConfig | None = None,
        *,
        launcher: BrowserLauncher | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or get_config()
        self._owns_launcher = launcher is None
        self._launcher = launcher or PlaywrightLauncher(headless=self.config.headless)

        self.pool = BrowserPool(
            self._launcher,
            max_browsers=self.config.pool_max_browsers,
            max_leases_per_browser=self.config.pool_max_leases_per_browser,
            max_uses_per_browser=self.config.pool_max_uses_per_browser,
            idle_timeout=self.config.pool_idle_timeout_seconds,
            sweep_interval=self.config.pool_sweep_interval_seconds,
            clock=clock,
        )
        self.queue = LeaseQueue(
            self.pool,
            max_consecutive_failures=self.config.queue_max_consecutive_failures,
            backoff_base=self.config.queue_backoff_base_seconds,
            backoff_cap=self.config.queue_backoff_cap_seconds,
        )
        self.cache: ResultCache = ResultCache(
            ttl=self.config.cache_ttl_seconds,
            maxsize=self.config.cache_max_entries,
            timer=clock,
        )
        self.authenticator = SessionAuthenticator(
            self.config.lms_base_url,
            self.config.origin,
            timeout_ms=self.config.request_timeout_ms,
            retry_attempts=self.config.auth_retry_attempts,
            retry_wait_seconds=self.config.auth_retry_wait_seconds,
        )
        # In-flight scrapes are shared only between callers with the same credentials
        self._in_flight: dict[tuple[str, str, str], asyncio.Task] = {}
        self._credential_salt = secrets.token_bytes(16)

    async def __aenter__(self) -> "AttendanceScraper":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def start(self) -> None:
        self.pool.start()
        log.info("scraper_started", base_url=self.config.lms_base_url, **self.pool.stats())

    async def close(self) -> None:
        """Fail queued callers, close every browser and stop Playwright."""
        await self.queue.close()
        await self.pool.close()
        if self._owns_launcher and isinstance(self._launcher, PlaywrightLauncher):
            await self._launcher.stop()
        log.info("scraper_closed")

    # --- Public operations ---

    async def scrape_datewise(self, username: str, password: str, date) -> DatewiseResult:
        """Attendance rows for a single day.

        Args:
            username: LMS student ID.
            password: LMS password (used for this scrape only).
            date: DD-MM-YYYY string or datetime.date.

        Raises:
            ValueError: If the date is malformed (before any network activity).
            ScrapeError: One of ScrapeInvalidCredentialsError,
                UpstreamFormatChangedError, ServiceUnavailableError,
                ScrapeTimeoutError.
        """
        date_key = normalize_lms_date(date)

        async def operation(auth: AuthenticatedContext) -> DatewiseResult:
            fetched = await self._fetch_datewise(auth, date_key)
            return DatewiseResult(source=fetched.source, date_used=date_key, rows=fetched.rows)

        return await self._run(username, password, f"datewise:{date_key}", operation)

    async def scrape_attendance(
        self,
        username: str,
        password: str,
        from_date=None,
        to_date=None,
    ) -> AttendanceSummary:
        """Per-subject attendance totals for a date range, plus dashboard info.

        Dates default to ``default_from_date`` and today.

        Raises:
            ValueError: If a date is malformed (before any network activity).
            ScrapeError: As for scrape_datewise.
        """
        from_key = normalize_lms_date(from_date or self.config.default_from_date)
        to_key = normalize_lms_date(to_date or today_lms_date())

        async def operation(auth: AuthenticatedContext) -> AttendanceSummary:
            student_name, upcoming = await DashboardPage(auth).fetch()
            records = await AttendancePage(auth).fetch(from_key, to_key)
            return AttendanceSummary(
                student_name=student_name,
                from_date=from_key,
                to_date=to_key,
                records=records,
                upcoming_classes=upcoming,
            )

        return await self._run(username, password, f"range:{from_key}:{to_key}", operation)

    # --- Orchestration ---

    async def _run(self, username: str, password: str, date_key: str, operation: Operation) -> T:
        cached = self.cache.get(username, date_key)
        if cached is not None:
            return cached

        key = (username, date_key, self._credential_digest(password))
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._scrape(username, password, date_key, operation))
            task.add_done_callback(self._scrape_finished(key))
            self._in_flight[key] = task
        else:
            log.info("scrape_joined_in_flight", username=username, key=date_key)

        # Shielded so one caller giving up does not cancel the scrape for the others
        return await asyncio.shield(task)

    def _credential_digest(self, password: str) -> str:
        return hashlib.sha256(self._credential_salt + password.encode()).hexdigest()

    def _scrape_finished(self, key: tuple[str, str, str]) -> Callable[[asyncio.Task], None]:
        def _done(task: asyncio.Task) -> None:
            if self._in_flight.get(key) is task:
                del self._in_flight[key]
            if not task.cancelled():
                # Retrieved here so abandoned scrapes do not warn at shutdown
                task.exception()

        return _done

    async def _scrape(self, username: str, password: str, date_key: str, operation: Operation) -> T:
        started = time.monotonic()
        timeout = self.config.scrape_timeout_seconds
        log.info("scrape_started", username=username, key=date_key)

        try:
            result = await asyncio.wait_for(
                self._dispatch(username, password, operation), timeout=timeout
            )
        except asyncio.TimeoutError:
            log.error("scrape_timeout", username=username, key=date_key, timeout_seconds=timeout)
            raise ScrapeTimeoutError(f"Scrape timed out after {timeout:g}s") from None
        except ScrapingError as e:
            surfaced = surface_error(e)
            log.error(
                "scrape_failed",
                username=username,
                key=date_key,
                error=str(e),
                error_type=type(e).__name__,
                surfaced=type(surfaced).__name__,
            )
            if isinstance(surfaced, ScrapeInvalidCredentialsError):
                # Rejected credentials retire results fetched with the old ones
                self.cache.invalidate(username)
            if surfaced is e:
                raise
            raise surfaced from e

        self.cache.set(username, date_key, result)
        log.info(
            "scrape_succeeded",
            username=username,
            key=date_key,
            duration_seconds=round(time.monotonic() - started, 2),
        )
        return result

    async def _dispatch(self, username: str, password: str, operation: Operation) -> T:
        try:
            return await self.queue.run(
                lambda resource: self._run_in_browser(resource.browser, username, password, operation)
            )
        except (ResourceUnavailableError, BrowserDisconnectedError) as e:
            pooled_error: ScrapingError = e
        except UpstreamUnreachableError as e:
            if not is_browser_disconnect(e):
                raise
            pooled_error = e

        log.warning(
            "pooled_tier_failed",
            username=username,
            error=str(pooled_error),
            error_type=type(pooled_error).__name__,
        )
        try:
            async with self.pool.launch_unpooled() as browser:
                return await self._run_in_browser(browser, username, password, operation)
        except (ResourceUnavailableError, BrowserDisconnectedError) as e:
            log.error("unpooled_tier_failed", username=username, error=str(e))
            raise ServiceUnavailableError(f"Browser service unavailable: {e}") from e

    async def _run_in_browser(
        self, browser: "Browser", username: str, password: str, operation: Operation
    ) -> T:
        async with ScrapeSession(browser, self.authenticator, username, password) as auth:
            try:
                return await operation(auth)
            except PlaywrightError as e:
                raise _browser_error(e, "complete the scrape") from e

    async def _fetch_datewise(self, auth: AuthenticatedContext, date_key: str) -> DatewiseFetch:
        try:
            return await DatewisePage(auth).fetch(date_key)
        except RequiresInteractiveJSError:
            if auth.browser_context is None:
                raise
            log.info("interactive_fallback_started", username=auth.username, date=date_key)

        page = await auth.browser_context.new_page()
        try:
            return await InteractiveDatewisePage(page, timeout_ms=self.config.request_timeout_ms).fetch(
                auth.base_url, date_key
            )
        except BrowserDisconnectedError:
            raise
        except TransientError as e:
            raise RequiresInteractiveJSError(f"Interactive date filter failed: {e}") from e
        finally:
            try:
                await page.close()
            except PlaywrightError as e:
                log.debug("page_close_failed", error=str(e))
