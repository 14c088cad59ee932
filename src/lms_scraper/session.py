"""LMS session authentication over Playwright's request API.

SessionAuthenticator performs the form login (hidden-field harvesting, manual
redirect handling, failure-marker detection) and hands back an
AuthenticatedContext: a capability wrapping the cookie-carrying request
context of a browser context. The context is operation-scoped and is never
persisted or logged.
"""

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from playwright.async_api import Error as PlaywrightError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from src.lms_scraper.errors import (
    BrowserDisconnectedError,
    InvalidCredentialsError,
    SessionExpiredError,
    UpstreamUnreachableError,
    is_browser_closed,
)
from src.lms_scraper.logging import get_logger
from src.lms_scraper.parsing import extract_hidden_fields, looks_like_login_page
from src.lms_scraper.utils import DEFAULT_HEADERS, lms_url, resolve_url

if TYPE_CHECKING:
    from playwright.async_api import APIRequestContext, APIResponse, BrowserContext

logger = get_logger(__name__)

LOGIN_PATH = "/site/userlogin"

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})

# The LMS re-renders the login form with an error banner on bad credentials.
_REJECTION_MARKER = re.compile(r"invalid username|password", re.IGNORECASE)


@dataclass(repr=False)
class AuthenticatedContext:
    """Cookie-carrying HTTP capability for one scrape operation.

    Wraps a Playwright APIRequestContext (normally ``browser_context.request``
    so cookies are shared with pages opened in the same context).
    """

    request: "APIRequestContext"
    username: str
    base_url: str
    origin: str
    timeout_ms: int = 15000
    browser_context: "BrowserContext | None" = None
    landing_url: str | None = None

    def __repr__(self) -> str:
        return f"AuthenticatedContext(username={self.username!r}, base_url={self.base_url!r})"

    def url(self, path: str) -> str:
        return lms_url(self.base_url, path)

    async def get(self, url: str, headers: dict[str, str] | None = None) -> "APIResponse":
        """GET with browser-like headers; network failures become typed errors."""
        try:
            return await self.request.get(
                url, headers={**DEFAULT_HEADERS, **(headers or {})}, timeout=self.timeout_ms
            )
        except PlaywrightError as e:
            raise _classify_network_error(e, url) from e

    async def post_form(
        self,
        url: str,
        form: dict[str, str],
        headers: dict[str, str] | None = None,
        *,
        follow_redirects: bool = True,
    ) -> "APIResponse":
        """POST a form-encoded body; network failures become typed errors."""
        kwargs = {} if follow_redirects else {"max_redirects": 0}
        try:
            return await self.request.post(
                url,
                form=form,
                headers={**DEFAULT_HEADERS, **(headers or {})},
                timeout=self.timeout_ms,
                **kwargs,
            )
        except PlaywrightError as e:
            raise _classify_network_error(e, url) from e

    def ensure_logged_in(self, html: str, page: str) -> None:
        """Raise SessionExpiredError when the LMS served its login form instead."""
        if looks_like_login_page(html):
            logger.warning("session_invalid", username=self.username, page=page)
            raise SessionExpiredError(f"Session invalid - {page} returned login page")


def _classify_network_error(exc: Exception, url: str) -> Exception:
    if is_browser_closed(exc):
        return BrowserDisconnectedError(f"Browser connection lost during request to {url}: {exc}")
    return UpstreamUnreachableError(f"LMS host not reachable ({url}): {exc}")


class SessionAuthenticator:
    """Logs into the LMS login form and returns an AuthenticatedContext.

    Retries only when the LMS is unreachable; rejected credentials fail fast.
    """

    def __init__(
        self,
        base_url: str,
        origin: str,
        *,
        timeout_ms: int = 15000,
        retry_attempts: int = 2,
        retry_wait_seconds: float = 2.0,
    ) -> None:
        self.base_url = base_url
        self.origin = origin
        self.timeout_ms = timeout_ms
        self.retry_attempts = max(1, retry_attempts)
        self.retry_wait_seconds = retry_wait_seconds

    @property
    def login_url(self) -> str:
        return lms_url(self.base_url, LOGIN_PATH)

    async def authenticate(
        self,
        request: "APIRequestContext",
        username: str,
        password: str,
        *,
        browser_context: "BrowserContext | None" = None,
    ) -> AuthenticatedContext:
        """Authenticate to the LMS.

        Args:
            request: Playwright request context that will hold the cookies.
            username: Student ID.
            password: LMS password (used for this call only).
            browser_context: Owning browser context, kept for interactive fallbacks.

        Raises:
            InvalidCredentialsError: If the LMS rejected the credentials.
            UpstreamUnreachableError: If the LMS could not be reached.
        """
        context = AuthenticatedContext(
            request=request,
            username=username,
            base_url=self.base_url,
            origin=self.origin,
            timeout_ms=self.timeout_ms,
            browser_context=browser_context,
        )

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_fixed(self.retry_wait_seconds),
            retry=retry_if_exception_type(UpstreamUnreachableError),
            reraise=True,
        ):
            with attempt:
                await self._login(context, password)

        return context

    async def _login(self, context: AuthenticatedContext, password: str) -> None:
        login_url = self.login_url
        logger.info("authentication_started", username=context.username, url=login_url)

        login_page = await context.get(login_url)
        if not login_page.ok:
            logger.warning(
                "login_page_unavailable", username=context.username, status=login_page.status
            )
            raise UpstreamUnreachableError(f"Login page request failed ({login_page.status})")

        hidden_fields = extract_hidden_fields(await login_page.text())
        form = {**hidden_fields, "username": context.username, "password": password}

        response = await context.post_form(
            login_url,
            form,
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "Origin": self.origin,
                "Referer": login_url,
            },
            follow_redirects=False,
        )

        if response.status in REDIRECT_STATUSES:
            location = response.headers.get("location")
            if location:
                destination = resolve_url(login_url, location)
                await context.get(destination)
                context.landing_url = destination
        else:
            body = await response.text()
            if not response.ok or _REJECTION_MARKER.search(body):
                logger.error(
                    "authentication_failed",
                    username=context.username,
                    status=response.status,
                    reason="credentials_rejected",
                )
                raise InvalidCredentialsError(
                    "Login failed: the LMS rejected the credentials or returned an unexpected response"
                )
            context.landing_url = login_url

        logger.info(
            "authentication_succeeded",
            username=context.username,
            hidden_fields=len(hidden_fields),
        )
