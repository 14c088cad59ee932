"""Error hierarchy for scraping retry classification.

Every error derives from ScrapingError and is classified as either a
TransientError (may succeed on retry) or a PermanentError (won't). The
component families (AuthError, FetchError, PoolError) sit across that split,
and ScrapeError is the small unified set surfaced to the HTTP boundary.

Example usage with tenacity:
    @retry(retry=retry_if_exception_type(TransientError), stop=stop_after_attempt(3))
    async def login(...):
        ...
"""


class ScrapingError(Exception):
    """Base exception for all scraping errors."""

    pass


class TransientError(ScrapingError):
    """Temporary failure that may succeed on retry.

    Examples: network timeouts, 503 Service Unavailable, temporary DOM loading issues.
    """

    pass


class PermanentError(ScrapingError):
    """Failure that won't succeed on retry.

    Examples: rejected credentials, missing form fields, changed page layout.
    """

    pass


# --- Session authenticator ---


class AuthError(ScrapingError):
    """Base for login failures."""

    pass


class InvalidCredentialsError(AuthError, PermanentError):
    """The LMS explicitly rejected the username/password. Never retried."""

    pass


class UpstreamUnreachableError(AuthError, TransientError):
    """DNS failure, refused/reset connection or 5xx while reaching the LMS."""

    pass


class SessionExpiredError(AuthError, PermanentError):
    """A page came back as the login form after authentication."""

    pass


# --- Multi-strategy fetcher ---


class FetchError(ScrapingError):
    """An upstream page or endpoint could not be retrieved or understood."""

    pass


class CannotDeterminePayloadError(FetchError, PermanentError):
    """No usable date field could be identified on the live page."""

    pass


class RequiresInteractiveJSError(FetchError):
    """Every plain-HTTP strategy returned the unchanged original page.

    Signals that the date filter is driven by JavaScript and the caller should
    switch to the browser automation path.
    """

    pass


# --- Resource pool ---


class PoolError(ScrapingError):
    """Base for browser pool failures."""

    pass


class ResourceUnavailableError(PoolError, TransientError):
    """No leasable browser and the pool is at capacity (or cannot launch)."""

    pass


class BrowserDisconnectedError(PoolError, TransientError):
    """The leased browser died mid-operation (target closed, connection reset)."""

    pass


# --- Unified boundary errors ---


class ScrapeError(ScrapingError):
    """Base for the errors surfaced by AttendanceScraper."""

    status_code = 500


class ServiceUnavailableError(ScrapeError, TransientError):
    """Both execution tiers failed for capacity or connectivity reasons."""

    status_code = 503


class ScrapeTimeoutError(ScrapeError, TransientError):
    """The scrape exceeded its wall-clock budget."""

    status_code = 504


class ScrapeInvalidCredentialsError(ScrapeError, PermanentError):
    """The user's LMS credentials were rejected."""

    status_code = 401


class UpstreamFormatChangedError(ScrapeError, PermanentError):
    """The LMS pages no longer match any known structure."""

    status_code = 502


_BROWSER_CLOSED_MARKERS = (
    "target closed",
    "target page, context or browser has been closed",
    "browser has been closed",
    "session closed",
    "connection closed",
)

# Socket-level resets: a dead browser in a page, but the LMS host hanging
# up when they come from the request API.
_CONNECTION_RESET_MARKERS = (
    "econnreset",
    "err_connection_reset",
)


def is_browser_closed(exc: BaseException) -> bool:
    """Return True when an exception says the browser or context is gone."""
    if isinstance(exc, BrowserDisconnectedError):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _BROWSER_CLOSED_MARKERS)


def is_browser_disconnect(exc: BaseException) -> bool:
    """Return True when an exception means the underlying browser went away."""
    if is_browser_closed(exc):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _CONNECTION_RESET_MARKERS)
