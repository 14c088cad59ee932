"""Shared scraping utilities: request headers, text/date helpers, page setup."""

import html
import re
from datetime import date, datetime
from urllib.parse import urljoin

from playwright.async_api import Page, Route

from src.lms_scraper.logging import get_logger

log = get_logger(__name__)

BLOCKED_RESOURCE_TYPES: frozenset[str] = frozenset(
    {"image", "stylesheet", "font", "media"}
)

DEFAULT_HEADERS: dict[str, str] = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/121.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
}

# Headers the LMS's own jQuery AJAX calls send.
XHR_HEADERS: dict[str, str] = {
    "Content-Type": "application/x-www-form-urlencoded; charset=UTF-8",
    "X-Requested-With": "XMLHttpRequest",
    "Accept": "application/json, text/javascript, */*; q=0.01",
}

LMS_DATE_FORMAT = "%d-%m-%Y"

_WHITESPACE = re.compile(r"\s+")
_LMS_DATE = re.compile(r"^\d{2}-\d{2}-\d{4}$")


def clean_text(value: str | None) -> str:
    """Decode leftover HTML entities and collapse whitespace."""
    if not value:
        return ""
    text = html.unescape(value).replace("\xa0", " ")
    return _WHITESPACE.sub(" ", text).strip()


def normalize_lms_date(value: date | str) -> str:
    """Return a DD-MM-YYYY string for the LMS date filters.

    Raises:
        ValueError: If a string is not a real DD-MM-YYYY date.
    """
    if isinstance(value, datetime):
        value = value.date()
    if isinstance(value, date):
        return value.strftime(LMS_DATE_FORMAT)
    text = value.strip()
    if not _LMS_DATE.match(text):
        raise ValueError(f"Invalid date {value!r}. Use DD-MM-YYYY")
    # Rejects 31-02-2025 and friends
    datetime.strptime(text, LMS_DATE_FORMAT)
    return text


def today_lms_date() -> str:
    return date.today().strftime(LMS_DATE_FORMAT)


def resolve_url(base: str, path: str) -> str:
    """Resolve a Location header or form action against the page URL."""
    return urljoin(base, path)


def lms_url(base_url: str, path: str) -> str:
    """Join the LMS base URL (which carries a path prefix) with an app path."""
    return base_url.rstrip("/") + "/" + path.lstrip("/")


async def configure_page_for_scraping(page: Page, *, timeout_ms: int = 30000) -> None:
    """Set up a Playwright page for efficient scraping.

    Blocks unnecessary resource types (images, stylesheets, fonts, media)
    to reduce bandwidth and memory in the pooled browsers.

    Args:
        page: Playwright Page instance.
        timeout_ms: Default action and navigation timeout.
    """

    async def _block_resources(route: Route) -> None:
        if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
            await route.abort()
        else:
            await route.continue_()

    await page.route("**/*", _block_resources)
    page.set_default_timeout(timeout_ms)
    page.set_default_navigation_timeout(timeout_ms)
