"""DatewisePage - single-date attendance over plain HTTP.

The LMS has no documented endpoint for date-filtered attendance; the page at
/user/attendence filters through an undocumented AJAX call. This page object
tries, in order:

  1. endpoints discovered in the page's <script> blocks and data-* attributes
     (anything under /user/attendence/)
  2. a static list of plausible endpoints, led by the known-working range
     endpoint subjectgetdaysubattendence
  3. submitting the page's own <form> to its action

All attempts POST the same payload: date/end_date (the field names the
range endpoint accepts), any date inputs present on the page, and every
hidden field. The first attempt yielding at least one row wins. If the form
submission just hands back the original page, the filter is JS-only and
RequiresInteractiveJSError tells the caller to switch to a real browser.
"""

import json
import re
from dataclasses import dataclass, field

from bs4 import BeautifulSoup

from src.lms_scraper.errors import (
    CannotDeterminePayloadError,
    FetchError,
    RequiresInteractiveJSError,
    UpstreamUnreachableError,
)
from src.lms_scraper.logging import get_logger
from src.lms_scraper.models import DatewiseRow
from src.lms_scraper.parsing import (
    RESULT_CONTAINER,
    extract_hidden_fields,
    parse_rows_with_diagnostic,
    rows_from_json,
    unwrap_json_payload,
)
from src.lms_scraper.session import AuthenticatedContext
from src.lms_scraper.utils import XHR_HEADERS, lms_url, resolve_url

log = get_logger(__name__)

ATTENDANCE_PAGE_PATH = "/user/attendence"
ENDPOINT_PREFIX = "/user/attendence/"
RANGE_ENDPOINT_PATH = "/user/attendence/subjectgetdaysubattendence"

# Tried after discovered endpoints, most likely first.
STATIC_ENDPOINT_PATHS: tuple[str, ...] = (
    RANGE_ENDPOINT_PATH,
    "/user/attendence/getdatewiseattendence",
    "/user/attendence/getdatewiseattendance",
    "/user/attendence/datewiseattendence",
    "/user/attendence/datewiseattendance",
    "/user/attendence/getattendencebydate",
    "/user/attendence/getattendancebydate",
    "/user/attendence/getdateattendence",
    "/user/attendence/getdateattendance",
    "/user/attendence/getdatewiseattendenceby",
    "/user/attendence/getattendencebydatewise",
    "/user/attendence/ajax",
    ATTENDANCE_PAGE_PATH,
)

_PATH = r"(/user/attendence/[^'\"`\s]+)"
DISCOVERY_PATTERNS: tuple[re.Pattern, ...] = (
    re.compile(rf"['\"`]{_PATH}['\"`]", re.IGNORECASE),
    re.compile(rf"url\s*[:=]\s*['\"`]{_PATH}['\"`]", re.IGNORECASE),
    re.compile(rf"ajax\s*\([^)]*['\"`]{_PATH}['\"`]", re.IGNORECASE),
)
DATA_URL_ATTRIBUTES = ("data-url", "data-action", "data-endpoint")

# Field names the range endpoint accepts; sent on every attempt.
PRIMARY_DATE_FIELDS = ("date", "end_date")
# Date inputs seen on variants of the attendance page.
PAGE_DATE_FIELDS = (
    "dob",
    "end_dob",
    "start_date",
    "attendance_date",
    "attendance_date_from",
    "attendance_date_to",
)


@dataclass
class DatewiseFetch:
    rows: list[DatewiseRow] = field(default_factory=list)
    source: str = ""


def discover_endpoints(html: str) -> list[str]:
    """Endpoint paths referenced by the page's scripts and data attributes."""
    soup = BeautifulSoup(html, "html.parser")
    found: list[str] = []

    for script in soup.find_all("script"):
        body = script.string or script.get_text() or ""
        for pattern in DISCOVERY_PATTERNS:
            for match in pattern.finditer(body):
                path = match.group(1)
                if path not in found:
                    found.append(path)

    for attribute in DATA_URL_ATTRIBUTES:
        for tag in soup.find_all(attrs={attribute: True}):
            path = tag.get(attribute) or ""
            if path.startswith(ENDPOINT_PREFIX) and path not in found:
                found.append(path)

    return found


def build_candidate_endpoints(html: str, base_url: str) -> list[str]:
    """Discovered endpoints first, then the static fallbacks, without duplicates."""
    candidates: list[str] = []
    for path in [*discover_endpoints(html), *STATIC_ENDPOINT_PATHS]:
        url = lms_url(base_url, path)
        if url not in candidates:
            candidates.append(url)
    return candidates


def build_payload(html: str, date: str) -> dict[str, str]:
    """Form fields for every attempt.

    Raises:
        CannotDeterminePayloadError: If no date value can be submitted.
    """
    if not date:
        raise CannotDeterminePayloadError("No date to submit - payload would be empty")

    soup = BeautifulSoup(html, "html.parser")
    payload = {name: date for name in PRIMARY_DATE_FIELDS}
    for name in PAGE_DATE_FIELDS:
        if soup.select_one(f'input[name="{name}"], input#{name}') is not None:
            payload[name] = date

    for name, value in extract_hidden_fields(html).items():
        payload.setdefault(name, value)

    if not payload:
        raise CannotDeterminePayloadError("Cannot determine date field names from page")
    return payload


def find_form_action(html: str, page_url: str) -> str:
    """Absolute URL the page's first form submits to (the page itself by default)."""
    form = BeautifulSoup(html, "html.parser").find("form")
    action = form.get("action") if form is not None else None
    return resolve_url(page_url, action) if action else page_url


def _has_date_filter(html: str) -> bool:
    soup = BeautifulSoup(html, "html.parser")
    return any(
        soup.select_one(f'input[name="{name}"], input#{name}') is not None
        for name in PAGE_DATE_FIELDS
    )


def _without_hidden_values(html: str) -> str:
    """Page markup with hidden input values blanked (CSRF tokens rotate per response)."""
    soup = BeautifulSoup(html, "html.parser")
    for hidden in soup.find_all("input", attrs={"type": "hidden"}):
        hidden["value"] = ""
    return str(soup).strip()


def _result_container_markup(html: str) -> str | None:
    container = BeautifulSoup(html, "html.parser").select_one(RESULT_CONTAINER)
    if container is None:
        return None
    return container.decode_contents().strip()


def is_unchanged_page(original_html: str, response_html: str, has_rows: bool) -> bool:
    """True when a submission returned the filter page instead of results.

    The filter page counts as unchanged when it matches the original apart from
    hidden field values, or when it still carries the date inputs with no rows
    and a results container that is empty or identical to the original's.
    """
    if _without_hidden_values(response_html) == _without_hidden_values(original_html):
        return True
    if has_rows or not _has_date_filter(response_html):
        return False
    results = _result_container_markup(response_html)
    return not results or results == _result_container_markup(original_html)


class DatewisePage:
    """Date-wise attendance page at /user/attendence, driven over HTTP."""

    URL_PATH = ATTENDANCE_PAGE_PATH

    def __init__(self, auth: AuthenticatedContext) -> None:
        self.auth = auth

    async def fetch(self, date: str) -> DatewiseFetch:
        """Fetch attendance rows for one DD-MM-YYYY date.

        Raises:
            CannotDeterminePayloadError: If no payload can be built.
            RequiresInteractiveJSError: If plain HTTP cannot drive the filter.
            FetchError: If the attendance page or form submission fails.
        """
        page_url = self.auth.url(self.URL_PATH)
        response = await self.auth.get(page_url)
        if not response.ok:
            raise FetchError(f"Attendance page request failed ({response.status})")
        page_html = await response.text()
        self.auth.ensure_logged_in(page_html, "attendance page")

        payload = build_payload(page_html, date)
        candidates = build_candidate_endpoints(page_html, self.auth.base_url)
        log.info(
            "datewise_strategies_prepared",
            date=date,
            endpoints=len(candidates),
            fields=sorted(payload),
        )

        for attempt, endpoint in enumerate(candidates, start=1):
            rows = await self._try_endpoint(endpoint, payload, page_url, attempt)
            if rows:
                log.info("datewise_endpoint_succeeded", endpoint=endpoint, rows=len(rows))
                return DatewiseFetch(rows=rows, source=endpoint)

        log.info("datewise_endpoints_exhausted", tried=len(candidates))
        return await self._submit_form(page_html, page_url, payload)

    async def _try_endpoint(
        self, endpoint: str, payload: dict[str, str], page_url: str, attempt: int
    ) -> list[DatewiseRow]:
        try:
            response = await self.auth.post_form(
                endpoint, payload, headers={**XHR_HEADERS, "Referer": page_url}
            )
        except UpstreamUnreachableError as e:
            log.warning("datewise_endpoint_error", endpoint=endpoint, attempt=attempt, error=str(e))
            return []

        if not response.ok:
            log.debug("datewise_endpoint_rejected", endpoint=endpoint, status=response.status)
            return []

        body = await response.text()
        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            try:
                data = json.loads(body)
            except ValueError:
                log.debug("datewise_endpoint_bad_json", endpoint=endpoint)
                return []
            html, items = unwrap_json_payload(data)
            if items is not None:
                return rows_from_json(items)
            body = html

        return parse_rows_with_diagnostic(body).rows

    async def _submit_form(
        self, page_html: str, page_url: str, payload: dict[str, str]
    ) -> DatewiseFetch:
        action = find_form_action(page_html, page_url)
        log.info("datewise_form_submission", action=action)

        response = await self.auth.post_form(
            action,
            payload,
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "Referer": page_url,
                "Origin": self.auth.origin,
            },
        )
        if not response.ok:
            raise FetchError(f"Date-wise attendance request failed ({response.status})")

        html = await response.text()
        self.auth.ensure_logged_in(html, "attendance form")
        result = parse_rows_with_diagnostic(html)

        if is_unchanged_page(page_html, html, bool(result.rows)):
            log.warning("datewise_form_ignored", html_length=len(html))
            raise RequiresInteractiveJSError(
                "Form submission returned the filter page - the date filter requires JavaScript"
            )

        if not result.rows:
            log.info("datewise_no_rows", diagnostic=result.diagnostic.value)
        return DatewiseFetch(rows=result.rows, source=action)
