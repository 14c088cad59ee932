"""InteractiveDatewisePage - drives the date filter in a real browser page.

Used only when DatewisePage reports that plain HTTP cannot reproduce the
filter (the form posts back the unfiltered page). The page runs in the same
browser context as the authenticated request context, so it is already
logged in.

DOM structure (attendance page):
  form
    input#dob / input[name='dob']          start date (datepicker, readonly)
    input#end_dob / input[name='end_dob']  end date
    button[type='submit']
  div.attendance_result
    table -> rows rendered by the filter's AJAX callback
"""

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page, TimeoutError as PlaywrightTimeoutError

from src.lms_scraper.errors import (
    BrowserDisconnectedError,
    CannotDeterminePayloadError,
    SessionExpiredError,
    TransientError,
    is_browser_disconnect,
)
from src.lms_scraper.logging import get_logger
from src.lms_scraper.pages.datewise import ATTENDANCE_PAGE_PATH, DatewiseFetch
from src.lms_scraper.parsing import RESULT_CONTAINER, looks_like_login_page, parse_rows_with_diagnostic
from src.lms_scraper.utils import configure_page_for_scraping, lms_url

log = get_logger(__name__)

# Datepickers mark their inputs readonly; set the value directly and fire change.
_SET_INPUT_VALUE = """(el, value) => {
    el.removeAttribute('readonly');
    el.value = value;
    el.dispatchEvent(new Event('input', { bubbles: true }));
    el.dispatchEvent(new Event('change', { bubbles: true }));
}"""


class InteractiveDatewisePage:
    """Attendance page at /user/attendence, filtered through the live UI."""

    URL_PATH = ATTENDANCE_PAGE_PATH

    START_INPUTS = ("input#dob", "input[name='dob']", "input[name='date']", "input[name='start_date']")
    END_INPUTS = ("input#end_dob", "input[name='end_dob']", "input[name='end_date']")
    SUBMIT_BUTTON = "form button[type='submit'], form input[type='submit']"
    RESULT_TABLE = f"{RESULT_CONTAINER} table"

    def __init__(self, page: Page, *, timeout_ms: int = 15000) -> None:
        self.page = page
        self.timeout_ms = timeout_ms

    async def fetch(self, base_url: str, date: str) -> DatewiseFetch:
        """Filter the attendance page to one date and parse the rendered table.

        Raises:
            CannotDeterminePayloadError: If the page has no date input.
            SessionExpiredError: If the page redirected to the login form.
            TransientError: If the page or the filtered table never loads.
            BrowserDisconnectedError: If the browser went away mid-scrape.
        """
        url = lms_url(base_url, self.URL_PATH)
        try:
            await configure_page_for_scraping(self.page, timeout_ms=self.timeout_ms)
            await self.page.goto(url, wait_until="domcontentloaded")

            if looks_like_login_page(await self.page.content()):
                raise SessionExpiredError("Session invalid - attendance page returned login page")

            if not await self._fill_first(self.START_INPUTS, date):
                raise CannotDeterminePayloadError("No date input found on the attendance page")
            await self._fill_first(self.END_INPUTS, date)

            await self.page.locator(self.SUBMIT_BUTTON).first.click()
            try:
                await self.page.locator(self.RESULT_TABLE).first.wait_for(state="attached")
            except PlaywrightTimeoutError:
                # No table for days without classes; settle and parse what rendered
                await self.page.wait_for_load_state("networkidle")
            html = await self.page.content()
        except PlaywrightTimeoutError as e:
            raise TransientError("Attendance page did not respond to the date filter") from e
        except PlaywrightError as e:
            if is_browser_disconnect(e):
                raise BrowserDisconnectedError(f"Browser closed during interactive fetch: {e}") from e
            raise TransientError(f"Interactive attendance fetch failed: {e}") from e

        result = parse_rows_with_diagnostic(html)
        log.info(
            "interactive_datewise_extracted",
            date=date,
            rows=len(result.rows),
            diagnostic=result.diagnostic.value,
        )
        return DatewiseFetch(rows=result.rows, source=f"browser:{url}")

    async def _fill_first(self, selectors: tuple[str, ...], value: str) -> bool:
        for selector in selectors:
            locator = self.page.locator(selector)
            if await locator.count() > 0:
                await locator.first.evaluate(_SET_INPUT_VALUE, value)
                log.debug("date_input_filled", selector=selector)
                return True
        return False
