"""AttendancePage - subject-wise attendance totals for a date range.

The range page (/user/attendence/subjectbyattendance) loads its table from
a jQuery POST to subjectgetdaysubattendence with ``date``, ``end_date`` and
``subject`` (empty for all subjects). The response is JSON:

  {"status": 1, "result_page": "<table>...</table>"}

result_page rows: subject | percentage | present/total
"""

import json

from src.lms_scraper.errors import FetchError
from src.lms_scraper.logging import get_logger
from src.lms_scraper.models import AttendanceRecord
from src.lms_scraper.pages.datewise import RANGE_ENDPOINT_PATH
from src.lms_scraper.parsing import parse_attendance_rows
from src.lms_scraper.session import AuthenticatedContext
from src.lms_scraper.utils import XHR_HEADERS

log = get_logger(__name__)


class AttendancePage:
    """Subject attendance report for a date range."""

    URL_PATH = "/user/attendence/subjectbyattendance"
    API_PATH = RANGE_ENDPOINT_PATH

    def __init__(self, auth: AuthenticatedContext) -> None:
        self.auth = auth

    async def fetch(self, from_date: str, to_date: str, *, subject: str = "") -> list[AttendanceRecord]:
        """Fetch per-subject totals between two DD-MM-YYYY dates (inclusive).

        Raises:
            SessionExpiredError: If the LMS answered with its login form.
            FetchError: If the report endpoint fails or returns something other than JSON.
        """
        page_url = self.auth.url(self.URL_PATH)
        page = await self.auth.get(page_url)
        if page.ok:
            self.auth.ensure_logged_in(await page.text(), "attendance report page")

        response = await self.auth.post_form(
            self.auth.url(self.API_PATH),
            {"date": from_date, "end_date": to_date, "subject": subject},
            headers={**XHR_HEADERS, "Referer": page_url},
        )
        if not response.ok:
            raise FetchError(f"Attendance API request failed ({response.status})")

        body = await response.text()
        self.auth.ensure_logged_in(body, "attendance API")
        try:
            data = json.loads(body)
        except ValueError:
            raise FetchError("Attendance API returned a non-JSON response")
        if not isinstance(data, dict):
            raise FetchError("Attendance API returned an unexpected JSON shape")

        result_page = data.get("result_page") or ""
        if not result_page:
            log.info("attendance_report_empty", status=data.get("status"), from_date=from_date, to_date=to_date)
            return []

        records = parse_attendance_rows(result_page)
        log.info("attendance_report_extracted", from_date=from_date, to_date=to_date, subjects=len(records))
        return records
