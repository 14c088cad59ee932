"""
Tests for the multi-strategy date-wise fetcher.

Tests cover:
- Endpoint discovery and candidate ordering
- Payload construction
- First-success-wins over the strategy list
- Form submission fallback and the interactive-JS signal
- Interactive fetch error conversion
"""

import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from src.lms_scraper.errors import (
    CannotDeterminePayloadError,
    FetchError,
    RequiresInteractiveJSError,
    SessionExpiredError,
    TransientError,
)
from src.lms_scraper.models import AttendanceStatus
from src.lms_scraper.pages.datewise import (
    STATIC_ENDPOINT_PATHS,
    DatewisePage,
    build_candidate_endpoints,
    build_payload,
    discover_endpoints,
    find_form_action,
    is_unchanged_page,
)
from src.lms_scraper.pages.interactive import InteractiveDatewisePage
from tests.conftest import (
    ATTENDANCE_FILTER_HTML,
    ATTENDANCE_PAGE_URL,
    BASE_URL,
    DATEWISE_TABLE_HTML,
    LOGIN_HTML,
    RANGE_API_URL,
    FakePage,
    html_response,
    json_response,
)

SCRIPTED_PAGE_HTML = """
<html><body>
  <form action="/lms/user/attendence/search" method="post">
    <input type="hidden" name="ci_csrf_token" value="tok123">
    <input type="text" name="attendance_date">
  </form>
  <button data-url="/user/attendence/daywise" data-endpoint="/other/path">Go</button>
  <script>
    $.ajax({ url: '/user/attendence/getdaysubject', type: 'POST', data: $('form').serialize() });
    var fallback = "/user/attendence/subjectgetdaysubattendence";
  </script>
</body></html>
"""

STATIC_URLS = [f"{BASE_URL}{path}" for path in STATIC_ENDPOINT_PATHS]


class TestCandidates:
    def test_discovers_script_and_data_attribute_endpoints(self):
        assert discover_endpoints(SCRIPTED_PAGE_HTML) == [
            "/user/attendence/getdaysubject",
            "/user/attendence/subjectgetdaysubattendence",
            "/user/attendence/daywise",
        ]

    def test_discovered_first_without_duplicates(self):
        candidates = build_candidate_endpoints(SCRIPTED_PAGE_HTML, BASE_URL)

        assert candidates[:3] == [
            f"{BASE_URL}/user/attendence/getdaysubject",
            f"{BASE_URL}/user/attendence/subjectgetdaysubattendence",
            f"{BASE_URL}/user/attendence/daywise",
        ]
        assert len(candidates) == len(set(candidates))
        assert set(STATIC_URLS) <= set(candidates)

    def test_static_fallbacks_without_any_hints(self):
        candidates = build_candidate_endpoints("<html><body></body></html>", BASE_URL)

        assert candidates == STATIC_URLS
        assert candidates[0] == RANGE_API_URL
        assert candidates[-1] == ATTENDANCE_PAGE_URL

    def test_form_action_resolution(self):
        assert find_form_action(SCRIPTED_PAGE_HTML, ATTENDANCE_PAGE_URL) == f"{BASE_URL}/user/attendence/search"
        assert find_form_action(ATTENDANCE_FILTER_HTML, ATTENDANCE_PAGE_URL) == ATTENDANCE_PAGE_URL


class TestPayload:
    def test_minimal_payload_is_never_empty(self):
        assert build_payload("<html></html>", "14-02-2025") == {"date": "14-02-2025", "end_date": "14-02-2025"}

    def test_page_date_fields_and_hidden_fields(self):
        payload = build_payload(ATTENDANCE_FILTER_HTML, "14-02-2025")

        assert payload == {
            "date": "14-02-2025",
            "end_date": "14-02-2025",
            "dob": "14-02-2025",
            "end_dob": "14-02-2025",
            "ci_csrf_token": "tok123",
        }

    def test_hidden_fields_do_not_override_dates(self):
        html = '<input type="hidden" name="date" value="01-01-2000">'

        assert build_payload(html, "14-02-2025")["date"] == "14-02-2025"

    def test_empty_date_is_refused(self):
        with pytest.raises(CannotDeterminePayloadError):
            build_payload(ATTENDANCE_FILTER_HTML, "")


class TestFetch:
    async def test_first_endpoint_with_rows_wins(self, auth, request_context):
        request_context.route("GET", ATTENDANCE_PAGE_URL, html_response(ATTENDANCE_FILTER_HTML))
        request_context.route("POST", RANGE_API_URL, json_response({"status": 1, "result_page": DATEWISE_TABLE_HTML}))

        fetched = await DatewisePage(auth).fetch("14-02-2025")

        assert fetched.source == RANGE_API_URL
        assert [(r.subject, r.status) for r in fetched.rows] == [
            ("Anatomy", AttendanceStatus.PRESENT),
            ("Physiology", AttendanceStatus.ABSENT),
        ]
        posts = [c for c in request_context.calls if c[0] == "POST"]
        assert len(posts) == 1
        assert posts[0][3]["X-Requested-With"] == "XMLHttpRequest"
        assert posts[0][3]["Referer"] == ATTENDANCE_PAGE_URL

    async def test_strategies_tried_in_order(self, auth, request_context):
        second = STATIC_URLS[1]
        request_context.route("GET", ATTENDANCE_PAGE_URL, html_response(ATTENDANCE_FILTER_HTML))
        request_context.route("POST", RANGE_API_URL, json_response({"status": 0, "result_page": ""}))
        request_context.route("POST", second, html_response(DATEWISE_TABLE_HTML))

        fetched = await DatewisePage(auth).fetch("14-02-2025")

        assert fetched.source == second
        assert [c[1] for c in request_context.calls if c[0] == "POST"] == [RANGE_API_URL, second]

    async def test_json_row_list(self, auth, request_context):
        request_context.route("GET", ATTENDANCE_PAGE_URL, html_response(ATTENDANCE_FILTER_HTML))
        request_context.route(
            "POST",
            RANGE_API_URL,
            json_response({"data": [{"subject": "Anatomy", "time_from": "09:00", "time_to": "10:00", "status": "P"}]}),
        )

        fetched = await DatewisePage(auth).fetch("14-02-2025")

        assert fetched.rows[0].subject == "Anatomy"
        assert fetched.rows[0].status == AttendanceStatus.PRESENT

    async def test_endpoint_network_errors_are_skipped(self, auth, request_context):
        request_context.route("GET", ATTENDANCE_PAGE_URL, html_response(ATTENDANCE_FILTER_HTML))
        request_context.route("POST", RANGE_API_URL, PlaywrightError("socket hang up"))
        request_context.route("POST", STATIC_URLS[1], html_response(DATEWISE_TABLE_HTML))

        fetched = await DatewisePage(auth).fetch("14-02-2025")

        assert fetched.source == STATIC_URLS[1]

    async def test_endpoint_connection_reset_is_skipped(self, auth, request_context):
        request_context.route("GET", ATTENDANCE_PAGE_URL, html_response(ATTENDANCE_FILTER_HTML))
        request_context.route("POST", RANGE_API_URL, PlaywrightError("apiRequestContext.post: read ECONNRESET"))
        request_context.route("POST", STATIC_URLS[1], html_response(DATEWISE_TABLE_HTML))

        fetched = await DatewisePage(auth).fetch("14-02-2025")

        assert fetched.source == STATIC_URLS[1]
        assert len(fetched.rows) == 2

    async def test_form_submission_fallback(self, auth, request_context):
        request_context.route("GET", ATTENDANCE_PAGE_URL, html_response(ATTENDANCE_FILTER_HTML))
        request_context.route(
            "POST",
            ATTENDANCE_PAGE_URL,
            [html_response(ATTENDANCE_FILTER_HTML), html_response(DATEWISE_TABLE_HTML)],
        )

        fetched = await DatewisePage(auth).fetch("14-02-2025")

        assert fetched.source == ATTENDANCE_PAGE_URL
        assert len(fetched.rows) == 2
        # Every static endpoint plus the form submission
        assert len([c for c in request_context.calls if c[0] == "POST"]) == len(STATIC_URLS) + 1

    async def test_unchanged_page_requires_interactive_js(self, auth, request_context):
        request_context.route("GET", ATTENDANCE_PAGE_URL, html_response(ATTENDANCE_FILTER_HTML))
        request_context.route("POST", ATTENDANCE_PAGE_URL, html_response(ATTENDANCE_FILTER_HTML))

        with pytest.raises(RequiresInteractiveJSError):
            await DatewisePage(auth).fetch("14-02-2025")

    async def test_filter_page_with_rotated_token_requires_interactive_js(self, auth, request_context):
        rotated = ATTENDANCE_FILTER_HTML.replace("tok123", "tok456")
        request_context.route("GET", ATTENDANCE_PAGE_URL, html_response(ATTENDANCE_FILTER_HTML))
        request_context.route("POST", ATTENDANCE_PAGE_URL, html_response(rotated))

        with pytest.raises(RequiresInteractiveJSError):
            await DatewisePage(auth).fetch("14-02-2025")

    async def test_filter_page_with_empty_results_requires_interactive_js(self, auth, request_context):
        rerendered = ATTENDANCE_FILTER_HTML.replace("<button", "<p>Select a date</p>\n    <button")
        request_context.route("GET", ATTENDANCE_PAGE_URL, html_response(ATTENDANCE_FILTER_HTML))
        request_context.route("POST", ATTENDANCE_PAGE_URL, html_response(rerendered))

        with pytest.raises(RequiresInteractiveJSError):
            await DatewisePage(auth).fetch("14-02-2025")

    async def test_form_with_empty_results_is_a_valid_empty_day(self, auth, request_context):
        request_context.route("GET", ATTENDANCE_PAGE_URL, html_response(ATTENDANCE_FILTER_HTML))
        empty_results = '<div class="attendance_result"><p>No record found</p></div>'
        request_context.route(
            "POST",
            ATTENDANCE_PAGE_URL,
            [html_response(ATTENDANCE_FILTER_HTML), html_response(empty_results)],
        )

        fetched = await DatewisePage(auth).fetch("14-02-2025")

        assert fetched.rows == []

    async def test_form_error_status(self, auth, request_context):
        request_context.route("GET", ATTENDANCE_PAGE_URL, html_response(ATTENDANCE_FILTER_HTML))
        request_context.route(
            "POST",
            ATTENDANCE_PAGE_URL,
            [html_response(ATTENDANCE_FILTER_HTML), html_response("error", status=500)],
        )

        with pytest.raises(FetchError):
            await DatewisePage(auth).fetch("14-02-2025")

    async def test_expired_session(self, auth, request_context):
        request_context.route("GET", ATTENDANCE_PAGE_URL, html_response(LOGIN_HTML))

        with pytest.raises(SessionExpiredError):
            await DatewisePage(auth).fetch("14-02-2025")


class TestUnchangedPage:
    def test_rotated_hidden_token_is_unchanged(self):
        rotated = ATTENDANCE_FILTER_HTML.replace("tok123", "tok456")

        assert is_unchanged_page(ATTENDANCE_FILTER_HTML, rotated, has_rows=False)

    def test_filter_page_with_message_in_results_is_an_answer(self):
        answered = ATTENDANCE_FILTER_HTML.replace(
            '<div class="attendance_result"></div>',
            '<div class="attendance_result"><p>No record found</p></div>',
        )

        assert not is_unchanged_page(ATTENDANCE_FILTER_HTML, answered, has_rows=False)

    def test_rows_are_never_unchanged(self):
        assert not is_unchanged_page(ATTENDANCE_FILTER_HTML, DATEWISE_TABLE_HTML, has_rows=True)


class TestInteractiveFetch:
    async def test_navigation_timeout_is_transient(self):
        page = FakePage()

        with pytest.raises(TransientError) as excinfo:
            await InteractiveDatewisePage(page, timeout_ms=1000).fetch(BASE_URL, "14-02-2025")

        assert isinstance(excinfo.value.__cause__, PlaywrightTimeoutError)
        assert page.routes == ["**/*"]
