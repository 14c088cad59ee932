"""Shared fakes for Playwright objects and canned LMS pages.

Nothing here launches a browser or opens a socket: FakeRequestContext stands
in for APIRequestContext (routing by method and URL), FakeBrowser for a
Chromium Browser and FakeLauncher for PlaywrightLauncher.
"""

import inspect
import json

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from src.lms_scraper.config import ScraperConfig
from src.lms_scraper.session import AuthenticatedContext

BASE_URL = "https://lms.test/lms"
ORIGIN = "https://lms.test"
LOGIN_URL = f"{BASE_URL}/site/userlogin"
DASHBOARD_URL = f"{BASE_URL}/user/user/dashboard"
ATTENDANCE_PAGE_URL = f"{BASE_URL}/user/attendence"
RANGE_PAGE_URL = f"{BASE_URL}/user/attendence/subjectbyattendance"
RANGE_API_URL = f"{BASE_URL}/user/attendence/subjectgetdaysubattendence"

LOGIN_HTML = """
<html><body>
  <h3>Student Login</h3>
  <form action="/lms/site/userlogin" method="post">
    <input type="hidden" name="ci_csrf_token" value="tok123">
    <label>Username</label><input type="text" name="username">
    <label>Password</label><input type="password" name="password">
    <button type="submit">Sign In</button>
  </form>
</body></html>
"""

LOGIN_REJECTED_HTML = LOGIN_HTML.replace(
    "<h3>Student Login</h3>",
    '<h3>Student Login</h3><div class="alert">Invalid Username or Password</div>',
)

DASHBOARD_HTML = """
<html><body>
  <h4 class="mt0">Welcome, Asha Rao</h4>
  <div class="user-progress"><ul>
    <li class="lecture-list">
      <img src="/img/menon.png">
      <div><h5 class="media-title">Anatomy Lecture</h5><span class="text-muted">Dr. Menon</span></div>
      <div class="ms-auto"><span class="bmedium">Hall A</span><span class="text-muted">10:00 AM</span></div>
    </li>
  </ul></div>
</body></html>
"""

# Date filter page with no rendered results and no AJAX hints.
ATTENDANCE_FILTER_HTML = """
<html><body>
  <form method="post">
    <input type="hidden" name="ci_csrf_token" value="tok123">
    <input type="text" id="dob" name="dob" readonly>
    <input type="text" id="end_dob" name="end_dob" readonly>
    <button type="submit">Search</button>
  </form>
  <div class="attendance_result"></div>
</body></html>
"""

DATEWISE_TABLE_HTML = """
<div class="attendance_result">
  <table class="table">
    <thead><tr><th>Subject</th><th>From</th><th>To</th><th>Status</th></tr></thead>
    <tbody>
      <tr><td>Anatomy</td><td>09:00</td><td>10:00</td><td>Present</td></tr>
      <tr><td>Physiology</td><td>10:00</td><td>11:00</td><td>Absent</td></tr>
    </tbody>
  </table>
</div>
"""

RANGE_RESULT_PAGE = (
    "<table class='table'>"
    "<thead><tr><th>Subject</th><th>Percentage</th><th>Attended</th></tr></thead>"
    "<tbody>"
    "<tr><td>Anatomy</td><td>75.00%</td><td>30/40</td></tr>"
    "<tr><td>Physiology</td><td>50.00%</td><td>10/20</td></tr>"
    "</tbody></table>"
)


class FakeResponse:
    """Minimal stand-in for playwright's APIResponse."""

    def __init__(self, status=200, body="", headers=None, url=""):
        self.status = status
        self.url = url
        self.headers = {k.lower(): v for k, v in (headers or {}).items()}
        self._body = body

    @property
    def ok(self):
        return 200 <= self.status < 300

    async def text(self):
        return self._body

    async def json(self):
        return json.loads(self._body)


def html_response(body, status=200):
    return FakeResponse(status, body, {"content-type": "text/html; charset=UTF-8"})


def json_response(data, status=200):
    return FakeResponse(status, json.dumps(data), {"content-type": "application/json; charset=utf-8"})


class FakeRequestContext:
    """Routes (method, url) to canned responses and records every call.

    A route may be a FakeResponse, an exception instance (raised), a list
    (consumed in order, last item repeats) or a callable taking the posted
    form and returning any of those, possibly as a coroutine.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []
        self.default = FakeResponse(404, "Not Found")

    def route(self, method, url, response):
        self.routes[(method.upper(), url)] = response
        return self

    def calls_to(self, method, url):
        return [call for call in self.calls if call[0] == method and call[1] == url]

    async def get(self, url, headers=None, timeout=None, **kwargs):
        return await self._dispatch("GET", url, None, headers, kwargs)

    async def post(self, url, form=None, headers=None, timeout=None, **kwargs):
        return await self._dispatch("POST", url, form, headers, kwargs)

    async def _dispatch(self, method, url, form, headers, kwargs):
        self.calls.append((method, url, form, headers or {}, kwargs))
        handler = self.routes.get((method, url), self.default)
        if isinstance(handler, list):
            handler = handler.pop(0) if len(handler) > 1 else handler[0]
        if callable(handler) and not isinstance(handler, FakeResponse):
            handler = handler(form)
            if inspect.isawaitable(handler):
                handler = await handler
        if isinstance(handler, BaseException):
            raise handler
        return handler


class FakePage:
    """Playwright Page whose navigation always times out."""

    def __init__(self):
        self.closed = False
        self.routes = []

    async def route(self, pattern, handler):
        self.routes.append(pattern)

    def set_default_timeout(self, timeout):
        pass

    def set_default_navigation_timeout(self, timeout):
        pass

    async def goto(self, url, **kwargs):
        raise PlaywrightTimeoutError(f"Timeout exceeded navigating to {url}")

    async def close(self):
        self.closed = True


class FakeBrowserContext:
    def __init__(self, request):
        self.request = request
        self.closed = False
        self.pages = []

    async def new_page(self):
        page = FakePage()
        self.pages.append(page)
        return page

    async def close(self):
        self.closed = True


class FakeBrowser:
    def __init__(self, request=None):
        self.request = request or FakeRequestContext()
        self.closed = False
        self.contexts = []
        self._handlers = {}

    def on(self, event, handler):
        self._handlers.setdefault(event, []).append(handler)

    def disconnect(self):
        for handler in self._handlers.get("disconnected", []):
            handler(self)

    async def new_context(self, **kwargs):
        context = FakeBrowserContext(self.request)
        self.contexts.append(context)
        return context

    async def close(self):
        self.closed = True


class FakeLauncher:
    """Async callable producing FakeBrowsers; ``fail`` makes launches raise."""

    def __init__(self, request=None, fail=False):
        self.request = request
        self.fail = fail
        self.launched = []
        self.attempts = 0

    async def __call__(self):
        self.attempts += 1
        if self.fail:
            raise RuntimeError("Executable doesn't exist at /ms-playwright/chromium")
        browser = FakeBrowser(self.request)
        self.launched.append(browser)
        return browser


def install_login(request, *, post=None):
    """Route the login page and a successful redirecting login POST."""
    request.route("GET", LOGIN_URL, html_response(LOGIN_HTML))
    request.route(
        "POST",
        LOGIN_URL,
        post or FakeResponse(302, "", {"Location": "/lms/user/user/dashboard"}),
    )
    request.route("GET", DASHBOARD_URL, html_response(DASHBOARD_HTML))
    return request


@pytest.fixture
def request_context():
    return FakeRequestContext()


@pytest.fixture
def lms(request_context):
    """A fake LMS that accepts any credentials and serves the range report."""
    install_login(request_context)
    request_context.route("GET", RANGE_PAGE_URL, html_response("<html><body>report</body></html>"))
    request_context.route("POST", RANGE_API_URL, json_response({"status": 1, "result_page": RANGE_RESULT_PAGE}))
    return request_context


@pytest.fixture
def auth(request_context):
    return AuthenticatedContext(
        request=request_context,
        username="2021001",
        base_url=BASE_URL,
        origin=ORIGIN,
    )


@pytest.fixture
def config():
    return ScraperConfig(
        lms_base_url=BASE_URL,
        pool_max_browsers=1,
        pool_max_leases_per_browser=1,
        pool_sweep_interval_seconds=3600,
        queue_max_consecutive_failures=2,
        queue_backoff_base_seconds=0.01,
        queue_backoff_cap_seconds=0.02,
        auth_retry_attempts=1,
        auth_retry_wait_seconds=0,
        scrape_timeout_seconds=2,
    )
