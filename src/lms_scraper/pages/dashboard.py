"""DashboardPage - student name and upcoming lectures.

DOM structure (/user/user/dashboard):
  h4.mt0                       "Welcome, <name>"
  .user-progress li.lecture-list
    img                        lecturer avatar
    .media-title / .bmedium    lecture title
    .text-muted                subtitle
    .ms-auto > .bmedium        location
    .ms-auto > .text-muted     time
"""

from src.lms_scraper.logging import get_logger
from src.lms_scraper.models import UpcomingClass
from src.lms_scraper.parsing import parse_dashboard
from src.lms_scraper.session import AuthenticatedContext

log = get_logger(__name__)


class DashboardPage:
    URL_PATH = "/user/user/dashboard"

    def __init__(self, auth: AuthenticatedContext) -> None:
        self.auth = auth

    async def fetch(self) -> tuple[str, list[UpcomingClass]]:
        """Return (student name, upcoming classes).

        The dashboard is decoration for the attendance report, so a failed
        load degrades to the username and no classes.
        """
        response = await self.auth.get(self.auth.url(self.URL_PATH))
        if not response.ok:
            log.warning("dashboard_unavailable", status=response.status)
            return self.auth.username, []

        html = await response.text()
        self.auth.ensure_logged_in(html, "dashboard")
        name, upcoming = parse_dashboard(html, self.auth.username)
        log.info("dashboard_extracted", upcoming=len(upcoming))
        return name, upcoming
