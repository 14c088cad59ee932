"""LMS attendance scraper.

Logs into the student LMS with a pooled headless browser and extracts
subject-wise and date-wise attendance (pool, queue, fetch strategies,
extraction pipeline, tiered fallback and result cache).
"""

from src.lms_scraper.dispatcher import AttendanceScraper
from src.lms_scraper.errors import (
    ScrapeError,
    ScrapeInvalidCredentialsError,
    ScrapeTimeoutError,
    ServiceUnavailableError,
    UpstreamFormatChangedError,
)
from src.lms_scraper.models import (
    AttendanceRecord,
    AttendanceStatus,
    AttendanceSummary,
    DatewiseResult,
    DatewiseRow,
    UpcomingClass,
)

__all__ = [
    "AttendanceScraper",
    "AttendanceRecord",
    "AttendanceStatus",
    "AttendanceSummary",
    "DatewiseResult",
    "DatewiseRow",
    "UpcomingClass",
    "ScrapeError",
    "ScrapeInvalidCredentialsError",
    "ScrapeTimeoutError",
    "ServiceUnavailableError",
    "UpstreamFormatChangedError",
]
