"""Scraper configuration loaded from environment variables.

Covers the upstream LMS location, browser pool limits, queue backoff,
scrape timeout and result cache TTL.
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class ScraperConfig(BaseSettings):
    """Scraper configuration loaded from environment variables.

    Settings are loaded from environment variables with sensible defaults.
    For local development, create a .env file in the project root.
    """

    # Upstream LMS
    lms_base_url: str = Field(
        default="https://sbmchlms.com/lms",
        description="LMS base URL (everything before /site and /user paths)",
    )
    request_timeout_ms: int = Field(
        default=15000,
        description="Timeout for a single upstream HTTP request",
    )
    default_from_date: str = Field(
        default="11-11-2024",
        description="Start of the attendance range when the caller gives none (DD-MM-YYYY)",
    )

    # Browser pool
    headless: bool = Field(
        default=True,
        description="Launch pooled Chromium instances headless",
    )
    pool_max_browsers: int = Field(
        default=2,
        description="Hard cap on concurrently open browsers (bounded by host memory)",
    )
    pool_max_leases_per_browser: int = Field(
        default=3,
        description="Concurrent leases a single browser accepts before it is full",
    )
    pool_max_uses_per_browser: int = Field(
        default=10,
        description="Total leases a browser serves before it is recycled",
    )
    pool_idle_timeout_seconds: float = Field(
        default=60.0,
        description="Idle browsers older than this are closed by the sweeper",
    )
    pool_sweep_interval_seconds: float = Field(
        default=30.0,
        description="Interval of the background idle sweep",
    )

    # Lease queue
    queue_max_consecutive_failures: int = Field(
        default=3,
        description="Back-to-back failed acquisitions before the queue is failed",
    )
    queue_backoff_base_seconds: float = Field(
        default=1.0,
        description="First backoff between failed queued acquisitions",
    )
    queue_backoff_cap_seconds: float = Field(
        default=5.0,
        description="Ceiling for the exponential queue backoff",
    )

    # Scrape
    scrape_timeout_seconds: float = Field(
        default=25.0,
        description="Wall-clock bound for a whole scrape (platform request limit is ~30s)",
    )
    auth_retry_attempts: int = Field(
        default=2,
        description="Login attempts when the LMS is unreachable",
    )
    auth_retry_wait_seconds: float = Field(
        default=2.0,
        description="Wait between login attempts",
    )

    # Result cache
    cache_ttl_seconds: float = Field(
        default=300.0,
        description="How long a successful scrape result is served from cache",
    )
    cache_max_entries: int = Field(
        default=100,
        description="Maximum cached results kept in memory",
    )

    # Logging
    log_json: bool = Field(
        default=False,
        description="Output logs in JSON format (for production)",
    )
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    model_config = {
        "env_prefix": "",
        "case_sensitive": False,
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def origin(self) -> str:
        """Scheme and host of the LMS, used for Origin headers."""
        scheme, _, rest = self.lms_base_url.partition("://")
        return f"{scheme}://{rest.split('/', 1)[0]}"


# Singleton pattern
_config: ScraperConfig | None = None


def get_config() -> ScraperConfig:
    """Get the scraper configuration singleton.

    Returns:
        ScraperConfig: Scraper configuration instance
    """
    global _config
    if _config is None:
        _config = ScraperConfig()
    return _config
