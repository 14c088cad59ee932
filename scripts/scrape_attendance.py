"""Get subject-wise or date-wise LMS attendance as JSON or a table.

Standalone CLI around AttendanceScraper. Credentials come from the
environment (or .env) so they never land in shell history.

Run with: python scripts/scrape_attendance.py
Range:    python scripts/scrape_attendance.py --from 01-01-2025 --to 31-03-2025
One day:  python scripts/scrape_attendance.py --date 14-02-2025
Table:    python scripts/scrape_attendance.py --table
Debug:    python scripts/scrape_attendance.py --headed --verbose

Environment:
  LMS_USERNAME, LMS_PASSWORD   student credentials (required)
  LMS_BASE_URL etc.            any ScraperConfig field, see src/lms_scraper/config.py

Exit codes:
  0 = success (JSON or table on stdout)
  1 = bad arguments or missing credentials
  2 = credentials rejected
  3 = LMS page structure not recognised
  4 = browser service unavailable or timed out
"""

import argparse
import asyncio
import json
import os
import sys

from dotenv import load_dotenv

load_dotenv()

# Add project root to path for src imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from src.lms_scraper.config import get_config  # noqa: E402
from src.lms_scraper.dispatcher import AttendanceScraper  # noqa: E402
from src.lms_scraper.errors import (  # noqa: E402
    ScrapeError,
    ScrapeInvalidCredentialsError,
    UpstreamFormatChangedError,
)
from src.lms_scraper.logging import setup_logging  # noqa: E402
from src.lms_scraper.models import AttendanceSummary, DatewiseResult  # noqa: E402

LMS_USERNAME = os.getenv("LMS_USERNAME", "")
LMS_PASSWORD = os.getenv("LMS_PASSWORD", "")


def _log(msg: str) -> None:
    """Write diagnostic messages to stderr so stdout stays clean for JSON."""
    print(msg, file=sys.stderr)


def _parse_args() -> argparse.Namespace:
    """Parse CLI arguments using argparse."""
    parser = argparse.ArgumentParser(
        description="Get LMS attendance as JSON or table.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--headed",
        action="store_true",
        help="Launch browsers in headed mode (visible window).",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log at DEBUG level on stderr.",
    )
    parser.add_argument(
        "--table",
        action="store_true",
        help="Output a human-readable table instead of JSON.",
    )

    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument(
        "--date",
        type=str,
        default=None,
        help="Single day (DD-MM-YYYY): per-lecture attendance for that date.",
    )
    mode_group.add_argument(
        "--from",
        dest="from_date",
        type=str,
        default=None,
        help="Range start (DD-MM-YYYY). Default: DEFAULT_FROM_DATE from config.",
    )
    parser.add_argument(
        "--to",
        dest="to_date",
        type=str,
        default=None,
        help="Range end (DD-MM-YYYY). Default: today.",
    )
    return parser.parse_args()


def _format_summary_table(summary: AttendanceSummary) -> str:
    lines = [
        f"{summary.student_name}  ({summary.from_date} .. {summary.to_date})",
        "",
        f"{'Subject':<40} {'Present':>7} {'Total':>5} {'%':>7} {'Need':>5} {'Bunk':>5}",
        "-" * 74,
    ]
    for record in summary.records:
        lines.append(
            f"{record.subject[:40]:<40} {record.present:>7} {record.total:>5} "
            f"{record.percent:>7.2f} {record.required:>5} {record.margin:>5}"
        )
    if not summary.records:
        lines.append("(no attendance recorded in this range)")

    if summary.upcoming_classes:
        lines += ["", "Upcoming:"]
        for upcoming in summary.upcoming_classes:
            lines.append(f"  {upcoming.time:<20} {upcoming.title} @ {upcoming.location}")
    return "\n".join(lines)


def _format_datewise_table(result: DatewiseResult) -> str:
    lines = [
        f"Attendance on {result.date_used}",
        "",
        f"{'Subject':<40} {'From':>10} {'To':>10} {'Status':>8}",
        "-" * 71,
    ]
    for row in result.rows:
        lines.append(
            f"{row.subject[:40]:<40} {row.time_from:>10} {row.time_to:>10} {row.status.value:>8}"
        )
    if not result.rows:
        lines.append("(no lectures recorded on this date)")
    return "\n".join(lines)


def _exit_code(error: ScrapeError) -> int:
    if isinstance(error, ScrapeInvalidCredentialsError):
        return 2
    if isinstance(error, UpstreamFormatChangedError):
        return 3
    return 4


async def main(args: argparse.Namespace) -> int:
    config = get_config()
    if args.headed:
        config.headless = False
    setup_logging(
        json_output=config.log_json,
        log_level="DEBUG" if args.verbose else config.log_level,
    )

    if not LMS_USERNAME or not LMS_PASSWORD:
        _log("ERROR: LMS_USERNAME and LMS_PASSWORD must be set (environment or .env)")
        return 1

    try:
        async with AttendanceScraper(config) as scraper:
            if args.date:
                result = await scraper.scrape_datewise(LMS_USERNAME, LMS_PASSWORD, args.date)
                output = _format_datewise_table(result) if args.table else None
            else:
                result = await scraper.scrape_attendance(
                    LMS_USERNAME, LMS_PASSWORD, args.from_date, args.to_date
                )
                output = _format_summary_table(result) if args.table else None
    except ValueError as e:
        _log(f"ERROR: {e}")
        return 1
    except ScrapeError as e:
        _log(f"ERROR ({e.status_code}): {e}")
        return _exit_code(e)

    if output is None:
        output = json.dumps(result.model_dump(mode="json"), indent=2, ensure_ascii=False)
    print(output)
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main(_parse_args())))
