"""Extraction pipeline for LMS attendance markup.

The LMS renders attendance as server-side HTML tables, sometimes wrapped in
JSON, and the layout changes without notice. Every function here is a pure
function of its input and never raises for "no data": a missing table is a
valid, empty result described by a ParseDiagnostic.

Table location cascade:
  1. table inside div.attendance_result (the LMS results container)
  2. first table that has a tbody
  3. first table on the page

Row shapes (by td count):
  >=4  subject | time from | time to | status
  3    subject | "09:00-10:00" | status      (THREE_TIME_RANGE)
       subject | "3/4" or other info | status (THREE_SESSION)
  2    subject | status
"""

import re
from enum import Enum
from typing import Any, Iterable, NamedTuple

from bs4 import BeautifulSoup, Tag

from src.lms_scraper.logging import get_logger
from src.lms_scraper.models import (
    AttendanceRecord,
    AttendanceStatus,
    DatewiseRow,
    ParseDiagnostic,
    ParseResult,
    UpcomingClass,
)
from src.lms_scraper.utils import clean_text

log = get_logger(__name__)

RESULT_CONTAINER = ".attendance_result"

# Percentages at or above this classify an ambiguous cell as Present.
PRESENT_PERCENT_CUTOFF = 75.0

_CLOCK_TIME = re.compile(r"\b\d{1,2}:\d{2}(?:\s*[AaPp][Mm])?")
_RANGE_SEPARATOR = re.compile(r"\s*(?:-|–|\bto\b)\s*", re.IGNORECASE)
_TO_WORD = re.compile(r"\bto\b", re.IGNORECASE)
_SESSION_RATIO = re.compile(r"^\s*(\d+)\s*/\s*(\d+)\s*$")
_RATIO_ANYWHERE = re.compile(r"(\d+)\s*/\s*(\d+)")
_PERCENT = re.compile(r"(\d+(?:\.\d+)?)\s*%")
_BARE_NUMBER = re.compile(r"^\d+(?:\.\d+)?$")
_HEADER_SUBJECT = re.compile(r"^(?:subjects?|subject\s+name|course)\s*:?$", re.IGNORECASE)
_CHART_MARKUP = re.compile(r"<canvas|<svg|chart", re.IGNORECASE)
_LOGIN_MARKERS = (
    re.compile(r"Student Login", re.IGNORECASE),
    re.compile(r"Username", re.IGNORECASE),
)

# All-caps cells at least this long are banner/header text, not subjects.
_HEADER_CAPS_MIN_LENGTH = 30


class ColumnShape(str, Enum):
    """Meaning of a row, decided from its cell count and content."""

    FOUR = "four"
    THREE_TIME_RANGE = "three_time_range"
    THREE_SESSION = "three_session"
    TWO = "two"


class Cell(NamedTuple):
    text: str  # entity-decoded, whitespace-collapsed
    markup: str  # raw inner HTML, for status hints hidden in attributes


def _soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "html.parser")


# --- Table and row location ---


def locate_table(soup: BeautifulSoup) -> tuple[Tag | None, str | None]:
    """Find the attendance table, returning it with the name of the strategy used."""
    container = soup.select_one(RESULT_CONTAINER)
    if container is not None:
        table = container.find("table")
        if table is not None:
            return table, "attendance_result"

    for table in soup.find_all("table"):
        if table.find("tbody") is not None:
            return table, "table_with_tbody"

    table = soup.find("table")
    if table is not None:
        return table, "first_table"
    return None, None


def locate_rows(table: Tag) -> list[Tag]:
    """Data rows of a table: tbody rows, else every row outside thead without th cells."""
    tbody = table.find("tbody")
    if tbody is not None:
        return tbody.find_all("tr")

    rows = []
    for tr in table.find_all("tr"):
        if tr.find_parent("thead") is not None:
            continue
        if tr.find("th") is not None:
            continue
        rows.append(tr)
    return rows


def _cells(tr: Tag) -> list[Cell]:
    return [
        Cell(clean_text(td.get_text(" ")), td.decode_contents())
        for td in tr.find_all("td", recursive=False)
    ]


# --- Classification ---


def is_time_range(text: str) -> bool:
    return bool(_CLOCK_TIME.search(text) or _TO_WORD.search(text) or "-" in text)


def is_session_ratio(text: str) -> bool:
    return bool(_SESSION_RATIO.match(text))


def classify(cells: list[Cell]) -> ColumnShape | None:
    """Decide how a row's cells map onto DatewiseRow fields."""
    count = len(cells)
    if count >= 4:
        return ColumnShape.FOUR
    if count == 3:
        if is_session_ratio(cells[1].text):
            return ColumnShape.THREE_SESSION
        if is_time_range(cells[1].text):
            return ColumnShape.THREE_TIME_RANGE
        # Unrecognized middle column is carried as opaque session info
        return ColumnShape.THREE_SESSION
    if count == 2:
        return ColumnShape.TWO
    return None


def split_time_range(text: str) -> tuple[str, str]:
    """Split "09:00-10:00" / "9:00 AM to 10:00 AM" into (from, to)."""
    times = _CLOCK_TIME.findall(text)
    if len(times) >= 2:
        return times[0].strip(), times[1].strip()
    parts = _RANGE_SEPARATOR.split(text, maxsplit=1)
    if len(parts) == 2:
        return parts[0].strip(), parts[1].strip()
    return text.strip(), ""


def infer_status(text: str, markup: str = "") -> AttendanceStatus:
    """Read an attendance mark out of a cell.

    Order: explicit present/absent words (rendered text, then raw markup),
    single-letter codes, a percentage (>= 75 is Present), then a chart or
    canvas placeholder. The placeholder default of Present is a heuristic
    carried over from observed LMS behaviour, not a documented contract.
    """
    for haystack in (text.lower(), markup.lower()):
        if "absent" in haystack:
            return AttendanceStatus.ABSENT
        if "present" in haystack:
            return AttendanceStatus.PRESENT

    code = text.strip().upper()
    if code == "P":
        return AttendanceStatus.PRESENT
    if code == "A":
        return AttendanceStatus.ABSENT

    match = _PERCENT.search(text)
    number = match.group(1) if match else (text if _BARE_NUMBER.match(text) else None)
    if number is not None:
        if float(number) >= PRESENT_PERCENT_CUTOFF:
            return AttendanceStatus.PRESENT
        return AttendanceStatus.ABSENT

    if not text and _CHART_MARKUP.search(markup):
        return AttendanceStatus.PRESENT

    return AttendanceStatus.UNKNOWN


def is_rejected_subject(subject: str) -> bool:
    """True for empty, header-like or punctuation-only subject cells."""
    if not subject:
        return True
    if not any(ch.isalnum() for ch in subject):
        return True
    if _HEADER_SUBJECT.match(subject):
        return True
    if len(subject) >= _HEADER_CAPS_MIN_LENGTH and subject == subject.upper():
        return True
    return False


# --- One normalizer per shape ---


def _normalize_four(cells: list[Cell]) -> DatewiseRow:
    status = cells[3]
    return DatewiseRow(
        subject=cells[0].text,
        time_from=cells[1].text,
        time_to=cells[2].text,
        status=infer_status(status.text, status.markup),
    )


def _normalize_three_time_range(cells: list[Cell]) -> DatewiseRow:
    time_from, time_to = split_time_range(cells[1].text)
    status = cells[2]
    return DatewiseRow(
        subject=cells[0].text,
        time_from=time_from,
        time_to=time_to,
        status=infer_status(status.text, status.markup),
    )


def _normalize_three_session(cells: list[Cell]) -> DatewiseRow:
    status = cells[2]
    return DatewiseRow(
        subject=cells[0].text,
        time_from=cells[1].text,
        status=infer_status(status.text, status.markup),
    )


def _normalize_two(cells: list[Cell]) -> DatewiseRow:
    status = cells[1]
    return DatewiseRow(
        subject=cells[0].text,
        status=infer_status(status.text, status.markup),
    )


_NORMALIZERS = {
    ColumnShape.FOUR: _normalize_four,
    ColumnShape.THREE_TIME_RANGE: _normalize_three_time_range,
    ColumnShape.THREE_SESSION: _normalize_three_session,
    ColumnShape.TWO: _normalize_two,
}


def normalize_row(cells: list[Cell]) -> DatewiseRow | None:
    """Classify and normalize one row; None when the row is not data."""
    shape = classify(cells)
    if shape is None or is_rejected_subject(cells[0].text):
        return None
    return _NORMALIZERS[shape](cells)


# --- Entry points ---


def parse_rows_with_diagnostic(html: str | None) -> ParseResult:
    """Extract date-wise rows and explain an empty result."""
    if not html or not html.strip():
        return ParseResult(diagnostic=ParseDiagnostic.EMPTY_INPUT)

    table, locator = locate_table(_soup(html))
    if table is None:
        log.debug("datewise_parse_empty", reason="no_table", html_length=len(html))
        return ParseResult(diagnostic=ParseDiagnostic.NO_TABLE)

    rows = []
    for tr in locate_rows(table):
        row = normalize_row(_cells(tr))
        if row is not None:
            rows.append(row)

    if not rows:
        log.debug("datewise_parse_empty", reason="no_data_rows", locator=locator)
        return ParseResult(diagnostic=ParseDiagnostic.NO_DATA_ROWS, locator=locator)

    log.debug("datewise_parsed", rows=len(rows), locator=locator)
    return ParseResult(rows=rows, locator=locator)


def parse_rows(html: str | None) -> list[DatewiseRow]:
    """Date-wise rows from an HTML fragment; empty when nothing is found."""
    return parse_rows_with_diagnostic(html).rows


def rows_from_json(items: Iterable[Any]) -> list[DatewiseRow]:
    """Normalize row objects returned directly by a JSON endpoint."""
    rows = []
    for item in items:
        if not isinstance(item, dict):
            continue
        subject = clean_text(str(item.get("subject") or item.get("subject_name") or ""))
        if is_rejected_subject(subject):
            continue
        status_text = clean_text(str(item.get("attendance") or item.get("status") or ""))
        rows.append(
            DatewiseRow(
                subject=subject,
                time_from=clean_text(str(item.get("time_from") or item.get("from") or "")),
                time_to=clean_text(str(item.get("time_to") or item.get("to") or "")),
                status=infer_status(status_text),
            )
        )
    return rows


def unwrap_json_payload(data: Any) -> tuple[str, list | None]:
    """Pull an HTML fragment (or a ready row list) out of an AJAX JSON body."""
    if isinstance(data, list):
        return "", data
    if not isinstance(data, dict):
        return "", None
    for key in ("result_page", "html", "data"):
        value = data.get(key)
        if isinstance(value, str) and value:
            return value, None
    for key in ("rows", "data"):
        value = data.get(key)
        if isinstance(value, list):
            return "", value
    return "", None


def parse_attendance_rows(html: str | None) -> list[AttendanceRecord]:
    """Subject totals from the date-range report (subject | percent | present/total)."""
    if not html:
        return []
    table, _ = locate_table(_soup(html))
    if table is None:
        log.warning("attendance_table_missing", html_length=len(html))
        return []

    records = []
    for tr in locate_rows(table):
        cells = _cells(tr)
        if len(cells) < 3 or is_rejected_subject(cells[0].text):
            continue
        ratio = _RATIO_ANYWHERE.search(cells[2].text) or _RATIO_ANYWHERE.search(cells[1].text)
        present, total = (int(ratio.group(1)), int(ratio.group(2))) if ratio else (0, 0)
        records.append(AttendanceRecord(subject=cells[0].text, present=present, total=total))
    return records


def parse_dashboard(html: str, fallback_name: str) -> tuple[str, list[UpcomingClass]]:
    """Student name and upcoming lectures from the dashboard page."""
    soup = _soup(html)

    heading = soup.select_one("h4.mt0")
    name = ""
    if heading is not None:
        name = clean_text(re.sub(r"Welcome,", "", heading.get_text(" "), flags=re.IGNORECASE))

    upcoming = []
    for li in soup.select(".user-progress .lecture-list"):
        img = li.find("img")
        avatar = clean_text((img.get("src") or img.get("data-src") or "") if img else "")
        title = _first_text(li, ".media-title") or _first_text(li, ".bmedium")
        location = time = ""
        side = li.select_one(".ms-auto")
        if side is not None:
            children = side.find_all(recursive=False)
            location = _first_text(side, ".bmedium") or (
                clean_text(children[0].get_text(" ")) if children else ""
            )
            time = _first_text(side, ".text-muted") or (
                clean_text(children[1].get_text(" ")) if len(children) > 1 else ""
            )
        upcoming.append(
            UpcomingClass(
                title=title,
                subtitle=_first_text(li, ".text-muted"),
                location=location,
                time=time,
                avatar=avatar,
            )
        )
    return name or fallback_name, upcoming


def _first_text(node: Tag, selector: str) -> str:
    found = node.select_one(selector)
    return clean_text(found.get_text(" ")) if found is not None else ""


def extract_hidden_fields(html: str) -> dict[str, str]:
    """Every named hidden input (anti-CSRF tokens etc.), in document order."""
    fields: dict[str, str] = {}
    for tag in _soup(html).find_all("input"):
        if (tag.get("type") or "").lower() != "hidden":
            continue
        name = tag.get("name")
        if name:
            fields[name] = tag.get("value") or ""
    return fields


def looks_like_login_page(html: str) -> bool:
    """The LMS serves its login form in place of pages when a session is gone."""
    return all(marker.search(html) for marker in _LOGIN_MARKERS)
