"""Pydantic models for attendance data.

All data structures use Pydantic v2 for validation, serialization, and type safety.
AttendanceRecord derives its percentage and threshold arithmetic from the raw
present/total counts so the invariants hold no matter what the LMS reported.
"""

import math
from enum import Enum
from fractions import Fraction

from pydantic import BaseModel, Field, model_validator

# Minimum attendance ratio a student must keep.
ATTENDANCE_THRESHOLD = Fraction(3, 4)


def compute_percent(present: int, total: int) -> float:
    """Percentage of sessions attended, rounded to 2 decimals (0 when total is 0)."""
    if total <= 0:
        return 0.0
    return round(100 * present / total, 2)


def compute_required(present: int, total: int) -> int:
    """Smallest r >= 0 with (present + r) / (total + r) >= threshold.

    Closed form of (present + r) >= T * (total + r), solved exactly with
    fractions so boundary cases like 30/40 are not lost to float rounding.
    """
    if total <= 0:
        return 0
    needed = (ATTENDANCE_THRESHOLD * total - present) / (1 - ATTENDANCE_THRESHOLD)
    return max(0, math.ceil(needed))


def compute_margin(present: int, total: int) -> int:
    """Additional absences tolerated while staying at or above the threshold."""
    if present < 0 or total <= 0:
        return 0
    return max(0, math.floor(present / ATTENDANCE_THRESHOLD - total))


class AttendanceStatus(str, Enum):
    """Attendance mark for one session."""

    PRESENT = "Present"
    ABSENT = "Absent"
    UNKNOWN = "Unknown"


class AttendanceRecord(BaseModel):
    """Aggregate attendance for one subject over a date range.

    Only subject, present and total are taken from input; present is clamped
    into [0, total] and the remaining fields are always recomputed.
    """

    subject: str = Field(min_length=1)
    present: int = Field(ge=0)
    total: int = Field(ge=0)
    absent: int = Field(default=0, ge=0)
    percent: float = Field(default=0.0, ge=0, le=100)
    required: int = Field(default=0, ge=0)  # sessions needed to reach 75%
    margin: int = Field(default=0, ge=0)  # absences affordable before dropping below 75%

    @model_validator(mode="before")
    @classmethod
    def _derive_counts(cls, data: object) -> object:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if isinstance(data.get("subject"), str):
            data["subject"] = data["subject"].strip()
        total = max(0, int(data.get("total") or 0))
        present = min(max(0, int(data.get("present") or 0)), total)
        data.update(
            present=present,
            total=total,
            absent=total - present,
            percent=compute_percent(present, total),
            required=compute_required(present, total),
            margin=compute_margin(present, total),
        )
        return data


class DatewiseRow(BaseModel):
    """One subject session on a specific date."""

    subject: str = Field(min_length=1)
    time_from: str = ""
    time_to: str = ""
    status: AttendanceStatus = AttendanceStatus.UNKNOWN


class UpcomingClass(BaseModel):
    """An entry from the dashboard's upcoming lectures list."""

    title: str = ""
    subtitle: str = ""
    location: str = ""
    time: str = ""
    avatar: str = ""


class AttendanceSummary(BaseModel):
    """Result of a date-range attendance scrape."""

    student_name: str
    from_date: str
    to_date: str
    records: list[AttendanceRecord] = Field(default_factory=list)
    upcoming_classes: list[UpcomingClass] = Field(default_factory=list)


class DatewiseResult(BaseModel):
    """Result of a single-date attendance scrape."""

    source: str  # URL or strategy that produced the rows
    date_used: str
    rows: list[DatewiseRow] = Field(default_factory=list)


class ParseDiagnostic(str, Enum):
    """Why the extraction pipeline returned what it returned."""

    OK = "ok"
    EMPTY_INPUT = "empty_input"
    NO_TABLE = "no_table"
    NO_DATA_ROWS = "no_data_rows"


class ParseResult(BaseModel):
    """Rows extracted from an HTML fragment plus a structured diagnostic."""

    rows: list[DatewiseRow] = Field(default_factory=list)
    diagnostic: ParseDiagnostic = ParseDiagnostic.OK
    locator: str | None = None  # which table-location strategy matched
