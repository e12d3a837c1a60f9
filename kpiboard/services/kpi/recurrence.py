"""
Occurrence expansion for recurring deliverables.

A recurring deliverable is split into dated periods ("occurrences"), each
identified by a canonical period label:

    daily    2025-08-12    due 2025-08-12 23:59:59.999
    weekly   2025-W33      due Sunday of ISO week 33, 23:59:59.999
    monthly  2025-08       due 2025-08-31 23:59:59.999
    yearly   2025          due 2025-12-31 23:59:59.999

Labels and due dates are computed in the configured KPI timezone. The
functions here are pure: they never look at stored occurrences.
"""

import calendar
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo

RECURRENCE_PATTERNS = ("daily", "weekly", "monthly", "yearly")

_END_OF_DAY = time(23, 59, 59, 999000)

_DAILY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_WEEKLY_RE = re.compile(r"^(\d{4})-W(\d{2})$")
_MONTHLY_RE = re.compile(r"^(\d{4})-(\d{2})$")
_YEARLY_RE = re.compile(r"^(\d{4})$")


@dataclass(frozen=True)
class Occurrence:
    period_label: str
    due_date: datetime

    def to_dict(self):
        return {"periodLabel": self.period_label, "dueDate": self.due_date.isoformat()}


def _local_day(reference: datetime, tz: tzinfo) -> date:
    if reference.tzinfo is None:
        reference = reference.replace(tzinfo=tz)
    return reference.astimezone(tz).date()


def _end_of(day: date, tz: tzinfo) -> datetime:
    return datetime.combine(day, _END_OF_DAY, tzinfo=tz)


def period_for(pattern: str | None, reference: datetime, tz: tzinfo = timezone.utc) -> Occurrence | None:
    """Return the occurrence whose period contains ``reference``.

    Unknown or missing patterns produce ``None``.
    """
    if pattern not in RECURRENCE_PATTERNS:
        return None

    day = _local_day(reference, tz)

    if pattern == "daily":
        return Occurrence(day.isoformat(), _end_of(day, tz))

    if pattern == "weekly":
        iso = day.isocalendar()
        sunday = day + timedelta(days=7 - iso.weekday)
        return Occurrence(f"{iso.year}-W{iso.week:02d}", _end_of(sunday, tz))

    if pattern == "monthly":
        last = calendar.monthrange(day.year, day.month)[1]
        return Occurrence(f"{day.year}-{day.month:02d}", _end_of(day.replace(day=last), tz))

    return Occurrence(f"{day.year}", _end_of(date(day.year, 12, 31), tz))


def current_occurrences(pattern: str | None, now: datetime, tz: tzinfo = timezone.utc) -> list[Occurrence]:
    """Seed list for a recurring deliverable: the period containing ``now``."""
    occurrence = period_for(pattern, now, tz)
    return [occurrence] if occurrence else []


def _start_of_label(pattern: str, label: str) -> date | None:
    try:
        if pattern == "daily" and _DAILY_RE.match(label):
            return date.fromisoformat(label)
        if pattern == "weekly":
            m = _WEEKLY_RE.match(label)
            if m:
                return date.fromisocalendar(int(m.group(1)), int(m.group(2)), 1)
        if pattern == "monthly":
            m = _MONTHLY_RE.match(label)
            if m:
                return date(int(m.group(1)), int(m.group(2)), 1)
        if pattern == "yearly":
            m = _YEARLY_RE.match(label)
            if m:
                return date(int(m.group(1)), 1, 1)
    except ValueError:
        return None
    return None


def occurrence_for_label(pattern: str | None, label: str, tz: tzinfo = timezone.utc) -> Occurrence | None:
    """Rebuild the occurrence (and its due date) from a canonical period label."""
    if pattern not in RECURRENCE_PATTERNS or not label:
        return None
    start = _start_of_label(pattern, label)
    if start is None:
        return None
    return period_for(pattern, datetime.combine(start, time(12), tzinfo=tz), tz)


def canonical_label(pattern: str | None, label: str | None, tz: tzinfo = timezone.utc) -> str | None:
    """Map a plain ``YYYY-MM-DD`` onto the period label of ``pattern``.

    Upload filenames carry calendar dates; a weekly deliverable stores them
    under ``YYYY-W##``. Labels that are already canonical, or that cannot
    be interpreted, are returned unchanged.
    """
    if not label or pattern not in RECURRENCE_PATTERNS or not _DAILY_RE.match(label):
        return label
    try:
        day = date.fromisoformat(label)
    except ValueError:
        return label
    occurrence = period_for(pattern, datetime.combine(day, time(12), tzinfo=tz), tz)
    return occurrence.period_label if occurrence else label
