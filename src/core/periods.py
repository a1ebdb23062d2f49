# src/core/periods.py — v1
"""Period math: preset ranges, previous periods, day-type filters, streaks.

All dates are YYYY-MM-DD strings at the boundaries and ``datetime.date``
internally. Weeks start on Monday.
"""

from __future__ import annotations

import re
from datetime import date, timedelta
from typing import Iterable, Literal

from stepbatch.core.models import DateRange, DayType

PeriodPreset = Literal[
    "today",
    "yesterday",
    "this_week",
    "last_week",
    "this_month",
    "last_month",
    "last_3_days",
    "last_7_days",
    "last_2_weeks",
    "last_30_days",
    "last_90_days",
    "this_year",
    "all_time",
    "custom",
]

PRESET_LABELS: dict[str, str] = {
    "today": "Today",
    "yesterday": "Yesterday",
    "this_week": "This Week",
    "last_week": "Last Week",
    "this_month": "This Month",
    "last_month": "Last Month",
    "last_3_days": "Last 3 Days",
    "last_7_days": "Last 7 Days",
    "last_2_weeks": "Last 2 Weeks",
    "last_30_days": "Last 30 Days",
    "last_90_days": "Last 90 Days",
    "this_year": "This Year",
    "all_time": "All Time",
    "custom": "Custom",
}

# Rolling presets: window length in days, ending on the reference date.
_ROLLING_DAYS: dict[str, int] = {
    "last_3_days": 3,
    "last_7_days": 7,
    "last_2_weeks": 14,
    "last_30_days": 30,
    "last_90_days": 90,
}

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

_DAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


def parse_date(value: str) -> date:
    """Parse a strict YYYY-MM-DD string."""
    if not _ISO_DATE.match(value):
        raise ValueError(f"Invalid date format: {value!r} (expected YYYY-MM-DD)")
    return date.fromisoformat(value)


def format_date(value: date) -> str:
    return value.isoformat()


def _range(start: date, end: date) -> DateRange:
    return DateRange(start=format_date(start), end=format_date(end))


def week_start(value: date) -> date:
    """Monday of the week containing ``value``."""
    return value - timedelta(days=value.weekday())


def _month_start(value: date) -> date:
    return value.replace(day=1)


def _previous_month_end(value: date) -> date:
    return _month_start(value) - timedelta(days=1)


def preset_to_date_range(
    preset: str, reference: date | None = None,
) -> DateRange | None:
    """Convert a preset name into an inclusive date range.

    Ranges never extend past the reference date. ``all_time`` and ``custom``
    (and unknown presets) return None: no date filter, or caller-supplied dates.
    """
    today = reference or date.today()

    if preset == "today":
        return _range(today, today)
    if preset == "yesterday":
        y = today - timedelta(days=1)
        return _range(y, y)
    if preset == "this_week":
        return _range(week_start(today), today)
    if preset == "last_week":
        end = week_start(today) - timedelta(days=1)
        return _range(week_start(end), end)
    if preset == "this_month":
        return _range(_month_start(today), today)
    if preset == "last_month":
        end = _previous_month_end(today)
        return _range(_month_start(end), end)
    if preset in _ROLLING_DAYS:
        return _range(today - timedelta(days=_ROLLING_DAYS[preset] - 1), today)
    if preset == "this_year":
        return _range(date(today.year, 1, 1), today)
    return None


def previous_range(current: DateRange) -> DateRange:
    """Window of the same length ending the day before ``current`` starts."""
    start = parse_date(current.start)
    length = calculate_days_between(current.start, current.end)
    end = start - timedelta(days=1)
    return _range(end - timedelta(days=length - 1), end)


def previous_period_range(
    preset: str, reference: date | None = None,
) -> DateRange | None:
    """Comparison window preceding the preset's current window.

    Calendar presets step back one calendar unit (this_week -> the whole of
    last week, this_month -> the whole of last month, this_year -> last
    year). Rolling presets return the equally long window immediately before.
    """
    today = reference or date.today()

    if preset == "today":
        return preset_to_date_range("yesterday", today)
    if preset == "yesterday":
        d = today - timedelta(days=2)
        return _range(d, d)
    if preset == "this_week":
        return preset_to_date_range("last_week", today)
    if preset == "last_week":
        end = week_start(today) - timedelta(days=8)
        return _range(week_start(end), end)
    if preset == "this_month":
        return preset_to_date_range("last_month", today)
    if preset == "last_month":
        end = _previous_month_end(_previous_month_end(today))
        return _range(_month_start(end), end)
    if preset == "this_year":
        return _range(date(today.year - 1, 1, 1), date(today.year - 1, 12, 31))
    current = preset_to_date_range(preset, today)
    if current is None:
        return None
    return previous_range(current)


def custom_range_to_date_range(start: str, end: str) -> DateRange | None:
    """Validate a user-supplied range; None on bad format or start after end."""
    try:
        s, e = parse_date(start), parse_date(end)
    except ValueError:
        return None
    if s > e:
        return None
    return _range(s, e)


def preset_label(preset: str) -> str:
    return PRESET_LABELS.get(preset, preset)


def format_custom_period_label(start: str, end: str) -> str:
    """Label a custom range: 'Jan 15' for one day, 'Jan 1 - Jan 31' for a span."""
    s, e = parse_date(start), parse_date(end)

    def short(d: date) -> str:
        return f"{d.strftime('%b')} {d.day}"

    if s == e:
        return short(s)
    if s.year != e.year:
        return f"{short(s)}, {s.year} - {short(e)}, {e.year}"
    return f"{short(s)} - {short(e)}"


def calculate_days_between(start: str, end: str) -> int:
    """Inclusive day count (same day = 1)."""
    return (parse_date(end) - parse_date(start)).days + 1


def get_dates_between(start: str, end: str) -> list[str]:
    s, e = parse_date(start), parse_date(end)
    return [format_date(s + timedelta(days=i)) for i in range((e - s).days + 1)]


def is_weekend(value: str) -> bool:
    return parse_date(value).weekday() >= 5


def is_weekday(value: str) -> bool:
    return not is_weekend(value)


def filter_by_day_type(dates: Iterable[str], day_type: DayType) -> list[str]:
    if day_type == "weekend":
        return [d for d in dates if is_weekend(d)]
    if day_type == "weekday":
        return [d for d in dates if is_weekday(d)]
    return list(dates)


def day_of_week_name(value: str) -> str:
    return _DAY_NAMES[parse_date(value).weekday()]


def day_of_week_short(value: str) -> str:
    return day_of_week_name(value)[:3]


def date_in_range(value: str, date_range: DateRange | None) -> bool:
    if date_range is None:
        return True
    return date_range.start <= value <= date_range.end


def calculate_streak(submission_dates: Iterable[str], reference: date | None = None) -> int:
    """Count consecutive days with a submission, ending today or yesterday.

    A streak whose most recent day is older than yesterday is broken (0).
    Duplicate dates are ignored.
    """
    today = reference or date.today()
    days = sorted({parse_date(d) for d in submission_dates}, reverse=True)
    if not days:
        return 0

    yesterday = today - timedelta(days=1)
    if days[0] not in (today, yesterday):
        return 0

    streak = 0
    expected = days[0]
    for d in days:
        if d != expected:
            break
        streak += 1
        expected = expected - timedelta(days=1)
    return streak
