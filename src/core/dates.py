# src/core/dates.py — v1
"""Date normalization for extracted values and submission date validation.

Screenshots often show a date without a year ("Dec 12", "12/03"). Parsing is
delegated to dateutil; when the text carries no year it is inferred as the
reference year, or the previous year when the candidate would fall in the
future. An explicit year is always kept.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime

from dateutil import parser as date_parser

logger = logging.getLogger(__name__)

_YEAR = re.compile(r"(?<!\d)\d{4}(?!\d)")
_NUMERIC = re.compile(r"(?<!\d)(\d{1,2})[/\-.](\d{1,2})(?!\d)")


def _is_day_first(text: str) -> bool:
    """DD/MM only when the first number cannot be a month."""
    numeric = _NUMERIC.search(text)
    if not numeric:
        return False
    return int(numeric.group(1)) > 12 and int(numeric.group(2)) <= 12


def normalize_extracted_date(value: str | None, reference: date | None = None) -> str:
    """Normalize a possibly partial date string to YYYY-MM-DD.

    Args:
        value: Raw date text from extraction ("2026-01-10", "Jan 10",
            "10 January", "01/10", "January 10, 2025", ...). None or empty
            yields the reference date.
        reference: Date used for year inference (defaults to today).

    Returns:
        YYYY-MM-DD string. Unparseable input falls back to the reference date.
    """
    ref = reference or date.today()
    if not value:
        return ref.isoformat()

    cleaned = value.strip()
    try:
        candidate = date_parser.parse(
            cleaned,
            default=datetime(ref.year, 1, 1),
            fuzzy=True,
            dayfirst=_is_day_first(cleaned),
        ).date()
    except (ValueError, OverflowError):
        logger.debug("Could not parse extracted date %r, using reference date", cleaned)
        return ref.isoformat()

    if candidate > ref and not _YEAR.search(cleaned):
        try:
            candidate = candidate.replace(year=ref.year - 1)
        except ValueError:
            # Feb 29 has no counterpart in the previous year
            return ref.isoformat()
    return candidate.isoformat()


def is_valid_submission_date(value: str, today: date | None = None) -> bool:
    """True when ``value`` is a well-formed YYYY-MM-DD date not in the future."""
    from stepbatch.core.periods import parse_date

    try:
        parsed = parse_date(value)
    except ValueError:
        return False
    return parsed <= (today or date.today())


def relative_date_label(value: str, today: date | None = None) -> str:
    """Human-readable distance from today ("Today", "3 days ago", ...)."""
    from stepbatch.core.periods import parse_date

    parsed = parse_date(value)
    diff = ((today or date.today()) - parsed).days

    if diff == 0:
        return "Today"
    if diff == 1:
        return "Yesterday"
    if 1 < diff < 7:
        return f"{diff} days ago"
    if 7 <= diff < 14:
        return "Last week"
    if 14 <= diff < 30:
        return f"{diff // 7} weeks ago"
    return f"{parsed.strftime('%b')} {parsed.day}, {parsed.year}"
