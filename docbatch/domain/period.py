"""Validation for declared calendar periods ("competência"), formatted MM/YYYY."""

import re
from datetime import date

PERIOD_PATTERN = re.compile(r"^(\d{2})/(\d{4})$")
MIN_YEAR = 2000
MAX_MONTHS_AHEAD = 1


def _month_index(year: int, month: int) -> int:
    return year * 12 + (month - 1)


def validate_period(period: str, today: date | None = None) -> list[str]:
    """Return the reasons a period string is unacceptable (empty when valid).

    A valid period is a real month no earlier than January 2000 and no later
    than one month after the current month.
    """
    today = today or date.today()
    match = PERIOD_PATTERN.match(period or "")
    if match is None:
        return [f"Invalid period '{period}': use the MM/YYYY format"]

    month, year = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        return [f"Invalid period '{period}': month must be between 01 and 12"]
    if year < MIN_YEAR:
        return [f"Invalid period '{period}': year must be {MIN_YEAR} or later"]
    if _month_index(year, month) > _month_index(today.year, today.month) + MAX_MONTHS_AHEAD:
        return [f"Invalid period '{period}': too far in the future"]
    return []


def period_slug(period: str) -> str:
    """Filesystem-safe form of a period: '03/2024' -> '03_2024'."""
    return period.replace("/", "_")
