"""Fiscal-year token helpers.

A fiscal year runs from ``settings.fiscal_year_start_month`` (July) to the
month before it in the following calendar year and is written "YYYY-YY",
e.g. "2025-26" for July 2025 through June 2026.
"""

import re
from datetime import date, datetime

from gelatin_erp.config import settings

_TOKEN_RE = re.compile(r"^(\d{4})-(\d{2})$")


def fiscal_year_token(start_year: int) -> str:
    """Start year 2025 -> 2025-26."""
    return f"{start_year}-{(start_year + 1) % 100:02d}"


def is_valid_fiscal_year(token: str) -> bool:
    match = _TOKEN_RE.match(token or "")
    if not match:
        return False
    start = int(match.group(1))
    return (start + 1) % 100 == int(match.group(2))


def start_year_of(token: str) -> int:
    if not is_valid_fiscal_year(token):
        raise ValueError(f"Invalid fiscal year '{token}', expected YYYY-YY")
    return int(token[:4])


def next_fiscal_year(token: str) -> str:
    """Token after ``token``: 2025-26 -> 2026-27."""
    return fiscal_year_token(start_year_of(token) + 1)


def fiscal_year_for_date(on: date | datetime, start_month: int | None = None) -> str:
    """Fiscal year containing ``on``."""
    start_month = start_month or settings.fiscal_year_start_month
    start_year = on.year if on.month >= start_month else on.year - 1
    return fiscal_year_token(start_year)


def current_fiscal_year() -> str:
    """Configured default fiscal year, else the one containing today."""
    if settings.default_fiscal_year:
        return settings.default_fiscal_year
    return fiscal_year_for_date(date.today())
