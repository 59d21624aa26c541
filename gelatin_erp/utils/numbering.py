"""Batch-number gap detection and lot-number formatting.

Gaps are reported the way the production floor reads them: single missing
numbers as ints, consecutive runs collapsed into "first-last" strings.

    >>> group_missing_ranges(find_missing_batch_numbers([1, 2, 3, 5, 8, 9, 10], 1, 10))
    [4, '6-7']

Lot numbers follow the printed blend-sheet convention:

    {prefix}-{yy}{mm}-MFI-{dd}{seq:3}     e.g. HG-2510-MFI-07003
"""

from datetime import date, datetime
from typing import Iterable

from gelatin_erp.config import settings

LOT_NUMBER_FORMAT = "{prefix}-{yy}{mm}-MFI-{dd}{seq:03d}"


def find_missing_batch_numbers(
    existing: Iterable[int],
    minimum: int,
    maximum: int,
) -> list[int]:
    """Numbers in ``minimum..maximum`` (inclusive) not present in ``existing``."""
    if maximum < minimum:
        return []
    present = set(existing)
    return [n for n in range(minimum, maximum + 1) if n not in present]


def group_missing_ranges(numbers: Iterable[int]) -> list[int | str]:
    """Collapse consecutive runs: [4, 6, 7] -> [4, "6-7"]."""
    ordered = sorted(set(numbers))
    groups: list[int | str] = []
    if not ordered:
        return groups

    start = prev = ordered[0]
    for n in ordered[1:]:
        if n == prev + 1:
            prev = n
            continue
        groups.append(start if start == prev else f"{start}-{prev}")
        start = prev = n
    groups.append(start if start == prev else f"{start}-{prev}")
    return groups


def format_lot_number(
    serial: int,
    on: date | datetime | None = None,
    prefix: str | None = None,
) -> str:
    """Build a lot number from the blend serial and the blend date."""
    on = on or date.today()
    return LOT_NUMBER_FORMAT.format(
        prefix=prefix or settings.lot_number_prefix,
        yy=f"{on.year % 100:02d}",
        mm=f"{on.month:02d}",
        dd=f"{on.day:02d}",
        seq=serial,
    )
