"""Generic CSV parsing, validation and export for batch data."""

import csv
import io
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping

from fastapi import UploadFile

from gelatin_erp.middleware.exceptions import BusinessLogicError

# Lab reports use these for "not measured"
_BLANK_MARKERS = {"", "-", "--", "n/a", "na", "nil", "none"}


@dataclass
class FieldDef:
    """Definition for a single CSV column."""
    column: str
    db_field: str
    required: bool = False
    coerce: Callable[[str], Any] | None = None


@dataclass
class RowError:
    row: int
    errors: list[str]


@dataclass
class ParseResult:
    rows: list[dict[str, Any]] = field(default_factory=list)
    errors: list[RowError] = field(default_factory=list)
    total_rows: int = 0


def is_blank(val: Any) -> bool:
    return val is None or str(val).strip().lower() in _BLANK_MARKERS


def coerce_int(val: str) -> int | None:
    if is_blank(val):
        return None
    number = float(val.strip())
    if not number.is_integer():
        raise ValueError(f"{val!r} is not a whole number")
    return int(number)


def coerce_float(val: str) -> float | None:
    if is_blank(val):
        return None
    number = float(val.strip().replace(",", ""))
    if not math.isfinite(number):
        raise ValueError(f"{val!r} is not a finite number")
    return number


def parse_rows(
    raw_rows: Iterable[Mapping[str, Any]],
    field_defs: list[FieldDef],
    first_row: int = 2,
) -> ParseResult:
    """Validate and coerce already-split rows (CSV or extracted JSON)."""
    result = ParseResult()

    for row_num, raw_row in enumerate(raw_rows, start=first_row):
        result.total_rows += 1
        row_errors: list[str] = []
        parsed: dict[str, Any] = {"_row": row_num}

        for fd in field_defs:
            raw = raw_row.get(fd.column)
            if raw is None and fd.db_field != fd.column:
                raw = raw_row.get(fd.db_field)
            raw_val = "" if raw is None else str(raw).strip()

            if fd.required and is_blank(raw_val):
                row_errors.append(f"'{fd.column}' is required")
                continue

            if is_blank(raw_val):
                parsed[fd.db_field] = None
                continue

            if fd.coerce:
                try:
                    parsed[fd.db_field] = fd.coerce(raw_val)
                except (ValueError, TypeError):
                    row_errors.append(f"'{fd.column}': invalid value '{raw_val}'")
                    continue
            else:
                parsed[fd.db_field] = raw_val

        if row_errors:
            result.errors.append(RowError(row=row_num, errors=row_errors))
        else:
            result.rows.append(parsed)

    return result


def read_csv_text(text: str) -> list[dict[str, str]]:
    return list(csv.DictReader(io.StringIO(text)))


async def read_upload(file: UploadFile) -> list[dict[str, str]]:
    content = await file.read()
    try:
        text = content.decode("utf-8-sig")  # handle BOM from Excel
    except UnicodeDecodeError:
        raise BusinessLogicError(
            f"{file.filename or 'Upload'} is not a UTF-8 CSV file",
            error_code="INVALID_ENCODING",
            details={"field": "file"},
        ) from None
    return read_csv_text(text)


def write_csv(headers: list[str], rows: Iterable[Mapping[str, Any]]) -> str:
    """Header row plus one line per record; missing values are left empty."""
    output = io.StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(headers)
    for row in rows:
        writer.writerow(["" if row.get(h) is None else row.get(h) for h in headers])
    return output.getvalue()


def generate_template_csv(
    field_defs: list[FieldDef],
    sample_row: dict[str, str] | None = None,
) -> str:
    """Generate CSV template string with headers and optional sample row."""
    headers = [fd.column for fd in field_defs]
    return write_csv(headers, [sample_row] if sample_row else [])
