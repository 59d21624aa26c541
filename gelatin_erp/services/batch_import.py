"""Batch import from lab reports.

Rows arrive best-effort: from the external extraction service that reads
scanned reports, or from an uploaded CSV.  Each row is validated on its
own.  Good rows become batches numbered by the fiscal-year counter; bad
rows are skipped with a reason.  One bad row never blocks the others.
"""

import logging
from datetime import date
from typing import Any, Iterable, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from gelatin_erp.middleware.exceptions import GelatinERPException, PartialImportFailure
from gelatin_erp.models.batch import NUMERIC_ATTRIBUTES, QUALITY_ATTRIBUTES, BatchType
from gelatin_erp.services import batch_registry
from gelatin_erp.services import fiscal_year as counters
from gelatin_erp.utils.activity import log_activity
from gelatin_erp.utils.csv_import import FieldDef, coerce_float, coerce_int, parse_rows
from gelatin_erp.utils.fiscal_year import current_fiscal_year

logger = logging.getLogger(__name__)

NO_DATA_REASON = "Could not parse batch data from line"

BATCH_FIELDS = [
    FieldDef(column="batch_number", db_field="batch_number", coerce=coerce_int),
    FieldDef(column="serial_number", db_field="serial_number"),
    *[FieldDef(column=name, db_field=name, coerce=coerce_float) for name in NUMERIC_ATTRIBUTES],
    FieldDef(column="color", db_field="color"),
    FieldDef(column="clarity", db_field="clarity"),
    FieldDef(column="odour", db_field="odour"),
    FieldDef(column="notes", db_field="notes"),
]

BATCH_SAMPLE_ROW = {
    "batch_number": "",
    "serial_number": "SR-1042",
    "bloom": "220",
    "viscosity": "3.4",
    "percentage": "6.67",
    "ph": "5.6",
    "conductivity": "320",
    "moisture": "11.2",
    "h2o2": "0",
    "so2": "8",
    "color": "Light Yellow",
    "clarity": "Clear",
    "odour": "Normal",
    "notes": "",
}


def _skip(row: int, reason: str) -> dict:
    return {"row": row, "status": "skipped", "batch_id": None, "batch_number": None, "reason": reason}


async def import_batches(
    db: AsyncSession,
    rows: Iterable[Mapping[str, Any]],
    fiscal_year: str | None = None,
    batch_type: str | BatchType = BatchType.OUTSOURCE,
    source_report: str | None = None,
    report_date: date | None = None,
    actor: str = "system",
    first_row: int = 1,
) -> dict:
    """Create one batch per usable row.

    Returns:
        {
            "total_rows": int,
            "created_count": int,
            "skipped_count": int,
            "summary": str,
            "rows": [{"row", "status", "batch_id", "batch_number", "reason"}, ...],
            "skipped": [... the skipped subset ...],
            "partial_failure": {"code", "message"} | None,
        }
    """
    fiscal_year = counters.validate_fiscal_year(fiscal_year or current_fiscal_year())
    batch_type = BatchType(batch_type).value

    rows = list(rows)
    parsed = parse_rows(rows, BATCH_FIELDS, first_row=first_row)
    results: dict[int, dict] = {}

    for error in parsed.errors:
        results[error.row] = _skip(error.row, "; ".join(error.errors))

    for data in parsed.rows:
        row_num = data.pop("_row")
        attributes = {name: data.get(name) for name in QUALITY_ATTRIBUTES}
        if all(value is None for value in attributes.values()):
            results[row_num] = _skip(row_num, NO_DATA_REASON)
            continue

        try:
            batch = await batch_registry.create_batch(
                db,
                attributes,
                fiscal_year,
                batch_type,
                data.get("batch_number"),
                serial_number=data.get("serial_number"),
                source_report=source_report,
                report_date=report_date,
                notes=data.get("notes"),
                actor=actor,
            )
        except GelatinERPException as exc:
            results[row_num] = _skip(row_num, exc.message)
            continue

        results[row_num] = {
            "row": row_num,
            "status": "created",
            "batch_id": batch.id,
            "batch_number": batch.batch_number,
            "reason": None,
        }

    ordered = [results[k] for k in sorted(results)]
    skipped = [r for r in ordered if r["status"] == "skipped"]
    created_count = len(ordered) - len(skipped)
    summary = f"Created {created_count} {batch_type} batches, skipped {len(skipped)}"

    partial_failure = None
    if skipped:
        failure = PartialImportFailure(skipped)
        partial_failure = {"code": failure.error_code, "message": failure.message}
        logger.warning("Import from %s: %s", source_report or "upload", failure.message)
    logger.info("Import from %s: %s", source_report or "upload", summary)

    await log_activity(
        db, actor,
        action="imported",
        entity_type="batch",
        entity_code=source_report,
        summary=summary,
        details={"fiscal_year": fiscal_year, "created": created_count, "skipped": len(skipped)},
    )

    return {
        "total_rows": parsed.total_rows,
        "created_count": created_count,
        "skipped_count": len(skipped),
        "summary": summary,
        "rows": ordered,
        "skipped": skipped,
        "partial_failure": partial_failure,
    }
