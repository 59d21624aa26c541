"""Batch router: production and outsource batch registry.

Endpoints:
    POST   /api/batches/                       Create batch (next number or explicit)
    GET    /api/batches/                       List batches (with filters)
    GET    /api/batches/available              Batches free for blending
    GET    /api/batches/stats                  Counts and quality ranges
    GET    /api/batches/missing                Gaps in the numbering
    GET    /api/batches/next-number            Number the next batch would get
    GET    /api/batches/export                 CSV export
    POST   /api/batches/bulk-delete            Delete several unused batches
    DELETE /api/batches/by-source-report       Undo an import (unused batches only)
    GET    /api/batches/{batch_id}             Single batch detail
    GET    /api/batches/{batch_id}/qr          QR code SVG for batch
    PATCH  /api/batches/{batch_id}             Update quality / descriptive fields
    DELETE /api/batches/{batch_id}             Delete an unused batch
    POST   /api/batches/{batch_id}/use         Mark used by an order / blend
    POST   /api/batches/{batch_id}/release     Make available again
"""

import io
import json

import segno
from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from gelatin_erp.auth.deps import get_actor
from gelatin_erp.database import get_db
from gelatin_erp.models.batch import QUALITY_ATTRIBUTES, BatchType
from gelatin_erp.schemas.batch import (
    BatchCreate,
    BatchOut,
    BatchStats,
    BatchUpdate,
    BulkDeleteRequest,
    BulkDeleteResult,
    MarkUsedRequest,
    MissingBatchesOut,
    NextBatchNumberOut,
)
from gelatin_erp.schemas.common import PaginatedResponse
from gelatin_erp.services import batch_registry
from gelatin_erp.services import fiscal_year as counters
from gelatin_erp.utils.activity import log_activity
from gelatin_erp.utils.csv_import import write_csv
from gelatin_erp.utils.fiscal_year import current_fiscal_year

router = APIRouter()

EXPORT_COLUMNS = [
    "batch_type", "batch_number", "fiscal_year", "serial_number",
    *QUALITY_ATTRIBUTES,
    "is_used", "used_in_ref", "is_on_hold", "source_report", "report_date", "notes",
]


def _csv_response(csv_text: str, filename: str) -> Response:
    return Response(
        content=csv_text,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ── Create ───────────────────────────────────────────────────

@router.post("/", response_model=BatchOut, status_code=status.HTTP_201_CREATED)
async def create_batch(
    body: BatchCreate,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(get_actor),
):
    """Register a lab-tested batch.

    Leave ``batch_number`` empty to take the next number of the fiscal year
    for this batch type.
    """
    batch = await batch_registry.create_batch(
        db,
        body.quality_values(),
        body.fiscal_year or current_fiscal_year(),
        body.batch_type,
        body.batch_number,
        serial_number=body.serial_number,
        source_report=body.source_report,
        report_date=body.report_date,
        notes=body.notes,
        is_on_hold=body.is_on_hold,
        actor=actor,
    )
    return BatchOut.model_validate(batch)


# ── List / reports ───────────────────────────────────────────

@router.get("/", response_model=PaginatedResponse[BatchOut])
async def list_batches(
    fiscal_year: str | None = Query(None),
    batch_type: BatchType | None = Query(None),
    is_used: bool | None = Query(None),
    source_report: str | None = Query(None),
    include_archived: bool = Query(False),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    items, total = await batch_registry.list_batches(
        db,
        fiscal_year=fiscal_year,
        batch_type=batch_type.value if batch_type else None,
        is_used=is_used,
        source_report=source_report,
        include_archived=include_archived,
        limit=limit,
        offset=offset,
    )
    return PaginatedResponse(
        items=[BatchOut.model_validate(b) for b in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/available", response_model=list[BatchOut])
async def list_available(
    fiscal_year: str | None = Query(None),
    batch_type: BatchType | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Unused, active, not-on-hold batches ascending by number."""
    batches = await batch_registry.list_available(
        db,
        fiscal_year or current_fiscal_year(),
        batch_type.value if batch_type else None,
    )
    return [BatchOut.model_validate(b) for b in batches]


@router.get("/stats", response_model=BatchStats)
async def batch_stats(
    fiscal_year: str | None = Query(None),
    batch_type: BatchType | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    return await batch_registry.batch_stats(
        db,
        fiscal_year or current_fiscal_year(),
        batch_type.value if batch_type else None,
    )


@router.get("/missing", response_model=MissingBatchesOut)
async def missing_batches(
    fiscal_year: str | None = Query(None),
    batch_type: BatchType = Query(BatchType.PRODUCTION),
    db: AsyncSession = Depends(get_db),
):
    """Batch numbers skipped between 1 and the highest number recorded."""
    return await batch_registry.missing_batches(
        db, fiscal_year or current_fiscal_year(), batch_type.value
    )


@router.get("/next-number", response_model=NextBatchNumberOut)
async def next_batch_number(
    fiscal_year: str | None = Query(None),
    batch_type: BatchType = Query(BatchType.PRODUCTION),
    db: AsyncSession = Depends(get_db),
):
    fiscal_year = counters.validate_fiscal_year(fiscal_year or current_fiscal_year())
    return NextBatchNumberOut(
        fiscal_year=fiscal_year,
        batch_type=batch_type.value,
        next_batch_number=await counters.peek_next_number(db, fiscal_year, batch_type.value),
    )


@router.get("/export")
async def export_batches(
    fiscal_year: str | None = Query(None),
    batch_type: BatchType | None = Query(None),
    include_archived: bool = Query(False),
    db: AsyncSession = Depends(get_db),
):
    fiscal_year = fiscal_year or current_fiscal_year()
    items, total = await batch_registry.list_batches(
        db,
        fiscal_year=fiscal_year,
        batch_type=batch_type.value if batch_type else None,
        include_archived=include_archived,
        limit=100_000,
    )
    rows = [{column: getattr(b, column) for column in EXPORT_COLUMNS} for b in items]
    return _csv_response(write_csv(EXPORT_COLUMNS, rows), f"batches_{fiscal_year}.csv")


# ── Bulk delete ──────────────────────────────────────────────

@router.post("/bulk-delete", response_model=BulkDeleteResult)
async def delete_batches(
    body: BulkDeleteRequest,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(get_actor),
):
    return await batch_registry.delete_batches(db, body.batch_ids, actor=actor)


@router.delete("/by-source-report", response_model=BulkDeleteResult)
async def delete_batches_by_source_report(
    source_report: str = Query(..., min_length=1),
    fiscal_year: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(get_actor),
):
    """Remove the batches created from one lab report; used batches are kept."""
    return await batch_registry.delete_batches_by_source_report(
        db, source_report, fiscal_year=fiscal_year, actor=actor
    )


# ── Single batch ─────────────────────────────────────────────

@router.get("/{batch_id}", response_model=BatchOut)
async def get_batch(batch_id: str, db: AsyncSession = Depends(get_db)):
    return BatchOut.model_validate(await batch_registry.get_batch(db, batch_id))


@router.get("/{batch_id}/qr")
async def batch_qr(batch_id: str, db: AsyncSession = Depends(get_db)):
    """Return an SVG QR code encoding key batch information."""
    batch = await batch_registry.get_batch(db, batch_id)
    qr_data = json.dumps({
        "batch_id": batch.id,
        "type": batch.batch_type,
        "number": batch.batch_number,
        "fiscal_year": batch.fiscal_year,
        "bloom": batch.bloom,
    }, separators=(",", ":"))

    qr = segno.make(qr_data)
    buf = io.BytesIO()
    qr.save(buf, kind="svg", scale=4)
    return Response(content=buf.getvalue(), media_type="image/svg+xml")


@router.patch("/{batch_id}", response_model=BatchOut)
async def update_batch(
    batch_id: str,
    body: BatchUpdate,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(get_actor),
):
    batch = await batch_registry.update_batch(
        db, batch_id, body.model_dump(exclude_unset=True), actor=actor
    )
    return BatchOut.model_validate(batch)


@router.delete("/{batch_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_batch(
    batch_id: str,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(get_actor),
):
    await batch_registry.delete_batch(db, batch_id, actor=actor)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ── Usage ────────────────────────────────────────────────────

@router.post("/{batch_id}/use", response_model=BatchOut)
async def mark_used(
    batch_id: str,
    body: MarkUsedRequest,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(get_actor),
):
    batch = await batch_registry.mark_used(db, batch_id, body.ref, body.blend_id)
    await log_activity(
        db, actor,
        action="marked_used",
        entity_type="batch",
        entity_id=batch.id,
        entity_code=f"{batch.fiscal_year}/{batch.batch_type}/{batch.batch_number}",
        summary=f"Batch {batch.batch_number} used in {body.ref}",
    )
    return BatchOut.model_validate(batch)


@router.post("/{batch_id}/release", response_model=BatchOut)
async def mark_available(
    batch_id: str,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(get_actor),
):
    batch = await batch_registry.mark_available(db, batch_id)
    await log_activity(
        db, actor,
        action="released",
        entity_type="batch",
        entity_id=batch.id,
        entity_code=f"{batch.fiscal_year}/{batch.batch_type}/{batch.batch_number}",
        summary=f"Batch {batch.batch_number} released",
    )
    return BatchOut.model_validate(batch)
