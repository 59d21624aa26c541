"""Blend router: batch selection, review and blend sheets.

Endpoints:
    POST   /api/blends/                         Record a blend from a selection
    POST   /api/blends/optimize                 Suggest a selection (preview only)
    GET    /api/blends/                         List blends
    GET    /api/blends/export                   CSV export of the blend register
    GET    /api/blends/{blend_id}               Blend detail with batch snapshots
    PATCH  /api/blends/{blend_id}/status        Review workflow
    DELETE /api/blends/{blend_id}               Delete and release its batches
    GET    /api/blends/{blend_id}/sheet.pdf     Printable blend sheet
    GET    /api/blends/{blend_id}/sheet.csv     Blend sheet rows as CSV
"""

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from gelatin_erp.auth.deps import get_actor
from gelatin_erp.database import get_db
from gelatin_erp.models.batch import NUMERIC_ATTRIBUTES
from gelatin_erp.models.blend import BlendStatus
from gelatin_erp.schemas.blend import (
    BlendCreate,
    BlendOut,
    BlendStatusUpdate,
    BlendSummary,
    OptimizedSelection,
    OptimizeRequest,
    OptimizeResult,
)
from gelatin_erp.schemas.common import PaginatedResponse
from gelatin_erp.services import blend_selector
from gelatin_erp.services.blend_sheet import export_blend_sheet_csv, render_blend_sheet_pdf
from gelatin_erp.utils.csv_import import write_csv
from gelatin_erp.utils.fiscal_year import current_fiscal_year

router = APIRouter()

EXPORT_COLUMNS = [
    "lot_number", "serial_number", "fiscal_year", "blend_date",
    "target_bloom_min", "target_bloom_max", "target_mean_bloom", "target_mesh",
    "total_bags", "total_weight_kg",
    *[f"average_{name}" for name in NUMERIC_ATTRIBUTES],
    "status", "reviewed_by", "notes",
]


def _sheet_filename(lot_number: str, extension: str) -> str:
    safe = "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in lot_number)
    return f"blend_sheet_{safe}.{extension}"


# ── Create / suggest ─────────────────────────────────────────

@router.post("/", response_model=BlendOut, status_code=status.HTTP_201_CREATED)
async def create_blend(
    body: BlendCreate,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(get_actor),
):
    """Record a blend and mark every selected batch as used.

    All or nothing: if any batch is unavailable (or is taken by a
    concurrent request) no blend is created and no batch changes.
    """
    blend = await blend_selector.create_blend(db, body, actor=actor)
    return BlendOut.model_validate(blend)


@router.post("/optimize", response_model=OptimizeResult)
async def optimize_blend(body: OptimizeRequest, db: AsyncSession = Depends(get_db)):
    result = await blend_selector.suggest_blend(db, body)
    return OptimizeResult(
        selections=[
            OptimizedSelection(
                batch_id=c.id,
                batch_number=c.batch_number,
                batch_type=c.batch_type,
                bags=result.bags_per_batch,
                bloom=c.bloom,
            )
            for c in result.selections
        ],
        total_bags=result.total_bags,
        total_weight_kg=result.total_weight_kg,
        average_bloom=result.average_bloom,
        averages=result.averages,
        within_range=result.within_range,
        message=result.message,
        status=result.status,
        warnings=result.warnings,
    )


# ── Read ─────────────────────────────────────────────────────

@router.get("/export")
async def export_blends(
    fiscal_year: str | None = Query(None),
    status_filter: BlendStatus | None = Query(None, alias="status"),
    db: AsyncSession = Depends(get_db),
):
    fiscal_year = fiscal_year or current_fiscal_year()
    items, total = await blend_selector.list_blends(
        db,
        fiscal_year=fiscal_year,
        status=status_filter.value if status_filter else None,
        limit=100_000,
    )
    rows = [
        {column: getattr(b, column) for column in EXPORT_COLUMNS}
        for b in sorted(items, key=lambda b: b.serial_number)
    ]
    return Response(
        content=write_csv(EXPORT_COLUMNS, rows),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="blends_{fiscal_year}.csv"'},
    )


@router.get("/", response_model=PaginatedResponse[BlendSummary])
async def list_blends(
    fiscal_year: str | None = Query(None),
    status_filter: BlendStatus | None = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    items, total = await blend_selector.list_blends(
        db,
        fiscal_year=fiscal_year,
        status=status_filter.value if status_filter else None,
        limit=limit,
        offset=offset,
    )
    return PaginatedResponse(
        items=[BlendSummary.model_validate(b) for b in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{blend_id}", response_model=BlendOut)
async def get_blend(blend_id: str, db: AsyncSession = Depends(get_db)):
    return BlendOut.model_validate(await blend_selector.get_blend(db, blend_id))


# ── Review / delete ──────────────────────────────────────────

@router.patch("/{blend_id}/status", response_model=BlendOut)
async def update_blend_status(
    blend_id: str,
    body: BlendStatusUpdate,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(get_actor),
):
    blend = await blend_selector.update_blend_status(
        db,
        blend_id,
        body.status,
        reviewed_by=body.reviewed_by or actor,
        notes=body.notes,
        actor=actor,
    )
    return BlendOut.model_validate(blend)


@router.delete("/{blend_id}")
async def delete_blend(
    blend_id: str,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(get_actor),
):
    released = await blend_selector.delete_blend(db, blend_id, actor=actor)
    return {"deleted": True, "released_batches": released}


# ── Blend sheet ──────────────────────────────────────────────

@router.get("/{blend_id}/sheet.pdf")
async def blend_sheet_pdf(blend_id: str, db: AsyncSession = Depends(get_db)):
    blend = await blend_selector.get_blend(db, blend_id)
    return Response(
        content=render_blend_sheet_pdf(blend),
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'inline; filename="{_sheet_filename(blend.lot_number, "pdf")}"'
        },
    )


@router.get("/{blend_id}/sheet.csv")
async def blend_sheet_csv(blend_id: str, db: AsyncSession = Depends(get_db)):
    blend = await blend_selector.get_blend(db, blend_id)
    return Response(
        content=export_blend_sheet_csv(blend),
        media_type="text/csv; charset=utf-8",
        headers={
            "Content-Disposition": f'attachment; filename="{_sheet_filename(blend.lot_number, "csv")}"'
        },
    )
