"""Batch import router: lab report rows from the extraction service or CSV.

Endpoints:
    POST /api/imports/batches             Import extracted rows (JSON)
    POST /api/imports/batches/upload      Import an uploaded CSV
    GET  /api/imports/batches/template    Download the CSV template
"""

from datetime import date

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from gelatin_erp.auth.deps import get_actor
from gelatin_erp.database import get_db
from gelatin_erp.models.batch import BatchType
from gelatin_erp.schemas.imports import ImportRequest, ImportResult
from gelatin_erp.services.batch_import import BATCH_FIELDS, BATCH_SAMPLE_ROW, import_batches
from gelatin_erp.utils.csv_import import generate_template_csv, read_upload

router = APIRouter()


def _csv_response(csv_text: str, filename: str) -> StreamingResponse:
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/batches", response_model=ImportResult)
async def import_rows(
    body: ImportRequest,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(get_actor),
):
    """Create batches from extracted rows; unusable rows are skipped."""
    return await import_batches(
        db,
        body.rows,
        fiscal_year=body.fiscal_year,
        batch_type=body.batch_type,
        source_report=body.source_report,
        report_date=body.report_date,
        actor=actor,
    )


@router.post("/batches/upload", response_model=ImportResult)
async def upload_csv(
    file: UploadFile = File(...),
    batch_type: BatchType = Form(BatchType.OUTSOURCE),
    fiscal_year: str | None = Form(None),
    report_date: date | None = Form(None),
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(get_actor),
):
    rows = await read_upload(file)
    # Row 1 is the header line
    return await import_batches(
        db,
        rows,
        fiscal_year=fiscal_year,
        batch_type=batch_type,
        source_report=file.filename,
        report_date=report_date,
        actor=actor,
        first_row=2,
    )


@router.get("/batches/template")
async def batch_template():
    csv_text = generate_template_csv(BATCH_FIELDS, BATCH_SAMPLE_ROW)
    return _csv_response(csv_text, "batch_import_template.csv")
