"""Fiscal year router: numbering counters and year-end archival.

Endpoints:
    GET  /api/fiscal-years/current      Current / next fiscal year and counters
    GET  /api/fiscal-years/counters     All counters (optionally one year)
    POST /api/fiscal-years/archive      Close a fiscal year, open the next
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from gelatin_erp.auth.deps import get_actor
from gelatin_erp.database import get_db
from gelatin_erp.schemas.fiscal_year import (
    ArchiveRecordOut,
    ArchiveRequest,
    ArchiveResult,
    CounterOut,
    FiscalYearInfo,
)
from gelatin_erp.services import batch_registry
from gelatin_erp.services import fiscal_year as counters
from gelatin_erp.utils.fiscal_year import current_fiscal_year, next_fiscal_year

router = APIRouter()


@router.get("/current", response_model=FiscalYearInfo)
async def current(db: AsyncSession = Depends(get_db)):
    fiscal_year = current_fiscal_year()
    return FiscalYearInfo(
        current_fiscal_year=fiscal_year,
        next_fiscal_year=next_fiscal_year(fiscal_year),
        counters=[
            CounterOut.model_validate(c)
            for c in await counters.list_counters(db, fiscal_year)
        ],
    )


@router.get("/counters", response_model=list[CounterOut])
async def list_counters(
    fiscal_year: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    return [CounterOut.model_validate(c) for c in await counters.list_counters(db, fiscal_year)]


@router.post("/archive", response_model=ArchiveResult)
async def archive(
    body: ArchiveRequest,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(get_actor),
):
    """Deactivate the old year's batches and restart numbering at 1.

    ``new_fiscal_year`` defaults to the year after ``old_fiscal_year``.
    Repeating the call for the same pair is a no-op that returns the
    original archive records.
    """
    counters.validate_fiscal_year(body.old_fiscal_year)
    new_fiscal_year = body.new_fiscal_year or next_fiscal_year(body.old_fiscal_year)
    result = await batch_registry.archive_fiscal_year(
        db, body.old_fiscal_year, new_fiscal_year, actor=actor
    )
    return ArchiveResult(
        old_fiscal_year=result["old_fiscal_year"],
        new_fiscal_year=result["new_fiscal_year"],
        already_archived=result["already_archived"],
        records=[ArchiveRecordOut.model_validate(r) for r in result["records"]],
    )
