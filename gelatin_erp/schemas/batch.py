"""Pydantic schemas for Batch CRUD operations."""

from datetime import date, datetime

from pydantic import BaseModel, Field

from gelatin_erp.models.batch import BatchType, QUALITY_ATTRIBUTES
from gelatin_erp.schemas.common import ValueRange


# ── Quality attributes (shared) ──────────────────────────────

class QualityAttributes(BaseModel):
    """Lab-report readings.  Every attribute is optional."""
    bloom: float | None = Field(None, ge=0)
    viscosity: float | None = Field(None, ge=0)
    percentage: float | None = Field(None, ge=0)
    ph: float | None = Field(None, ge=0, le=14)
    conductivity: float | None = Field(None, ge=0)
    moisture: float | None = Field(None, ge=0)
    h2o2: float | None = Field(None, ge=0)
    so2: float | None = Field(None, ge=0)
    color: str | None = Field(None, max_length=50)
    clarity: str | None = Field(None, max_length=50)
    odour: str | None = Field(None, max_length=50)

    model_config = {"allow_inf_nan": False}

    def quality_values(self) -> dict:
        return {name: getattr(self, name) for name in QUALITY_ATTRIBUTES}


# ── Create ───────────────────────────────────────────────────

class BatchCreate(QualityAttributes):
    batch_type: BatchType = BatchType.PRODUCTION
    # Defaults to the current fiscal year
    fiscal_year: str | None = Field(None, pattern=r"^\d{4}-\d{2}$")
    # Leave empty to take the next number of the fiscal year
    batch_number: int | None = Field(None, ge=1)
    serial_number: str | None = Field(None, max_length=50)
    source_report: str | None = Field(None, max_length=255)
    report_date: date | None = None
    is_on_hold: bool = False
    notes: str | None = None


# ── Update (partial) ─────────────────────────────────────────

class BatchUpdate(QualityAttributes):
    serial_number: str | None = Field(None, max_length=50)
    source_report: str | None = Field(None, max_length=255)
    report_date: date | None = None
    is_on_hold: bool | None = None
    notes: str | None = None


class MarkUsedRequest(BaseModel):
    ref: str = Field(..., min_length=1, max_length=100)
    blend_id: str | None = None


# ── Read ─────────────────────────────────────────────────────

class BatchOut(BaseModel):
    id: str
    batch_type: str
    batch_number: int
    fiscal_year: str
    serial_number: str | None = None

    bloom: float | None = None
    viscosity: float | None = None
    percentage: float | None = None
    ph: float | None = None
    conductivity: float | None = None
    moisture: float | None = None
    h2o2: float | None = None
    so2: float | None = None
    color: str | None = None
    clarity: str | None = None
    odour: str | None = None

    is_used: bool
    used_in_blend_id: str | None = None
    used_in_ref: str | None = None
    used_at: datetime | None = None
    is_on_hold: bool
    is_active: bool
    is_outsource: bool

    source_report: str | None = None
    report_date: date | None = None
    notes: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class BatchStats(BaseModel):
    fiscal_year: str
    batch_type: str | None = None
    total_batches: int
    used_batches: int
    on_hold_batches: int
    available_batches: int
    bloom_range: ValueRange | None = None
    viscosity_range: ValueRange | None = None
    percentage_range: ValueRange | None = None
    ph_range: ValueRange | None = None


class MissingBatchesOut(BaseModel):
    fiscal_year: str
    batch_type: str
    highest_batch_number: int
    missing: list[int]
    # Consecutive runs collapsed: [4, "6-7"]
    ranges: list[int | str]


class NextBatchNumberOut(BaseModel):
    fiscal_year: str
    batch_type: str
    next_batch_number: int


# ── Bulk delete ──────────────────────────────────────────────

class BulkDeleteRequest(BaseModel):
    batch_ids: list[str] = Field(..., min_length=1)


class SkippedBatch(BaseModel):
    batch_id: str
    batch_number: int | None = None
    reason: str


class BulkDeleteResult(BaseModel):
    deleted_count: int
    deleted: list[str]
    # Used batches are never deleted
    skipped: list[SkippedBatch]
