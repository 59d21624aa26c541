"""Pydantic schemas for blends and the blend optimizer.

Range and quantity rules (min <= max, positive bags, no duplicates) are
enforced by the blend service so they surface as INVALID_RANGE /
INVALID_QUANTITY errors; these models only check shape.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from gelatin_erp.models.blend import BlendStatus, BloomSelectionMode


class BatchSelection(BaseModel):
    batch_id: str
    bags: int


class AdditionalTargets(BaseModel):
    viscosity: float | None = None
    percentage: float | None = None
    ph: float | None = None
    conductivity: float | None = None
    moisture: float | None = None
    h2o2: float | None = None
    so2: float | None = None
    color: str | None = Field(None, max_length=50)
    clarity: str | None = Field(None, max_length=50)
    odour: str | None = Field(None, max_length=50)

    model_config = {"allow_inf_nan": False}


# ── Create ───────────────────────────────────────────────────

class BlendCreate(BaseModel):
    target_bloom_min: float
    target_bloom_max: float
    target_mean_bloom: float | None = None
    bloom_selection_mode: BloomSelectionMode = BloomSelectionMode.RANDOM_AVERAGE
    target_mesh: float | None = None
    additional_targets: AdditionalTargets | None = None

    selections: list[BatchSelection]

    # Generated from the serial number when omitted
    lot_number: str | None = Field(None, max_length=50)
    # Defaults to the current fiscal year
    fiscal_year: str | None = Field(None, pattern=r"^\d{4}-\d{2}$")
    notes: str | None = None

    model_config = {"allow_inf_nan": False}


class BlendStatusUpdate(BaseModel):
    status: BlendStatus
    reviewed_by: str | None = Field(None, max_length=200)
    notes: str | None = None


# ── Read ─────────────────────────────────────────────────────

class BlendBatchOut(BaseModel):
    position: int
    batch_id: str
    batch_number: int
    batch_type: str
    is_outsource: bool
    bags: int
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

    model_config = {"from_attributes": True}


class BlendSummary(BaseModel):
    id: str
    fiscal_year: str
    lot_number: str
    serial_number: int
    blend_date: datetime
    target_bloom_min: float
    target_bloom_max: float
    total_bags: int
    total_weight_kg: float
    average_bloom: float | None = None
    status: str

    model_config = {"from_attributes": True}


class BlendOut(BlendSummary):
    target_mean_bloom: float | None = None
    bloom_selection_mode: str
    target_mesh: float | None = None
    target_viscosity: float | None = None
    target_percentage: float | None = None
    target_ph: float | None = None
    target_conductivity: float | None = None
    target_moisture: float | None = None
    target_h2o2: float | None = None
    target_so2: float | None = None
    target_color: str | None = None
    target_clarity: str | None = None
    target_odour: str | None = None

    average_viscosity: float | None = None
    average_percentage: float | None = None
    average_ph: float | None = None
    average_conductivity: float | None = None
    average_moisture: float | None = None
    average_h2o2: float | None = None
    average_so2: float | None = None

    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    notes: str | None = None
    created_by: str | None = None
    created_at: datetime
    updated_at: datetime

    selected_batches: list[BlendBatchOut]


# ── Optimizer ────────────────────────────────────────────────

class OptimizeRequest(BaseModel):
    target_bloom_min: float
    target_bloom_max: float
    target_mean_bloom: float | None = None
    # Rounded to the nearest multiple of the bags per batch
    target_bags: int = Field(10, ge=1)
    include_outsource: bool = False
    fiscal_year: str | None = Field(None, pattern=r"^\d{4}-\d{2}$")
    pre_selected_ids: list[str] = []
    additional_targets: AdditionalTargets | None = None

    model_config = {"allow_inf_nan": False}


class OptimizedSelection(BaseModel):
    batch_id: str
    batch_number: int
    batch_type: str
    bags: int
    bloom: float | None = None


class OptimizeResult(BaseModel):
    selections: list[OptimizedSelection]
    total_bags: int
    total_weight_kg: float
    average_bloom: float | None = None
    averages: dict[str, float]
    within_range: bool
    message: str
    status: list[str]
    warnings: list[str]
