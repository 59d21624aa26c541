"""Pydantic schemas for fiscal-year numbering and archiving."""

from datetime import datetime

from pydantic import BaseModel, Field


class ArchiveRequest(BaseModel):
    old_fiscal_year: str = Field(..., pattern=r"^\d{4}-\d{2}$")
    # Defaults to the year after old_fiscal_year
    new_fiscal_year: str | None = Field(None, pattern=r"^\d{4}-\d{2}$")


class ArchiveRecordOut(BaseModel):
    old_fiscal_year: str
    new_fiscal_year: str
    batch_type: str
    max_batch_number: int
    archived_count: int
    new_year_start_number: int
    notes: str | None = None
    archived_by: str | None = None
    archived_at: datetime

    model_config = {"from_attributes": True}


class ArchiveResult(BaseModel):
    old_fiscal_year: str
    new_fiscal_year: str
    already_archived: bool
    records: list[ArchiveRecordOut]


class CounterOut(BaseModel):
    fiscal_year: str
    sequence: str
    next_number: int
    is_frozen: bool

    model_config = {"from_attributes": True}


class FiscalYearInfo(BaseModel):
    current_fiscal_year: str
    next_fiscal_year: str
    counters: list[CounterOut]
