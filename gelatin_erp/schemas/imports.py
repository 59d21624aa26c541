"""Pydantic schemas for batch import (extraction service rows or CSV)."""

from datetime import date
from typing import Any

from pydantic import BaseModel, Field

from gelatin_erp.models.batch import BatchType


class ImportRequest(BaseModel):
    """Rows as returned by the lab-report extraction service."""
    rows: list[dict[str, Any]]
    batch_type: BatchType = BatchType.OUTSOURCE
    fiscal_year: str | None = Field(None, pattern=r"^\d{4}-\d{2}$")
    source_report: str | None = Field(None, max_length=255)
    report_date: date | None = None


class ImportRowResult(BaseModel):
    row: int
    status: str  # created | skipped
    batch_id: str | None = None
    batch_number: int | None = None
    reason: str | None = None


class ImportResult(BaseModel):
    total_rows: int
    created_count: int
    skipped_count: int
    summary: str
    rows: list[ImportRowResult]
    skipped: list[ImportRowResult]
    partial_failure: dict[str, str] | None = None
