"""Batch: one lab-tested lot of gelatin, produced in-house or outsourced.

Production and outsource batches share a single table; ``batch_type`` is the
discriminant.  Each batch carries a number that is sequential within its
(fiscal_year, batch_type) partition and is handed out by
``FiscalYearCounter``.

Lifecycle:  available → used (by exactly one blend) → released → available
Archived batches (``is_active=False``) belong to a closed fiscal year.
"""

import enum
import uuid
from datetime import date, datetime

from sqlalchemy import (
    Boolean, Date, DateTime, Float, Integer,
    String, Text, UniqueConstraint, Index,
)
from sqlalchemy.orm import Mapped, mapped_column

from gelatin_erp.database import Base


class BatchType(str, enum.Enum):
    PRODUCTION = "production"
    OUTSOURCE = "outsource"


# Quality attributes measured on the lab report, in report column order.
NUMERIC_ATTRIBUTES = (
    "bloom", "viscosity", "percentage", "ph",
    "conductivity", "moisture", "h2o2", "so2",
)
TEXT_ATTRIBUTES = ("color", "clarity", "odour")
QUALITY_ATTRIBUTES = NUMERIC_ATTRIBUTES + TEXT_ATTRIBUTES


class Batch(Base):
    __tablename__ = "batches"
    __table_args__ = (
        UniqueConstraint(
            "fiscal_year", "batch_type", "batch_number",
            name="uq_batches_fiscal_year_type_number",
        ),
        Index("ix_batches_fiscal_year_active", "fiscal_year", "is_active"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )

    # ── Identity ─────────────────────────────────────────────
    batch_type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    batch_number: Mapped[int] = mapped_column(Integer, nullable=False)
    fiscal_year: Mapped[str] = mapped_column(String(7), nullable=False)
    # "SR #" printed on the lab report
    serial_number: Mapped[str | None] = mapped_column(String(50))

    # ── Quality attributes ───────────────────────────────────
    bloom: Mapped[float | None] = mapped_column(Float)
    viscosity: Mapped[float | None] = mapped_column(Float)
    percentage: Mapped[float | None] = mapped_column(Float)
    ph: Mapped[float | None] = mapped_column(Float)
    conductivity: Mapped[float | None] = mapped_column(Float)
    moisture: Mapped[float | None] = mapped_column(Float)
    h2o2: Mapped[float | None] = mapped_column(Float)
    so2: Mapped[float | None] = mapped_column(Float)
    color: Mapped[str | None] = mapped_column(String(50))
    clarity: Mapped[str | None] = mapped_column(String(50))
    odour: Mapped[str | None] = mapped_column(String(50))

    # ── Usage ────────────────────────────────────────────────
    # is_used, used_in_blend_id, used_in_ref and used_at move together
    is_used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    used_in_blend_id: Mapped[str | None] = mapped_column(String(36), index=True)
    used_in_ref: Mapped[str | None] = mapped_column(String(100))
    used_at: Mapped[datetime | None] = mapped_column(DateTime)
    is_on_hold: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # ── Fiscal year archival ─────────────────────────────────
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # ── Source ───────────────────────────────────────────────
    source_report: Mapped[str | None] = mapped_column(String(255), index=True)
    report_date: Mapped[date | None] = mapped_column(Date)

    # ── Metadata ─────────────────────────────────────────────
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    @property
    def is_outsource(self) -> bool:
        return self.batch_type == BatchType.OUTSOURCE.value

    @property
    def is_available(self) -> bool:
        return not self.is_used and self.is_active and not self.is_on_hold

    def quality_snapshot(self) -> dict:
        """Copy of every quality attribute, including unset ones."""
        return {name: getattr(self, name) for name in QUALITY_ATTRIBUTES}
