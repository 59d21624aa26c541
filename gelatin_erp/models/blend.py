"""Blend: a planned mixture of batches meeting a target bloom range.

``selected_batches`` are snapshot rows copied from the source batches at
creation time, so the printed blend sheet stays stable even if a batch
record is later edited.  ``batch_id`` on a snapshot is a plain reference,
not a foreign key, for the same reason.

Lifecycle:  draft → completed → approved
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    DateTime, Float, ForeignKey, Integer,
    String, Text, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from gelatin_erp.database import Base
from gelatin_erp.models.batch import BatchType


class BlendStatus(str, enum.Enum):
    DRAFT = "draft"
    COMPLETED = "completed"
    APPROVED = "approved"


class BloomSelectionMode(str, enum.Enum):
    # any combination whose average bloom lands inside the range
    RANDOM_AVERAGE = "random-average"
    # average steered towards target_mean_bloom
    TARGET_MEAN = "target-mean"


class Blend(Base):
    __tablename__ = "blends"
    __table_args__ = (
        UniqueConstraint("fiscal_year", "lot_number", name="uq_blends_fiscal_year_lot"),
        UniqueConstraint("fiscal_year", "serial_number", name="uq_blends_fiscal_year_serial"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    fiscal_year: Mapped[str] = mapped_column(String(7), nullable=False, index=True)
    lot_number: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    serial_number: Mapped[int] = mapped_column(Integer, nullable=False)
    blend_date: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # ── Targets ──────────────────────────────────────────────
    target_bloom_min: Mapped[float] = mapped_column(Float, nullable=False)
    target_bloom_max: Mapped[float] = mapped_column(Float, nullable=False)
    target_mean_bloom: Mapped[float | None] = mapped_column(Float)
    bloom_selection_mode: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BloomSelectionMode.RANDOM_AVERAGE.value
    )
    # Mesh is printed on the sheet only; batches carry no mesh reading
    target_mesh: Mapped[float | None] = mapped_column(Float)
    target_viscosity: Mapped[float | None] = mapped_column(Float)
    target_percentage: Mapped[float | None] = mapped_column(Float)
    target_ph: Mapped[float | None] = mapped_column(Float)
    target_conductivity: Mapped[float | None] = mapped_column(Float)
    target_moisture: Mapped[float | None] = mapped_column(Float)
    target_h2o2: Mapped[float | None] = mapped_column(Float)
    target_so2: Mapped[float | None] = mapped_column(Float)
    target_color: Mapped[str | None] = mapped_column(String(50))
    target_clarity: Mapped[str | None] = mapped_column(String(50))
    target_odour: Mapped[str | None] = mapped_column(String(50))

    # ── Aggregates (bags-weighted means) ─────────────────────
    total_bags: Mapped[int] = mapped_column(Integer, nullable=False)
    total_weight_kg: Mapped[float] = mapped_column(Float, nullable=False)
    average_bloom: Mapped[float | None] = mapped_column(Float)
    average_viscosity: Mapped[float | None] = mapped_column(Float)
    average_percentage: Mapped[float | None] = mapped_column(Float)
    average_ph: Mapped[float | None] = mapped_column(Float)
    average_conductivity: Mapped[float | None] = mapped_column(Float)
    average_moisture: Mapped[float | None] = mapped_column(Float)
    average_h2o2: Mapped[float | None] = mapped_column(Float)
    average_so2: Mapped[float | None] = mapped_column(Float)

    # ── Review ───────────────────────────────────────────────
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BlendStatus.COMPLETED.value, index=True
    )
    reviewed_by: Mapped[str | None] = mapped_column(String(200))
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime)
    notes: Mapped[str | None] = mapped_column(Text)

    created_by: Mapped[str | None] = mapped_column(String(200))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    # Small, always needed with the blend; loaded eagerly
    selected_batches = relationship(
        "BlendBatch",
        back_populates="blend",
        order_by="BlendBatch.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class BlendBatch(Base):
    __tablename__ = "blend_batches"
    __table_args__ = (
        UniqueConstraint("blend_id", "batch_id", name="uq_blend_batches_blend_batch"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    blend_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("blends.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)

    # ── Snapshot of the source batch ─────────────────────────
    batch_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    batch_number: Mapped[int] = mapped_column(Integer, nullable=False)
    batch_type: Mapped[str] = mapped_column(String(20), nullable=False)
    bags: Mapped[int] = mapped_column(Integer, nullable=False)

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

    blend = relationship("Blend", back_populates="selected_batches")

    @property
    def is_outsource(self) -> bool:
        return self.batch_type == BatchType.OUTSOURCE.value
