"""Fiscal-year bookkeeping: numbering counters and archive records.

FiscalYearCounter holds the next number to hand out for one
(fiscal_year, sequence) pair.  Sequences are the batch types
("production", "outsource") plus "blend" for blend serial numbers.
The row is only ever mutated inside the transaction that inserts the
numbered record, so numbers are never issued twice and never recycled.

FiscalYearArchive records one closed fiscal year per batch type, with the
highest batch number reached, for audit.
"""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from gelatin_erp.database import Base

BLEND_SEQUENCE = "blend"


class FiscalYearCounter(Base):
    __tablename__ = "fiscal_year_counters"
    __table_args__ = (
        UniqueConstraint("fiscal_year", "sequence", name="uq_counter_fiscal_year_sequence"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    fiscal_year: Mapped[str] = mapped_column(String(7), nullable=False, index=True)
    # production | outsource | blend
    sequence: Mapped[str] = mapped_column(String(20), nullable=False)
    next_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    # Set once the fiscal year is archived; no further numbers are issued
    is_frozen: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )


class FiscalYearArchive(Base):
    __tablename__ = "fiscal_year_archives"
    __table_args__ = (
        UniqueConstraint(
            "old_fiscal_year", "new_fiscal_year", "batch_type",
            name="uq_archive_old_new_type",
        ),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    old_fiscal_year: Mapped[str] = mapped_column(String(7), nullable=False, index=True)
    new_fiscal_year: Mapped[str] = mapped_column(String(7), nullable=False)
    batch_type: Mapped[str] = mapped_column(String(20), nullable=False)

    max_batch_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    archived_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    new_year_start_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    notes: Mapped[str | None] = mapped_column(Text)

    archived_by: Mapped[str | None] = mapped_column(String(200))
    archived_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
