"""Fiscal Year Counter service.

Hands out sequential numbers per (fiscal_year, sequence):
  - "production" / "outsource"  → batch numbers
  - "blend"                     → blend serial numbers

Every function here must run inside the transaction that inserts the
numbered record.  The counter row is created on first use (seeded past any
number already stored for that year) and then advanced with a single
``UPDATE … SET next_number = next_number + 1 RETURNING``, so two writers can
never receive the same number and a rolled-back insert gives its number back.
"""

import logging
import uuid
from datetime import datetime

from sqlalchemy import case, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from gelatin_erp.middleware.exceptions import BusinessLogicError
from gelatin_erp.models.batch import Batch, BatchType
from gelatin_erp.models.blend import Blend
from gelatin_erp.models.fiscal_year import BLEND_SEQUENCE, FiscalYearCounter
from gelatin_erp.utils.fiscal_year import is_valid_fiscal_year

logger = logging.getLogger(__name__)

SEQUENCES = (BatchType.PRODUCTION.value, BatchType.OUTSOURCE.value, BLEND_SEQUENCE)


def validate_fiscal_year(fiscal_year: str) -> str:
    if not is_valid_fiscal_year(fiscal_year):
        raise BusinessLogicError(
            f"Invalid fiscal year '{fiscal_year}', expected YYYY-YY (e.g. 2025-26)",
            error_code="INVALID_FISCAL_YEAR",
            details={"field": "fiscal_year", "value": fiscal_year},
        )
    return fiscal_year


def _frozen_error(fiscal_year: str, sequence: str) -> BusinessLogicError:
    return BusinessLogicError(
        f"Fiscal year {fiscal_year} is archived; no new {sequence} numbers can be issued",
        error_code="FISCAL_YEAR_ARCHIVED",
        details={"fiscal_year": fiscal_year, "sequence": sequence},
    )


async def _highest_stored(db: AsyncSession, fiscal_year: str, sequence: str) -> int:
    """Highest number already persisted for this sequence (0 when none)."""
    if sequence == BLEND_SEQUENCE:
        stmt = select(func.max(Blend.serial_number)).where(Blend.fiscal_year == fiscal_year)
    else:
        stmt = select(func.max(Batch.batch_number)).where(
            Batch.fiscal_year == fiscal_year, Batch.batch_type == sequence
        )
    return (await db.execute(stmt)).scalar() or 0


async def ensure_counter(db: AsyncSession, fiscal_year: str, sequence: str) -> None:
    """Insert the counter row if it does not exist yet (no-op on conflict)."""
    exists = (
        await db.execute(
            select(FiscalYearCounter.id).where(
                FiscalYearCounter.fiscal_year == fiscal_year,
                FiscalYearCounter.sequence == sequence,
            )
        )
    ).scalar_one_or_none()
    if exists:
        return

    start = await _highest_stored(db, fiscal_year, sequence) + 1
    dialect = db.get_bind().dialect.name
    insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
    now = datetime.utcnow()
    stmt = (
        insert(FiscalYearCounter)
        .values(
            id=str(uuid.uuid4()),
            fiscal_year=fiscal_year,
            sequence=sequence,
            next_number=start,
            is_frozen=False,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["fiscal_year", "sequence"])
    )
    await db.execute(stmt)


async def allocate_number(db: AsyncSession, fiscal_year: str, sequence: str) -> int:
    """Issue the next number for (fiscal_year, sequence).

    Raises:
        BusinessLogicError (FISCAL_YEAR_ARCHIVED) if the year is frozen.
    """
    await ensure_counter(db, fiscal_year, sequence)
    result = await db.execute(
        update(FiscalYearCounter)
        .where(
            FiscalYearCounter.fiscal_year == fiscal_year,
            FiscalYearCounter.sequence == sequence,
            FiscalYearCounter.is_frozen == False,  # noqa: E712
        )
        .values(
            next_number=FiscalYearCounter.next_number + 1,
            updated_at=datetime.utcnow(),
        )
        .returning(FiscalYearCounter.next_number)
        .execution_options(synchronize_session=False)
    )
    advanced = result.scalar_one_or_none()
    if advanced is None:
        raise _frozen_error(fiscal_year, sequence)
    return advanced - 1


async def reserve_number(
    db: AsyncSession, fiscal_year: str, sequence: str, number: int
) -> None:
    """Advance the counter past an explicitly chosen number.

    The counter never moves backwards; a number below it leaves it as is.
    Uniqueness of the number itself is enforced by the table constraint.
    """
    await ensure_counter(db, fiscal_year, sequence)
    result = await db.execute(
        update(FiscalYearCounter)
        .where(
            FiscalYearCounter.fiscal_year == fiscal_year,
            FiscalYearCounter.sequence == sequence,
            FiscalYearCounter.is_frozen == False,  # noqa: E712
        )
        .values(
            next_number=case(
                (FiscalYearCounter.next_number <= number, number + 1),
                else_=FiscalYearCounter.next_number,
            ),
            updated_at=datetime.utcnow(),
        )
        .returning(FiscalYearCounter.next_number)
        .execution_options(synchronize_session=False)
    )
    if result.scalar_one_or_none() is None:
        raise _frozen_error(fiscal_year, sequence)


async def get_counter(
    db: AsyncSession, fiscal_year: str, sequence: str
) -> FiscalYearCounter | None:
    return (
        await db.execute(
            select(FiscalYearCounter).where(
                FiscalYearCounter.fiscal_year == fiscal_year,
                FiscalYearCounter.sequence == sequence,
            )
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()


async def peek_next_number(db: AsyncSession, fiscal_year: str, sequence: str) -> int:
    """Number the next insert would receive.  Read-only; not a reservation."""
    counter = await get_counter(db, fiscal_year, sequence)
    if counter is not None:
        return counter.next_number
    return await _highest_stored(db, fiscal_year, sequence) + 1


async def is_frozen(db: AsyncSession, fiscal_year: str) -> bool:
    result = await db.execute(
        select(func.count(FiscalYearCounter.id)).where(
            FiscalYearCounter.fiscal_year == fiscal_year,
            FiscalYearCounter.is_frozen == True,  # noqa: E712
        )
    )
    return (result.scalar() or 0) > 0


async def freeze(db: AsyncSession, fiscal_year: str) -> None:
    """Stop issuing numbers for every sequence of ``fiscal_year``."""
    for sequence in SEQUENCES:
        await ensure_counter(db, fiscal_year, sequence)
    await db.execute(
        update(FiscalYearCounter)
        .where(FiscalYearCounter.fiscal_year == fiscal_year)
        .values(is_frozen=True, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    logger.info("Froze numbering for fiscal year %s", fiscal_year)


async def list_counters(db: AsyncSession, fiscal_year: str | None = None) -> list[FiscalYearCounter]:
    stmt = select(FiscalYearCounter).order_by(
        FiscalYearCounter.fiscal_year, FiscalYearCounter.sequence
    ).execution_options(populate_existing=True)
    if fiscal_year:
        stmt = stmt.where(FiscalYearCounter.fiscal_year == fiscal_year)
    return list((await db.execute(stmt)).scalars().all())
