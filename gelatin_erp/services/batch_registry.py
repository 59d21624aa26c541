"""Batch Registry service.

Owns the lifecycle of production and outsource batches:
  - Creating a batch with the next number of its (fiscal_year, batch_type)
    partition, or an explicit number that is checked and reserved
  - Listing what is available for blending
  - Marking batches used / releasing them
  - Archiving a finished fiscal year
  - Gap reports and quality statistics per fiscal year

Writes that must not interleave (numbering, use) run in a SAVEPOINT and
rely on the database for serialization; lock failures surface as
``TransactionConflictError``.
"""

import logging
from datetime import date, datetime
from typing import Any

from sqlalchemy import and_, case, func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from gelatin_erp.middleware.exceptions import (
    AlreadyUsedError,
    BatchUnavailableError,
    BusinessLogicError,
    DuplicateBatchNumberError,
    ResourceNotFoundError,
)
from gelatin_erp.models.batch import QUALITY_ATTRIBUTES, Batch, BatchType
from gelatin_erp.models.fiscal_year import FiscalYearArchive
from gelatin_erp.services import fiscal_year as counters
from gelatin_erp.utils.activity import log_activity
from gelatin_erp.utils.numbering import find_missing_batch_numbers, group_missing_ranges
from gelatin_erp.utils.transactions import as_conflict

logger = logging.getLogger(__name__)

# Fields a user may edit after creation; numbering and usage are not among them
EDITABLE_FIELDS = set(QUALITY_ATTRIBUTES) | {
    "serial_number", "notes", "is_on_hold", "source_report", "report_date",
}

STAT_RANGE_ATTRIBUTES = ("bloom", "viscosity", "percentage", "ph")


def _batch_type(value: str | BatchType) -> str:
    try:
        return BatchType(value).value
    except ValueError:
        raise BusinessLogicError(
            f"Unknown batch type '{value}'",
            error_code="INVALID_BATCH_TYPE",
            details={"field": "batch_type", "value": str(value)},
        ) from None


def _check_attributes(attributes: dict[str, Any]) -> None:
    unknown = sorted(set(attributes) - set(QUALITY_ATTRIBUTES))
    if unknown:
        raise BusinessLogicError(
            f"Unknown quality attribute(s): {', '.join(unknown)}",
            error_code="UNKNOWN_ATTRIBUTE",
            details={"fields": unknown},
        )


def unavailable_reason(batch: Batch) -> str | None:
    """Why a batch cannot go into a blend, or None if it can."""
    if batch.is_used:
        return f"already used in {batch.used_in_ref}" if batch.used_in_ref else "already used"
    if not batch.is_active:
        return f"archived with fiscal year {batch.fiscal_year}"
    if batch.is_on_hold:
        return "on hold"
    return None


# ── Create / read / update / delete ─────────────────────────


async def create_batch(
    db: AsyncSession,
    attributes: dict[str, Any],
    fiscal_year: str,
    batch_type: str | BatchType,
    batch_number: int | None = None,
    *,
    serial_number: str | None = None,
    source_report: str | None = None,
    report_date: date | None = None,
    notes: str | None = None,
    is_on_hold: bool = False,
    actor: str = "system",
) -> Batch:
    """Create a batch numbered within its (fiscal_year, batch_type) partition.

    Without ``batch_number`` the next counter value is used.  With one, the
    number must be free; the counter is moved past it so later automatic
    numbers never collide.

    Raises:
        DuplicateBatchNumberError if the explicit number is taken.
        BusinessLogicError for an invalid/archived fiscal year or bad input.
        TransactionConflictError if a concurrent writer held the lock.
    """
    counters.validate_fiscal_year(fiscal_year)
    batch_type = _batch_type(batch_type)
    _check_attributes(attributes)
    if batch_number is not None and batch_number < 1:
        raise BusinessLogicError(
            "Batch number must be a positive integer",
            error_code="INVALID_BATCH_NUMBER",
            details={"field": "batch_number", "value": batch_number},
        )

    number = batch_number
    try:
        async with db.begin_nested():
            if batch_number is None:
                number = await counters.allocate_number(db, fiscal_year, batch_type)
            else:
                await counters.reserve_number(db, fiscal_year, batch_type, batch_number)

            batch = Batch(
                batch_type=batch_type,
                batch_number=number,
                fiscal_year=fiscal_year,
                serial_number=serial_number,
                source_report=source_report,
                report_date=report_date,
                notes=notes,
                is_on_hold=is_on_hold,
                is_used=False,
                is_active=True,
                **attributes,
            )
            db.add(batch)
            await db.flush()
    except IntegrityError as exc:
        raise DuplicateBatchNumberError(number, fiscal_year, batch_type) from exc
    except OperationalError as exc:
        raise as_conflict(exc) from exc

    await log_activity(
        db, actor,
        action="created",
        entity_type="batch",
        entity_id=batch.id,
        entity_code=f"{fiscal_year}/{batch_type}/{number}",
        summary=f"Created {batch_type} batch {number} ({fiscal_year})",
    )
    return batch


async def get_batch(db: AsyncSession, batch_id: str) -> Batch:
    batch = (
        await db.execute(
            select(Batch).where(Batch.id == batch_id).execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if not batch:
        raise ResourceNotFoundError("Batch", batch_id)
    return batch


async def list_batches(
    db: AsyncSession,
    fiscal_year: str | None = None,
    batch_type: str | None = None,
    is_used: bool | None = None,
    source_report: str | None = None,
    include_archived: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Batch], int]:
    """Filtered page of batches ordered by number, plus the total count."""
    base = select(Batch)
    if fiscal_year:
        base = base.where(Batch.fiscal_year == fiscal_year)
    if batch_type:
        base = base.where(Batch.batch_type == _batch_type(batch_type))
    if is_used is not None:
        base = base.where(Batch.is_used == is_used)
    if source_report:
        base = base.where(Batch.source_report == source_report)
    if not include_archived:
        base = base.where(Batch.is_active == True)  # noqa: E712

    total = (
        await db.execute(select(func.count()).select_from(base.subquery()))
    ).scalar() or 0
    items = (
        await db.execute(
            base.order_by(Batch.batch_type, Batch.batch_number)
            .limit(limit)
            .offset(offset)
            .execution_options(populate_existing=True)
        )
    ).scalars().all()
    return list(items), total


async def list_available(
    db: AsyncSession,
    fiscal_year: str,
    batch_type: str | None = None,
) -> list[Batch]:
    """Batches that can go into a blend, ascending by batch number."""
    stmt = select(Batch).where(
        Batch.fiscal_year == fiscal_year,
        Batch.is_used == False,  # noqa: E712
        Batch.is_active == True,  # noqa: E712
        Batch.is_on_hold == False,  # noqa: E712
    )
    if batch_type:
        stmt = stmt.where(Batch.batch_type == _batch_type(batch_type))
    stmt = stmt.order_by(Batch.batch_number, Batch.batch_type).execution_options(
        populate_existing=True
    )
    return list((await db.execute(stmt)).scalars().all())


async def update_batch(
    db: AsyncSession,
    batch_id: str,
    changes: dict[str, Any],
    actor: str = "system",
) -> Batch:
    """Patch quality attributes and descriptive fields of a batch.

    Raises:
        ResourceNotFoundError if the batch does not exist.
        BusinessLogicError (FIELD_NOT_EDITABLE) for numbering/usage fields.
    """
    locked = sorted(set(changes) - EDITABLE_FIELDS)
    if locked:
        raise BusinessLogicError(
            f"Field(s) cannot be edited: {', '.join(locked)}",
            error_code="FIELD_NOT_EDITABLE",
            details={"fields": locked},
        )

    batch = await get_batch(db, batch_id)
    for key, value in changes.items():
        setattr(batch, key, value)
    batch.updated_at = datetime.utcnow()
    await db.flush()

    await log_activity(
        db, actor,
        action="updated",
        entity_type="batch",
        entity_id=batch.id,
        entity_code=f"{batch.fiscal_year}/{batch.batch_type}/{batch.batch_number}",
        summary=f"Updated {batch.batch_type} batch {batch.batch_number}",
        details={"changed_fields": sorted(changes)},
    )
    return batch


async def delete_batch(db: AsyncSession, batch_id: str, actor: str = "system") -> None:
    """Delete an unused batch.  Its number is not given back to the counter."""
    batch = await get_batch(db, batch_id)
    if batch.is_used:
        raise AlreadyUsedError(batch.id, batch.used_in_ref)

    code = f"{batch.fiscal_year}/{batch.batch_type}/{batch.batch_number}"
    await db.delete(batch)
    await db.flush()

    await log_activity(
        db, actor,
        action="deleted",
        entity_type="batch",
        entity_id=batch_id,
        entity_code=code,
        summary=f"Deleted batch {code}",
    )


async def _delete_unused(db: AsyncSession, batches: list[Batch]) -> tuple[list[str], list[dict]]:
    deleted: list[str] = []
    skipped: list[dict] = []
    for batch in batches:
        if batch.is_used:
            skipped.append({
                "batch_id": batch.id,
                "batch_number": batch.batch_number,
                "reason": unavailable_reason(batch),
            })
            continue
        deleted.append(batch.id)
        await db.delete(batch)
    await db.flush()
    return deleted, skipped


async def delete_batches(
    db: AsyncSession,
    batch_ids: list[str],
    actor: str = "system",
) -> dict:
    """Delete several batches at once.

    Used batches and unknown ids are skipped with a reason; the rest are
    deleted.  Numbers are not given back to the counter.
    """
    rows = (
        await db.execute(select(Batch).where(Batch.id.in_(batch_ids)))
    ).scalars().all()
    found = {b.id: b for b in rows}
    ordered = [found[batch_id] for batch_id in dict.fromkeys(batch_ids) if batch_id in found]

    deleted, skipped = await _delete_unused(db, ordered)
    for batch_id in dict.fromkeys(batch_ids):
        if batch_id not in found:
            skipped.append({"batch_id": batch_id, "batch_number": None, "reason": "not found"})

    await log_activity(
        db, actor,
        action="deleted",
        entity_type="batch",
        summary=f"Deleted {len(deleted)} batches, skipped {len(skipped)}",
        details={"batch_ids": deleted},
    )
    return {"deleted_count": len(deleted), "deleted": deleted, "skipped": skipped}


async def delete_batches_by_source_report(
    db: AsyncSession,
    source_report: str,
    fiscal_year: str | None = None,
    actor: str = "system",
) -> dict:
    """Undo an import: delete every unused batch created from ``source_report``.

    Batches already used in a blend or order are kept and listed as skipped.
    """
    stmt = select(Batch).where(Batch.source_report == source_report)
    if fiscal_year:
        stmt = stmt.where(Batch.fiscal_year == fiscal_year)
    batches = list(
        (await db.execute(stmt.order_by(Batch.batch_type, Batch.batch_number))).scalars().all()
    )

    deleted, skipped = await _delete_unused(db, batches)
    logger.info(
        "Deleted %d batches from report %s (%d kept, in use)",
        len(deleted), source_report, len(skipped),
    )
    await log_activity(
        db, actor,
        action="deleted",
        entity_type="batch",
        entity_code=source_report,
        summary=f"Deleted {len(deleted)} batches from {source_report}",
        details={"batch_ids": deleted, "kept": [s["batch_id"] for s in skipped]},
    )
    return {"deleted_count": len(deleted), "deleted": deleted, "skipped": skipped}


# ── Usage ───────────────────────────────────────────────────


async def mark_used(
    db: AsyncSession,
    batch_id: str,
    ref: str,
    blend_id: str | None = None,
) -> Batch:
    """Flag a single batch as consumed by ``ref`` (blend lot or order ref).

    Raises:
        ResourceNotFoundError, AlreadyUsedError, BatchUnavailableError.
    """
    batch = await get_batch(db, batch_id)
    if batch.is_used:
        raise AlreadyUsedError(batch.id, batch.used_in_ref)
    reason = unavailable_reason(batch)
    if reason:
        raise BatchUnavailableError(batch.id, reason, batch.batch_number)

    now = datetime.utcnow()
    try:
        result = await db.execute(
            update(Batch)
            .where(Batch.id == batch_id, Batch.is_used == False)  # noqa: E712
            .values(
                is_used=True,
                used_in_ref=ref,
                used_in_blend_id=blend_id,
                used_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
    except OperationalError as exc:
        raise as_conflict(exc) from exc
    if result.rowcount != 1:
        raise AlreadyUsedError(batch_id)
    return await get_batch(db, batch_id)


async def mark_available(db: AsyncSession, batch_id: str) -> Batch:
    """Release a batch: clear the used flag and every back-reference."""
    batch = await get_batch(db, batch_id)
    batch.is_used = False
    batch.used_in_blend_id = None
    batch.used_in_ref = None
    batch.used_at = None
    batch.updated_at = datetime.utcnow()
    await db.flush()
    return batch


async def release_blend_batches(db: AsyncSession, blend_id: str) -> int:
    """Release every batch consumed by ``blend_id``.  Returns how many."""
    result = await db.execute(
        update(Batch)
        .where(Batch.used_in_blend_id == blend_id)
        .values(
            is_used=False,
            used_in_blend_id=None,
            used_in_ref=None,
            used_at=None,
            updated_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


# ── Fiscal year archive ─────────────────────────────────────


async def archive_fiscal_year(
    db: AsyncSession,
    old_fiscal_year: str,
    new_fiscal_year: str,
    actor: str = "system",
) -> dict:
    """Close ``old_fiscal_year`` and open ``new_fiscal_year`` for numbering.

    Deactivates every batch of the old year (numbers are kept), records the
    highest number reached per batch type, freezes the old counters and
    creates fresh counters for the new year starting at 1.  Running it again
    for the same pair changes nothing and keeps the recorded maxima.

    Returns:
        {
            "old_fiscal_year": str,
            "new_fiscal_year": str,
            "already_archived": bool,
            "records": [FiscalYearArchive, ...],
        }
    """
    counters.validate_fiscal_year(old_fiscal_year)
    counters.validate_fiscal_year(new_fiscal_year)
    if old_fiscal_year == new_fiscal_year:
        raise BusinessLogicError(
            "Old and new fiscal year must differ",
            error_code="INVALID_FISCAL_YEAR",
            details={"old_fiscal_year": old_fiscal_year, "new_fiscal_year": new_fiscal_year},
        )

    existing = {
        rec.batch_type: rec
        for rec in (
            await db.execute(
                select(FiscalYearArchive).where(
                    FiscalYearArchive.old_fiscal_year == old_fiscal_year,
                    FiscalYearArchive.new_fiscal_year == new_fiscal_year,
                )
            )
        ).scalars().all()
    }
    already_archived = len(existing) == len(BatchType)

    try:
        async with db.begin_nested():
            records = []
            for batch_type in BatchType:
                record = existing.get(batch_type.value)
                if record is None:
                    row = (
                        await db.execute(
                            select(func.max(Batch.batch_number), func.count(Batch.id)).where(
                                Batch.fiscal_year == old_fiscal_year,
                                Batch.batch_type == batch_type.value,
                            )
                        )
                    ).one()
                    max_number, count = row[0] or 0, row[1] or 0
                    record = FiscalYearArchive(
                        old_fiscal_year=old_fiscal_year,
                        new_fiscal_year=new_fiscal_year,
                        batch_type=batch_type.value,
                        max_batch_number=max_number,
                        archived_count=count,
                        new_year_start_number=1,
                        notes=(
                            f"Archived {count} {batch_type.value} batches of "
                            f"{old_fiscal_year}; {new_fiscal_year} starts at 1"
                        ),
                        archived_by=actor,
                    )
                    db.add(record)
                records.append(record)

            await db.execute(
                update(Batch)
                .where(
                    Batch.fiscal_year == old_fiscal_year,
                    Batch.is_active == True,  # noqa: E712
                )
                .values(is_active=False, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            await counters.freeze(db, old_fiscal_year)
            for sequence in counters.SEQUENCES:
                await counters.ensure_counter(db, new_fiscal_year, sequence)
            await db.flush()
    except OperationalError as exc:
        raise as_conflict(exc) from exc

    if not already_archived:
        logger.info(
            "Archived fiscal year %s -> %s (%s)",
            old_fiscal_year, new_fiscal_year,
            ", ".join(f"{r.batch_type} max {r.max_batch_number}" for r in records),
        )
        await log_activity(
            db, actor,
            action="archived",
            entity_type="fiscal_year",
            entity_code=old_fiscal_year,
            summary=f"Archived fiscal year {old_fiscal_year}; numbering continues in {new_fiscal_year}",
            details={r.batch_type: r.max_batch_number for r in records},
        )

    return {
        "old_fiscal_year": old_fiscal_year,
        "new_fiscal_year": new_fiscal_year,
        "already_archived": already_archived,
        "records": records,
    }


# ── Reports ─────────────────────────────────────────────────


async def missing_batches(db: AsyncSession, fiscal_year: str, batch_type: str) -> dict:
    """Gaps in 1..highest existing number for one partition."""
    batch_type = _batch_type(batch_type)
    numbers = (
        await db.execute(
            select(Batch.batch_number).where(
                Batch.fiscal_year == fiscal_year,
                Batch.batch_type == batch_type,
            )
        )
    ).scalars().all()
    highest = max(numbers, default=0)
    missing = find_missing_batch_numbers(numbers, 1, highest)
    return {
        "fiscal_year": fiscal_year,
        "batch_type": batch_type,
        "highest_batch_number": highest,
        "missing": missing,
        "ranges": group_missing_ranges(missing),
    }


async def batch_stats(
    db: AsyncSession,
    fiscal_year: str,
    batch_type: str | None = None,
) -> dict:
    """Counts and quality ranges over the active batches of a fiscal year."""
    columns = [
        func.count(Batch.id),
        func.sum(case((Batch.is_used == True, 1), else_=0)),  # noqa: E712
        func.sum(case((and_(Batch.is_on_hold == True, Batch.is_used == False), 1), else_=0)),  # noqa: E712
    ]
    for name in STAT_RANGE_ATTRIBUTES:
        column = getattr(Batch, name)
        columns += [func.min(column), func.max(column)]

    stmt = select(*columns).where(
        Batch.fiscal_year == fiscal_year,
        Batch.is_active == True,  # noqa: E712
    )
    if batch_type:
        stmt = stmt.where(Batch.batch_type == _batch_type(batch_type))
    row = (await db.execute(stmt)).one()

    total, used, on_hold = row[0] or 0, row[1] or 0, row[2] or 0
    stats = {
        "fiscal_year": fiscal_year,
        "batch_type": batch_type,
        "total_batches": total,
        "used_batches": used,
        "on_hold_batches": on_hold,
        "available_batches": total - used - on_hold,
    }
    for i, name in enumerate(STAT_RANGE_ATTRIBUTES):
        low, high = row[3 + 2 * i], row[4 + 2 * i]
        stats[f"{name}_range"] = None if low is None else {"min": low, "max": high}
    return stats
