"""Blend Selector service.

Turns a user's batch selection into a recorded blend:
  - Validates the target bloom range and every selection line
  - Resolves each batch and checks it is available
  - Computes totals and bags-weighted attribute averages
  - In one SAVEPOINT: takes the next blend serial, inserts the blend with a
    snapshot of every selected batch, and flips the batches to used with a
    conditional UPDATE.  If any batch was taken in the meantime the whole
    savepoint is rolled back; nothing is written.

Also covers the review workflow (status changes), deletion (which releases
the batches), and the optimizer-backed suggestion endpoint.
"""

import logging
from datetime import datetime
from typing import Mapping, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from gelatin_erp.config import settings
from gelatin_erp.middleware.exceptions import (
    BatchUnavailableError,
    BusinessLogicError,
    DuplicateLotNumberError,
    InvalidQuantityError,
    InvalidRangeError,
    ResourceNotFoundError,
)
from gelatin_erp.models.batch import NUMERIC_ATTRIBUTES, Batch, BatchType
from gelatin_erp.models.blend import Blend, BlendBatch, BlendStatus, BloomSelectionMode
from gelatin_erp.models.fiscal_year import BLEND_SEQUENCE
from gelatin_erp.schemas.blend import BlendCreate, OptimizeRequest
from gelatin_erp.services import batch_registry, fiscal_year as counters
from gelatin_erp.services.blend_optimizer import Candidate, OptimizationResult, optimize_selection
from gelatin_erp.utils.activity import log_activity
from gelatin_erp.utils.fiscal_year import current_fiscal_year
from gelatin_erp.utils.numbering import format_lot_number
from gelatin_erp.utils.transactions import as_conflict

logger = logging.getLogger(__name__)

TARGET_FIELDS = ("viscosity", "percentage", "ph", "conductivity", "moisture",
                 "h2o2", "so2", "color", "clarity", "odour")


# ── Pure helpers ────────────────────────────────────────────


def compute_aggregates(
    items: Sequence[tuple[Mapping, int]],
    bag_weight_kg: float | None = None,
) -> dict:
    """Totals and bags-weighted means for ``(attributes, bags)`` pairs.

    Each numeric attribute is averaged over the batches that carry it,
    weighted by their bags; it is None when no batch carries it.  Values are
    not rounded.
    """
    bag_weight_kg = settings.bag_weight_kg if bag_weight_kg is None else bag_weight_kg
    total_bags = sum(bags for _, bags in items)
    result = {
        "total_bags": total_bags,
        "total_weight_kg": total_bags * bag_weight_kg,
    }
    for name in NUMERIC_ATTRIBUTES:
        weighted = 0.0
        weight = 0
        for attributes, bags in items:
            value = attributes.get(name)
            if value is None:
                continue
            weighted += value * bags
            weight += bags
        result[f"average_{name}"] = weighted / weight if weight else None
    return result


def validate_targets(body: BlendCreate) -> None:
    if body.target_bloom_min > body.target_bloom_max:
        raise InvalidRangeError(body.target_bloom_min, body.target_bloom_max)
    if body.bloom_selection_mode == BloomSelectionMode.TARGET_MEAN:
        if body.target_mean_bloom is None:
            raise BusinessLogicError(
                "target_mean_bloom is required in target-mean mode",
                error_code="TARGET_MEAN_REQUIRED",
                details={"field": "target_mean_bloom"},
            )
    if body.target_mean_bloom is not None and not (
        body.target_bloom_min <= body.target_mean_bloom <= body.target_bloom_max
    ):
        raise BusinessLogicError(
            f"Target mean bloom {body.target_mean_bloom} is outside "
            f"{body.target_bloom_min}-{body.target_bloom_max}",
            error_code="INVALID_RANGE",
            details={"field": "target_mean_bloom", "value": body.target_mean_bloom},
        )


def validate_selections(body: BlendCreate) -> list[str]:
    """Check bags and duplicates; return batch ids in selection order."""
    if not body.selections:
        raise InvalidQuantityError("A blend needs at least one batch", field="selections")

    seen: set[str] = set()
    for line in body.selections:
        if line.bags <= 0:
            raise InvalidQuantityError(
                f"Bags for batch {line.batch_id} must be a positive whole number",
                batch_id=line.batch_id,
            )
        if line.batch_id in seen:
            raise InvalidQuantityError(
                f"Batch {line.batch_id} is selected more than once",
                batch_id=line.batch_id,
                field="batch_id",
            )
        seen.add(line.batch_id)
    return [line.batch_id for line in body.selections]


# ── Create ──────────────────────────────────────────────────


async def create_blend(db: AsyncSession, body: BlendCreate, actor: str = "system") -> Blend:
    """Record a blend and mark its batches used, all or nothing.

    Raises:
        InvalidRangeError, InvalidQuantityError, ResourceNotFoundError,
        BatchUnavailableError, DuplicateLotNumberError,
        BusinessLogicError (archived fiscal year), TransactionConflictError.
    """
    validate_targets(body)
    batch_ids = validate_selections(body)
    fiscal_year = counters.validate_fiscal_year(body.fiscal_year or current_fiscal_year())

    # ── Resolve and check batches ─────────────────────────────
    rows = (
        await db.execute(
            select(Batch).where(Batch.id.in_(batch_ids)).execution_options(populate_existing=True)
        )
    ).scalars().all()
    batches = {b.id: b for b in rows}
    for batch_id in batch_ids:
        batch = batches.get(batch_id)
        if batch is None:
            raise ResourceNotFoundError("Batch", batch_id)
        reason = batch_registry.unavailable_reason(batch)
        if reason:
            raise BatchUnavailableError(batch.id, reason, batch.batch_number)
        if batch.fiscal_year != fiscal_year:
            raise BatchUnavailableError(
                batch.id, f"different fiscal year ({batch.fiscal_year})", batch.batch_number
            )

    if body.lot_number:
        await _check_lot_number(db, fiscal_year, body.lot_number)

    snapshots = [(batches[line.batch_id].quality_snapshot(), line.bags) for line in body.selections]
    aggregates = compute_aggregates(snapshots)
    targets = body.additional_targets.model_dump() if body.additional_targets else {}

    now = datetime.utcnow()
    lot_number = body.lot_number
    try:
        async with db.begin_nested():
            serial = await counters.allocate_number(db, fiscal_year, BLEND_SEQUENCE)
            lot_number = body.lot_number or format_lot_number(serial, now)

            blend = Blend(
                fiscal_year=fiscal_year,
                lot_number=lot_number,
                serial_number=serial,
                blend_date=now,
                target_bloom_min=body.target_bloom_min,
                target_bloom_max=body.target_bloom_max,
                target_mean_bloom=body.target_mean_bloom,
                bloom_selection_mode=body.bloom_selection_mode.value,
                target_mesh=body.target_mesh,
                status=BlendStatus.COMPLETED.value,
                notes=body.notes,
                created_by=actor,
                **{f"target_{name}": targets.get(name) for name in TARGET_FIELDS},
                **aggregates,
            )
            blend.selected_batches = [
                BlendBatch(
                    position=position,
                    batch_id=line.batch_id,
                    batch_number=batches[line.batch_id].batch_number,
                    batch_type=batches[line.batch_id].batch_type,
                    bags=line.bags,
                    **batches[line.batch_id].quality_snapshot(),
                )
                for position, line in enumerate(body.selections, start=1)
            ]
            db.add(blend)
            await db.flush()

            result = await db.execute(
                update(Batch)
                .where(
                    Batch.id.in_(batch_ids),
                    Batch.fiscal_year == fiscal_year,
                    Batch.is_used == False,  # noqa: E712
                    Batch.is_active == True,  # noqa: E712
                    Batch.is_on_hold == False,  # noqa: E712
                )
                .values(
                    is_used=True,
                    used_in_blend_id=blend.id,
                    used_in_ref=lot_number,
                    used_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != len(batch_ids):
                raise await _lost_batch(db, batch_ids, blend.id)
    except IntegrityError as exc:
        raise DuplicateLotNumberError(lot_number, fiscal_year) from exc
    except OperationalError as exc:
        raise as_conflict(exc) from exc

    # Bring the loaded batches in line with the UPDATE above
    for batch_id in batch_ids:
        batch = batches[batch_id]
        for key, value in (
            ("is_used", True),
            ("used_in_blend_id", blend.id),
            ("used_in_ref", lot_number),
            ("used_at", now),
            ("updated_at", now),
        ):
            set_committed_value(batch, key, value)

    logger.info(
        "Created blend %s (serial %d, %s): %d batches, %d bags, average bloom %s",
        lot_number, serial, fiscal_year, len(batch_ids),
        aggregates["total_bags"], aggregates["average_bloom"],
    )
    await log_activity(
        db, actor,
        action="created",
        entity_type="blend",
        entity_id=blend.id,
        entity_code=lot_number,
        summary=f"Created blend {lot_number} ({aggregates['total_bags']} bags)",
        details={"batch_ids": batch_ids, "average_bloom": aggregates["average_bloom"]},
    )
    return blend


async def _check_lot_number(db: AsyncSession, fiscal_year: str, lot_number: str) -> None:
    exists = (
        await db.execute(
            select(func.count(Blend.id)).where(
                Blend.fiscal_year == fiscal_year, Blend.lot_number == lot_number
            )
        )
    ).scalar()
    if exists:
        raise DuplicateLotNumberError(lot_number, fiscal_year)


async def _lost_batch(db: AsyncSession, batch_ids: list[str], blend_id: str) -> BatchUnavailableError:
    """Build the error for the first selected batch taken by another writer."""
    taken = (
        await db.execute(
            select(Batch.id, Batch.batch_number).where(
                Batch.id.in_(batch_ids),
                (Batch.used_in_blend_id != blend_id) | (Batch.used_in_blend_id.is_(None)),
            )
        )
    ).all()
    numbers = {row.id: row.batch_number for row in taken}
    for batch_id in batch_ids:
        if batch_id in numbers:
            logger.warning("Blend lost batch %s to a concurrent writer", batch_id)
            return BatchUnavailableError(batch_id, "taken by another blend", numbers[batch_id])
    return BatchUnavailableError(batch_ids[0], "taken by another blend")


# ── Read / review / delete ──────────────────────────────────


async def get_blend(db: AsyncSession, blend_id: str) -> Blend:
    blend = (
        await db.execute(
            select(Blend).where(Blend.id == blend_id).execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if not blend:
        raise ResourceNotFoundError("Blend", blend_id)
    return blend


async def list_blends(
    db: AsyncSession,
    fiscal_year: str | None = None,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Blend], int]:
    base = select(Blend)
    if fiscal_year:
        base = base.where(Blend.fiscal_year == fiscal_year)
    if status:
        base = base.where(Blend.status == status)

    total = (
        await db.execute(select(func.count()).select_from(base.subquery()))
    ).scalar() or 0
    items = (
        await db.execute(
            base.order_by(Blend.created_at.desc(), Blend.serial_number.desc())
            .limit(limit)
            .offset(offset)
        )
    ).scalars().all()
    return list(items), total


async def update_blend_status(
    db: AsyncSession,
    blend_id: str,
    status: str | BlendStatus,
    reviewed_by: str | None = None,
    notes: str | None = None,
    actor: str = "system",
) -> Blend:
    """Move a blend through draft → completed → approved.

    ``reviewed_at`` is stamped when the blend is approved and cleared
    otherwise.
    """
    try:
        status = BlendStatus(status)
    except ValueError:
        raise BusinessLogicError(
            f"Unknown blend status '{status}'",
            error_code="INVALID_STATUS",
            details={"field": "status", "value": str(status)},
        ) from None

    blend = await get_blend(db, blend_id)
    previous = blend.status
    blend.status = status.value
    blend.reviewed_by = reviewed_by
    blend.reviewed_at = datetime.utcnow() if status == BlendStatus.APPROVED else None
    if notes is not None:
        blend.notes = notes
    blend.updated_at = datetime.utcnow()
    await db.flush()

    await log_activity(
        db, actor,
        action="status_changed",
        entity_type="blend",
        entity_id=blend.id,
        entity_code=blend.lot_number,
        summary=f"Blend {blend.lot_number}: {previous} → {status.value}",
        details={"from": previous, "to": status.value, "reviewed_by": reviewed_by},
    )
    return blend


async def delete_blend(db: AsyncSession, blend_id: str, actor: str = "system") -> int:
    """Delete a blend and make its batches available again.

    Returns:
        Number of batches released.
    """
    blend = await get_blend(db, blend_id)
    lot_number = blend.lot_number
    released = await batch_registry.release_blend_batches(db, blend.id)
    await db.delete(blend)
    await db.flush()

    logger.info("Deleted blend %s, released %d batches", lot_number, released)
    await log_activity(
        db, actor,
        action="deleted",
        entity_type="blend",
        entity_id=blend_id,
        entity_code=lot_number,
        summary=f"Deleted blend {lot_number}; released {released} batches",
    )
    return released


# ── Suggestion ──────────────────────────────────────────────


async def suggest_blend(db: AsyncSession, body: OptimizeRequest) -> OptimizationResult:
    """Run the optimizer over the currently available batches."""
    fiscal_year = counters.validate_fiscal_year(body.fiscal_year or current_fiscal_year())
    batch_type = None if body.include_outsource else BatchType.PRODUCTION.value
    available = await batch_registry.list_available(db, fiscal_year, batch_type)
    targets = body.additional_targets.model_dump() if body.additional_targets else None

    return optimize_selection(
        [Candidate.from_batch(b) for b in available],
        body.target_bloom_min,
        body.target_bloom_max,
        target_mean_bloom=body.target_mean_bloom,
        target_bags=body.target_bags,
        pre_selected_ids=body.pre_selected_ids,
        additional_targets=targets,
        bags_per_batch=settings.bags_per_batch,
        bag_weight_kg=settings.bag_weight_kg,
    )
