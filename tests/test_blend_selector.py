"""Blend Selector tests: validation, aggregation, atomic commit, review."""

import asyncio

import pytest
from sqlalchemy import func, select

from gelatin_erp.middleware.exceptions import (
    BatchUnavailableError,
    BusinessLogicError,
    DuplicateLotNumberError,
    InvalidQuantityError,
    InvalidRangeError,
    ResourceNotFoundError,
    TransactionConflictError,
)
from gelatin_erp.models.blend import Blend, BlendBatch
from gelatin_erp.schemas.blend import BlendCreate, OptimizeRequest
from gelatin_erp.services import batch_registry, blend_selector
from gelatin_erp.services import fiscal_year as counters
from gelatin_erp.services.blend_selector import compute_aggregates

FISCAL_YEAR = "2025-26"


def blend_request(batches, bags=10, **overrides) -> BlendCreate:
    body = {
        "target_bloom_min": 190,
        "target_bloom_max": 210,
        "fiscal_year": FISCAL_YEAR,
        "selections": [{"batch_id": b.id, "bags": bags} for b in batches],
    }
    body.update(overrides)
    return BlendCreate(**body)


@pytest.mark.unit
class TestAggregates:

    def test_equal_bags_is_arithmetic_mean(self):
        result = compute_aggregates(
            [({"bloom": 180}, 10), ({"bloom": 200}, 10), ({"bloom": 220}, 10)],
            bag_weight_kg=25,
        )
        assert result["total_bags"] == 30
        assert result["total_weight_kg"] == 750
        assert result["average_bloom"] == pytest.approx(200, abs=1e-6)

    def test_bags_weighted(self):
        result = compute_aggregates([({"bloom": 180}, 5), ({"bloom": 220}, 15)])
        assert result["average_bloom"] == pytest.approx((180 * 5 + 220 * 15) / 20, abs=1e-6)

    def test_missing_attribute_excluded(self):
        result = compute_aggregates([
            ({"bloom": 200, "viscosity": 3.0}, 10),
            ({"bloom": 220, "viscosity": None}, 10),
        ])
        assert result["average_viscosity"] == pytest.approx(3.0)
        assert result["average_ph"] is None

    def test_values_are_not_rounded(self):
        result = compute_aggregates([({"bloom": 200}, 10), ({"bloom": 201}, 10), ({"bloom": 201}, 10)])
        assert result["average_bloom"] == pytest.approx(200.6666666, abs=1e-6)


@pytest.mark.integration
@pytest.mark.asyncio
class TestCreateBlend:

    async def test_end_to_end(self, make_batch, db_session):
        batches = [await make_batch(bloom) for bloom in (180, 200, 220)]

        blend = await blend_selector.create_blend(db_session, blend_request(batches), actor="mixer")

        assert blend.average_bloom == pytest.approx(200, abs=1e-6)
        assert blend.total_bags == 30
        assert blend.total_weight_kg == 750
        assert blend.serial_number == 1
        assert blend.lot_number.startswith("HG-")
        assert blend.lot_number.endswith("001")
        assert blend.status == "completed"
        assert blend.created_by == "mixer"
        assert [s.batch_number for s in blend.selected_batches] == [1, 2, 3]
        assert [s.position for s in blend.selected_batches] == [1, 2, 3]

        for batch in batches:
            fresh = await batch_registry.get_batch(db_session, batch.id)
            assert fresh.is_used
            assert fresh.used_in_blend_id == blend.id
            assert fresh.used_in_ref == blend.lot_number

        with pytest.raises(BatchUnavailableError) as exc_info:
            await blend_selector.create_blend(db_session, blend_request(batches[:1]))
        assert exc_info.value.batch_id == batches[0].id

    async def test_weighted_average_stored(self, make_batch, db_session):
        low = await make_batch(180)
        high = await make_batch(220)
        body = BlendCreate(
            target_bloom_min=190,
            target_bloom_max=220,
            fiscal_year=FISCAL_YEAR,
            selections=[{"batch_id": low.id, "bags": 5}, {"batch_id": high.id, "bags": 15}],
        )
        blend = await blend_selector.create_blend(db_session, body)
        assert blend.average_bloom == pytest.approx(210, abs=1e-6)
        assert blend.total_weight_kg == 500

    async def test_optional_attribute_averages(self, make_batch, db_session):
        a = await make_batch(200, attributes={"viscosity": 3.2, "color": "Light Yellow"})
        b = await make_batch(200)
        blend = await blend_selector.create_blend(db_session, blend_request([a, b]))
        assert blend.average_viscosity == pytest.approx(3.2)
        assert blend.average_percentage is None
        assert blend.selected_batches[0].color == "Light Yellow"

    async def test_unavailable_batch_leaves_no_trace(self, make_batch, db_session):
        free = [await make_batch(200), await make_batch(205)]
        used = await make_batch(210)
        await batch_registry.mark_used(db_session, used.id, "ORDER-9")

        with pytest.raises(BatchUnavailableError) as exc_info:
            await blend_selector.create_blend(db_session, blend_request(free + [used]))
        assert exc_info.value.details["batch_id"] == used.id

        for batch in free:
            assert not (await batch_registry.get_batch(db_session, batch.id)).is_used
        assert (await db_session.execute(select(func.count(Blend.id)))).scalar() == 0

    async def test_batch_lost_during_commit_rolls_back(self, make_batch, db_session, monkeypatch):
        free = await make_batch(200)
        taken = await make_batch(205)
        await batch_registry.mark_used(db_session, taken.id, "ORDER-3")
        # Let the pre-check pass so the conditional update detects the loss
        monkeypatch.setattr(batch_registry, "unavailable_reason", lambda batch: None)

        with pytest.raises(BatchUnavailableError) as exc_info:
            await blend_selector.create_blend(db_session, blend_request([free, taken]))
        assert exc_info.value.batch_id == taken.id

        assert not (await batch_registry.get_batch(db_session, free.id)).is_used
        assert (await db_session.execute(select(func.count(Blend.id)))).scalar() == 0
        assert (await db_session.execute(select(func.count(BlendBatch.id)))).scalar() == 0
        # the blend serial was given back with the rolled-back savepoint
        assert await counters.peek_next_number(db_session, FISCAL_YEAR, "blend") == 1

    async def test_on_hold_batch_unavailable(self, make_batch, db_session):
        held = await make_batch(200, is_on_hold=True)
        with pytest.raises(BatchUnavailableError):
            await blend_selector.create_blend(db_session, blend_request([held]))

    async def test_archived_batch_unavailable(self, make_batch, db_session):
        old = await make_batch(200)
        await batch_registry.archive_fiscal_year(db_session, FISCAL_YEAR, "2026-27")
        with pytest.raises(BatchUnavailableError):
            await blend_selector.create_blend(
                db_session, blend_request([old], fiscal_year="2026-27")
            )

    async def test_batch_from_other_fiscal_year_unavailable(self, make_batch, db_session):
        current = await make_batch(200)
        previous = await make_batch(205, fiscal_year="2024-25")
        with pytest.raises(BatchUnavailableError) as exc_info:
            await blend_selector.create_blend(db_session, blend_request([current, previous]))
        assert exc_info.value.batch_id == previous.id
        assert exc_info.value.details["reason"] == "different fiscal year (2024-25)"
        assert not (await batch_registry.get_batch(db_session, current.id)).is_used

    async def test_unknown_batch(self, db_session):
        body = BlendCreate(
            target_bloom_min=190,
            target_bloom_max=210,
            fiscal_year=FISCAL_YEAR,
            selections=[{"batch_id": "missing", "bags": 10}],
        )
        with pytest.raises(ResourceNotFoundError):
            await blend_selector.create_blend(db_session, body)

    async def test_invalid_range(self, make_batch, db_session):
        batch = await make_batch(200)
        with pytest.raises(InvalidRangeError) as exc_info:
            await blend_selector.create_blend(
                db_session, blend_request([batch], target_bloom_min=250, target_bloom_max=200)
            )
        assert exc_info.value.error_code == "INVALID_RANGE"

    async def test_mean_outside_range(self, make_batch, db_session):
        batch = await make_batch(200)
        with pytest.raises(BusinessLogicError) as exc_info:
            await blend_selector.create_blend(
                db_session, blend_request([batch], target_mean_bloom=240)
            )
        assert exc_info.value.error_code == "INVALID_RANGE"

    async def test_target_mean_mode_needs_mean(self, make_batch, db_session):
        batch = await make_batch(200)
        with pytest.raises(BusinessLogicError) as exc_info:
            await blend_selector.create_blend(
                db_session, blend_request([batch], bloom_selection_mode="target-mean")
            )
        assert exc_info.value.error_code == "TARGET_MEAN_REQUIRED"

    @pytest.mark.parametrize("bags", [0, -10])
    async def test_non_positive_bags(self, make_batch, db_session, bags):
        batch = await make_batch(200)
        with pytest.raises(InvalidQuantityError) as exc_info:
            await blend_selector.create_blend(db_session, blend_request([batch], bags=bags))
        assert exc_info.value.batch_id == batch.id

    async def test_empty_selection(self, db_session):
        with pytest.raises(InvalidQuantityError):
            await blend_selector.create_blend(db_session, blend_request([]))

    async def test_duplicate_selection(self, make_batch, db_session):
        batch = await make_batch(200)
        with pytest.raises(InvalidQuantityError):
            await blend_selector.create_blend(db_session, blend_request([batch, batch]))

    async def test_duplicate_lot_number(self, make_batch, db_session):
        first = await make_batch(200)
        second = await make_batch(200)
        await blend_selector.create_blend(db_session, blend_request([first], lot_number="HG-LOT-1"))
        with pytest.raises(DuplicateLotNumberError):
            await blend_selector.create_blend(
                db_session, blend_request([second], lot_number="HG-LOT-1")
            )
        assert not (await batch_registry.get_batch(db_session, second.id)).is_used

    async def test_serials_increase(self, make_batch, db_session):
        a = await make_batch(200)
        b = await make_batch(200)
        first = await blend_selector.create_blend(db_session, blend_request([a]))
        second = await blend_selector.create_blend(db_session, blend_request([b]))
        assert (first.serial_number, second.serial_number) == (1, 2)
        assert first.lot_number != second.lot_number

    async def test_snapshot_survives_batch_edit(self, make_batch, db_session):
        batch = await make_batch(200)
        blend = await blend_selector.create_blend(db_session, blend_request([batch]))
        await batch_registry.update_batch(db_session, batch.id, {"bloom": 150})

        stored = await blend_selector.get_blend(db_session, blend.id)
        assert stored.selected_batches[0].bloom == 200
        assert stored.average_bloom == pytest.approx(200)


@pytest.mark.integration
@pytest.mark.asyncio
class TestBlendReview:

    async def test_status_workflow(self, make_batch, db_session):
        blend = await blend_selector.create_blend(db_session, blend_request([await make_batch(200)]))

        approved = await blend_selector.update_blend_status(
            db_session, blend.id, "approved", reviewed_by="qa-manager"
        )
        assert approved.status == "approved"
        assert approved.reviewed_by == "qa-manager"
        assert approved.reviewed_at is not None

        draft = await blend_selector.update_blend_status(db_session, blend.id, "draft", notes="recheck")
        assert draft.reviewed_at is None
        assert draft.notes == "recheck"

    async def test_unknown_status(self, make_batch, db_session):
        blend = await blend_selector.create_blend(db_session, blend_request([await make_batch(200)]))
        with pytest.raises(BusinessLogicError) as exc_info:
            await blend_selector.update_blend_status(db_session, blend.id, "shipped")
        assert exc_info.value.error_code == "INVALID_STATUS"

    async def test_delete_releases_batches(self, make_batch, db_session):
        batches = [await make_batch(bloom) for bloom in (190, 200, 210)]
        blend = await blend_selector.create_blend(db_session, blend_request(batches))

        released = await blend_selector.delete_blend(db_session, blend.id)
        assert released == 3
        for batch in batches:
            assert (await batch_registry.get_batch(db_session, batch.id)).is_available
        with pytest.raises(ResourceNotFoundError):
            await blend_selector.get_blend(db_session, blend.id)
        assert (await db_session.execute(select(func.count(BlendBatch.id)))).scalar() == 0

    async def test_list_blends(self, make_batch, db_session):
        for bloom in (190, 200):
            await blend_selector.create_blend(db_session, blend_request([await make_batch(bloom)]))

        items, total = await blend_selector.list_blends(db_session, fiscal_year=FISCAL_YEAR)
        assert total == 2
        assert len(items) == 2
        items, total = await blend_selector.list_blends(db_session, status="approved")
        assert total == 0


@pytest.mark.integration
@pytest.mark.asyncio
class TestSuggestBlend:

    async def test_suggestion_uses_available_production_batches(self, make_batch, db_session):
        for bloom in (150, 180, 200, 220, 260):
            await make_batch(bloom)
        used = await make_batch(200)
        await batch_registry.mark_used(db_session, used.id, "ORDER-1")
        await make_batch(201, batch_type="outsource")

        result = await blend_selector.suggest_blend(
            db_session,
            OptimizeRequest(
                target_bloom_min=195,
                target_bloom_max=205,
                target_bags=30,
                fiscal_year=FISCAL_YEAR,
            ),
        )
        assert len(result.selections) == 3
        assert result.total_bags == 30
        assert result.within_range
        assert used.id not in {c.id for c in result.selections}
        assert all(c.batch_type == "production" for c in result.selections)


@pytest.mark.integration
@pytest.mark.slow
@pytest.mark.asyncio
class TestConcurrentBlends:

    async def test_batch_goes_to_exactly_one_blend(self, session_factory):
        async with session_factory() as session:
            batch = await batch_registry.create_batch(
                session, {"bloom": 200}, FISCAL_YEAR, "production"
            )
            await session.commit()

        async def attempt() -> str:
            async with session_factory() as session:
                try:
                    await blend_selector.create_blend(session, blend_request([batch]))
                    await session.commit()
                except (BatchUnavailableError, TransactionConflictError) as exc:
                    await session.rollback()
                    return type(exc).__name__
                return "created"

        outcomes = await asyncio.gather(*(attempt() for _ in range(5)))
        assert outcomes.count("created") == 1

        async with session_factory() as session:
            blends = (await session.execute(select(Blend))).scalars().all()
            stored = await batch_registry.get_batch(session, batch.id)
        assert len(blends) == 1
        assert stored.used_in_blend_id == blends[0].id
