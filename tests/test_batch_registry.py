"""Batch Registry service tests: numbering, usage, reports."""

import asyncio

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gelatin_erp.middleware.exceptions import (
    AlreadyUsedError,
    BatchUnavailableError,
    BusinessLogicError,
    DuplicateBatchNumberError,
    ResourceNotFoundError,
)
from gelatin_erp.models.activity_log import ActivityLog
from gelatin_erp.models.batch import Batch
from gelatin_erp.services import batch_registry
from gelatin_erp.services import fiscal_year as counters
from gelatin_erp.utils.activity import log_activity
from gelatin_erp.utils.transactions import retry_on_conflict

FISCAL_YEAR = "2025-26"


@pytest.mark.integration
@pytest.mark.asyncio
class TestCreateBatch:

    async def test_numbers_are_sequential_per_type(self, make_batch):
        first = await make_batch(180)
        second = await make_batch(200)
        outsource = await make_batch(220, batch_type="outsource")

        assert (first.batch_number, second.batch_number) == (1, 2)
        assert outsource.batch_number == 1
        assert outsource.is_outsource
        assert first.is_available

    async def test_explicit_number_moves_counter_forward(self, make_batch, db_session):
        await make_batch(200)
        explicit = await make_batch(200, batch_number=10)
        after = await make_batch(200)

        assert explicit.batch_number == 10
        assert after.batch_number == 11
        assert await counters.peek_next_number(db_session, FISCAL_YEAR, "production") == 12

    async def test_explicit_number_below_counter_keeps_counter(self, make_batch, db_session):
        for _ in range(3):
            await make_batch(200)
        await batch_registry.delete_batch(db_session, (await make_batch(200)).id)

        # 4 was issued and deleted; it is free again for an explicit entry
        reused = await make_batch(200, batch_number=4)
        assert reused.batch_number == 4
        assert (await make_batch(200)).batch_number == 5

    async def test_duplicate_explicit_number(self, make_batch):
        await make_batch(200, batch_number=5)
        with pytest.raises(DuplicateBatchNumberError) as exc_info:
            await make_batch(210, batch_number=5)
        assert exc_info.value.error_code == "DUPLICATE_BATCH_NUMBER"
        assert exc_info.value.status_code == 409

    async def test_same_number_in_other_fiscal_year(self, make_batch):
        await make_batch(200, batch_number=1)
        other = await make_batch(200, batch_number=1, fiscal_year="2026-27")
        assert other.fiscal_year == "2026-27"

    async def test_deleted_number_not_recycled(self, make_batch, db_session):
        first = await make_batch(200)
        await batch_registry.delete_batch(db_session, first.id)
        assert (await make_batch(200)).batch_number == 2

    async def test_counter_seeded_past_existing_rows(self, db_session: AsyncSession):
        db_session.add(Batch(
            batch_type="production", batch_number=7, fiscal_year=FISCAL_YEAR,
            bloom=200, is_used=False, is_active=True, is_on_hold=False,
        ))
        await db_session.flush()

        batch = await batch_registry.create_batch(db_session, {"bloom": 190}, FISCAL_YEAR, "production")
        assert batch.batch_number == 8

    async def test_invalid_fiscal_year(self, make_batch):
        with pytest.raises(BusinessLogicError) as exc_info:
            await make_batch(200, fiscal_year="2025-27")
        assert exc_info.value.error_code == "INVALID_FISCAL_YEAR"

    async def test_unknown_attribute(self, make_batch):
        with pytest.raises(BusinessLogicError) as exc_info:
            await make_batch(200, attributes={"mesh": 20})
        assert exc_info.value.error_code == "UNKNOWN_ATTRIBUTE"

    async def test_unknown_batch_type(self, make_batch):
        with pytest.raises(BusinessLogicError) as exc_info:
            await make_batch(200, batch_type="imported")
        assert exc_info.value.error_code == "INVALID_BATCH_TYPE"

    async def test_creation_is_logged(self, make_batch, db_session):
        batch = await make_batch(200, actor="qa-lab")
        entry = (
            await db_session.execute(select(ActivityLog).where(ActivityLog.entity_id == batch.id))
        ).scalar_one()
        assert entry.actor == "qa-lab"
        assert entry.action == "created"
        assert entry.entity_code == f"{FISCAL_YEAR}/production/1"


@pytest.mark.integration
@pytest.mark.slow
@pytest.mark.asyncio
class TestConcurrentNumbering:

    async def test_concurrent_creates_get_distinct_numbers(self, session_factory):
        async def create_one(i: int) -> int:
            async def unit_of_work():
                async with session_factory() as session:
                    batch = await batch_registry.create_batch(
                        session, {"bloom": 150 + i}, FISCAL_YEAR, "production"
                    )
                    await session.commit()
                    return batch.batch_number
            return await retry_on_conflict(unit_of_work, attempts=3)

        numbers = await asyncio.gather(*(create_one(i) for i in range(10)))
        assert sorted(numbers) == list(range(1, 11))


@pytest.mark.integration
@pytest.mark.asyncio
class TestActivityLogFailure:

    async def test_failed_log_write_keeps_the_batch(self, session_factory, caplog):
        async with session_factory() as session:
            batch = await batch_registry.create_batch(
                session, {"bloom": 200}, FISCAL_YEAR, "production"
            )
            # details that cannot be stored as JSON make the log insert fail
            await log_activity(
                session, "qa-lab",
                action="checked",
                entity_type="batch",
                entity_id=batch.id,
                details={"reading": object()},
            )
            await session.commit()

        async with session_factory() as session:
            stored = (await session.execute(select(Batch))).scalars().all()
            actions = (
                await session.execute(select(ActivityLog.action).where(ActivityLog.entity_id == batch.id))
            ).scalars().all()

        assert [b.id for b in stored] == [batch.id]
        assert actions == ["created"]
        assert "Failed to record activity checked" in caplog.text


@pytest.mark.integration
@pytest.mark.asyncio
class TestUsage:

    async def test_mark_used_and_release(self, make_batch, db_session):
        batch = await make_batch(200)
        used = await batch_registry.mark_used(db_session, batch.id, "ORDER-17")
        assert used.is_used
        assert used.used_in_ref == "ORDER-17"
        assert used.used_at is not None

        released = await batch_registry.mark_available(db_session, batch.id)
        assert not released.is_used
        assert released.used_in_ref is None
        assert released.used_in_blend_id is None
        assert released.used_at is None

    async def test_mark_used_twice(self, make_batch, db_session):
        batch = await make_batch(200)
        await batch_registry.mark_used(db_session, batch.id, "ORDER-1")
        with pytest.raises(AlreadyUsedError) as exc_info:
            await batch_registry.mark_used(db_session, batch.id, "ORDER-2")
        assert exc_info.value.details["batch_id"] == batch.id

    async def test_mark_used_on_hold(self, make_batch, db_session):
        batch = await make_batch(200, is_on_hold=True)
        with pytest.raises(BatchUnavailableError):
            await batch_registry.mark_used(db_session, batch.id, "ORDER-1")

    async def test_mark_used_missing(self, db_session):
        with pytest.raises(ResourceNotFoundError):
            await batch_registry.mark_used(db_session, "no-such-batch", "ORDER-1")

    async def test_delete_used_batch_blocked(self, make_batch, db_session):
        batch = await make_batch(200)
        await batch_registry.mark_used(db_session, batch.id, "ORDER-1")
        with pytest.raises(AlreadyUsedError):
            await batch_registry.delete_batch(db_session, batch.id)

    async def test_list_available(self, make_batch, db_session):
        b1 = await make_batch(180)
        b2 = await make_batch(200)
        await make_batch(210, is_on_hold=True)
        b4 = await make_batch(220)
        o1 = await make_batch(190, batch_type="outsource")
        await batch_registry.mark_used(db_session, b2.id, "ORDER-1")

        production = await batch_registry.list_available(db_session, FISCAL_YEAR, "production")
        assert [b.id for b in production] == [b1.id, b4.id]

        everything = await batch_registry.list_available(db_session, FISCAL_YEAR)
        assert {b.id for b in everything} == {b1.id, b4.id, o1.id}
        assert [b.batch_number for b in everything] == sorted(b.batch_number for b in everything)


@pytest.mark.integration
@pytest.mark.asyncio
class TestUpdateBatch:

    async def test_update_quality(self, make_batch, db_session):
        batch = await make_batch(200)
        updated = await batch_registry.update_batch(db_session, batch.id, {"bloom": 205, "ph": 5.4})
        assert updated.bloom == 205
        assert updated.ph == 5.4

    async def test_numbering_fields_locked(self, make_batch, db_session):
        batch = await make_batch(200)
        with pytest.raises(BusinessLogicError) as exc_info:
            await batch_registry.update_batch(db_session, batch.id, {"batch_number": 99})
        assert exc_info.value.error_code == "FIELD_NOT_EDITABLE"


@pytest.mark.integration
@pytest.mark.asyncio
class TestReports:

    async def test_missing_batches(self, make_batch, db_session):
        for number in (1, 2, 3, 5, 8, 9, 10):
            await make_batch(200, batch_number=number)

        report = await batch_registry.missing_batches(db_session, FISCAL_YEAR, "production")
        assert report["highest_batch_number"] == 10
        assert report["missing"] == [4, 6, 7]
        assert report["ranges"] == [4, "6-7"]

    async def test_missing_batches_empty_partition(self, db_session):
        report = await batch_registry.missing_batches(db_session, FISCAL_YEAR, "outsource")
        assert report["highest_batch_number"] == 0
        assert report["missing"] == []

    async def test_stats(self, make_batch, db_session):
        await make_batch(180, attributes={"viscosity": 3.0})
        used = await make_batch(220, attributes={"viscosity": 4.0, "ph": 5.5})
        await make_batch(200, is_on_hold=True)
        await batch_registry.mark_used(db_session, used.id, "ORDER-1")

        stats = await batch_registry.batch_stats(db_session, FISCAL_YEAR)
        assert stats["total_batches"] == 3
        assert stats["used_batches"] == 1
        assert stats["on_hold_batches"] == 1
        assert stats["available_batches"] == 1
        assert stats["bloom_range"] == {"min": 180, "max": 220}
        assert stats["viscosity_range"] == {"min": 3.0, "max": 4.0}
        assert stats["ph_range"] == {"min": 5.5, "max": 5.5}
        assert stats["percentage_range"] is None

    async def test_stats_empty(self, db_session):
        stats = await batch_registry.batch_stats(db_session, FISCAL_YEAR, "outsource")
        assert stats["total_batches"] == 0
        assert stats["available_batches"] == 0
        assert stats["bloom_range"] is None


@pytest.mark.integration
@pytest.mark.asyncio
class TestBulkDelete:

    async def test_list_by_source_report(self, make_batch, db_session):
        await make_batch(200, source_report="lab-07.pdf")
        await make_batch(205, source_report="lab-07.pdf")
        await make_batch(210, source_report="lab-08.pdf")

        items, total = await batch_registry.list_batches(
            db_session, fiscal_year=FISCAL_YEAR, source_report="lab-07.pdf"
        )
        assert total == 2
        assert [b.bloom for b in items] == [200, 205]

    async def test_delete_by_source_report_keeps_used(self, make_batch, db_session):
        imported = [await make_batch(b, source_report="lab-07.pdf") for b in (200, 205, 210)]
        other = await make_batch(190, source_report="lab-08.pdf")
        await batch_registry.mark_used(db_session, imported[1].id, "ORDER-4")

        result = await batch_registry.delete_batches_by_source_report(db_session, "lab-07.pdf")

        assert result["deleted_count"] == 2
        assert set(result["deleted"]) == {imported[0].id, imported[2].id}
        assert [s["batch_id"] for s in result["skipped"]] == [imported[1].id]
        assert "already used" in result["skipped"][0]["reason"]

        remaining = (await db_session.execute(select(Batch.id))).scalars().all()
        assert set(remaining) == {imported[1].id, other.id}
        # numbers are not recycled
        assert await counters.peek_next_number(db_session, FISCAL_YEAR, "production") == 5

    async def test_delete_by_unknown_report(self, make_batch, db_session):
        await make_batch(200, source_report="lab-07.pdf")
        result = await batch_registry.delete_batches_by_source_report(db_session, "lab-99.pdf")
        assert result == {"deleted_count": 0, "deleted": [], "skipped": []}

    async def test_delete_batches(self, make_batch, db_session):
        free = await make_batch(200)
        used = await make_batch(205)
        await batch_registry.mark_used(db_session, used.id, "ORDER-8")

        result = await batch_registry.delete_batches(
            db_session, [free.id, used.id, "no-such-batch", free.id]
        )
        assert result["deleted"] == [free.id]
        assert [(s["batch_id"], s["reason"]) for s in result["skipped"]] == [
            (used.id, "already used in ORDER-8"),
            ("no-such-batch", "not found"),
        ]
        with pytest.raises(ResourceNotFoundError):
            await batch_registry.get_batch(db_session, free.id)
