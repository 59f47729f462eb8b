"""
Tests for the intake queue's state machine.
"""

import asyncio
from datetime import timedelta

import pytest

from conftest import make_payload
from intake_workflow.constants import IntakeStatus
from intake_workflow.exceptions import RecordNotFound, ValidationError
from intake_workflow.models import IntakeQueue
from intake_workflow.utils import to_object_id, utc_now


@pytest.fixture
def queue(db):
    return IntakeQueue(db)


class TestEnqueue:

    @pytest.mark.asyncio
    async def test_enqueue_creates_pending_record(self, queue):
        record_id = await queue.enqueue(make_payload(date_of_birth="04/12/1985"))
        record = await queue.get(record_id)

        assert record.status == IntakeStatus.PENDING
        assert record.retry_count == 0
        assert record.processing_started is None
        assert record.payload.date_of_birth == "1985-04-12"
        assert record.payload.schema_version == 1

    @pytest.mark.asyncio
    async def test_enqueue_rejects_missing_name(self, queue):
        with pytest.raises(ValidationError) as exc_info:
            await queue.enqueue(make_payload(first_name=""))
        assert "first_name is required" in exc_info.value.errors
        assert await queue.records.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_enqueue_rejects_unparseable_birth_date(self, queue):
        with pytest.raises(ValidationError):
            await queue.enqueue(make_payload(date_of_birth="sometime in spring"))

    @pytest.mark.asyncio
    async def test_duplicate_call_returns_existing_record(self, queue):
        first = await queue.enqueue(make_payload(call_id="call-abc"))
        second = await queue.enqueue(make_payload(call_id="call-abc"))

        assert first == second
        assert await queue.records.count_documents({}) == 1

    @pytest.mark.asyncio
    async def test_get_unknown_or_malformed_id(self, queue):
        assert await queue.get("not-an-object-id") is None
        with pytest.raises(RecordNotFound):
            await queue.require("64b7f0c2a1b2c3d4e5f60718")


class TestClaim:

    @pytest.mark.asyncio
    async def test_claims_oldest_first(self, queue):
        first = await queue.enqueue(make_payload(call_id="c1"))
        await queue.enqueue(make_payload(call_id="c2"))

        claimed = await queue.claim_batch(1)

        assert [r.id for r in claimed] == [first]
        assert claimed[0].status == IntakeStatus.PROCESSING
        assert claimed[0].processing_started is not None

    @pytest.mark.asyncio
    async def test_concurrent_claims_never_overlap(self, queue):
        for i in range(12):
            await queue.enqueue(make_payload(call_id=f"call-{i}"))

        batches = await asyncio.gather(*(queue.claim_batch(5) for _ in range(4)))
        ids = [record.id for batch in batches for record in batch]

        assert len(ids) == 12
        assert len(set(ids)) == 12
        assert await queue.claim_batch(5) == []


class TestTransitions:

    @pytest.mark.asyncio
    async def test_mark_completed_is_idempotent(self, queue):
        record_id = await queue.enqueue(make_payload())
        await queue.claim_batch(1)

        assert await queue.mark_completed(record_id, {"remote_patient_id": "900001"}) is True
        assert await queue.mark_completed(record_id, {"remote_patient_id": "900001"}) is False

        record = await queue.get(record_id)
        assert record.status == IntakeStatus.COMPLETED
        assert record.remote_patient_id == "900001"
        assert record.completed_at is not None
        assert record.error_at is None

    @pytest.mark.asyncio
    async def test_mark_error_is_idempotent(self, queue):
        record_id = await queue.enqueue(make_payload())
        await queue.claim_batch(1)

        assert await queue.mark_error(record_id, {"error": "upstream said no"}) is True
        assert await queue.mark_error(record_id, "again") is False

        record = await queue.get(record_id)
        assert record.status == IntakeStatus.ERROR
        assert record.error == "upstream said no"
        assert record.completed_at is None

    @pytest.mark.asyncio
    async def test_completed_record_cannot_move_to_error(self, queue):
        record_id = await queue.enqueue(make_payload())
        await queue.claim_batch(1)
        await queue.mark_completed(record_id)

        assert await queue.mark_error(record_id, "late failure") is False
        assert (await queue.get(record_id)).status == IntakeStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_pending_record_cannot_complete(self, queue):
        record_id = await queue.enqueue(make_payload())
        assert await queue.mark_completed(record_id) is False

    @pytest.mark.asyncio
    async def test_find_stuck_and_requeue(self, queue):
        record_id = await queue.enqueue(make_payload())
        await queue.claim_batch(1)
        await queue.records.update_one(
            {"_id": to_object_id(record_id)},
            {"$set": {"processing_started": utc_now() - timedelta(minutes=20)}},
        )

        stuck = await queue.find_stuck(timedelta(minutes=15))
        assert [r.id for r in stuck] == [record_id]

        assert await queue.requeue(record_id, IntakeStatus.PROCESSING) is True
        record = await queue.get(record_id)
        assert record.status == IntakeStatus.PENDING
        assert record.processing_started is None
        assert record.retry_count == 1

    @pytest.mark.asyncio
    async def test_recent_processing_is_not_stuck(self, queue):
        await queue.enqueue(make_payload())
        await queue.claim_batch(1)
        assert await queue.find_stuck(timedelta(minutes=15)) == []

    @pytest.mark.asyncio
    async def test_count_by_status(self, queue):
        await queue.enqueue(make_payload(call_id="a"))
        await queue.enqueue(make_payload(call_id="b"))
        await queue.claim_batch(1)

        counts = await queue.count_by_status()
        assert counts == {"pending": 1, "processing": 1, "completed": 0, "error": 0}
