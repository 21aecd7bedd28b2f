import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import update

from app.models.base import utcnow
from app.models.enums import QueueItemStatus
from app.models.queue import WebhookQueueItem
from app.repositories.queue_repository import QueueRepository


async def _enqueue(session_factory, count: int, job_id: int = 1) -> None:
    async with session_factory() as session:
        await QueueRepository(session).enqueue_many((job_id, {"signature": f"sig-{n}"}) for n in range(count))


async def _claim(session_factory, max_attempts: int = 3):
    async with session_factory() as session:
        return await QueueRepository(session).claim_next(max_attempts)


@pytest.mark.asyncio
async def test_claim_empty_queue_returns_none(session_factory) -> None:
    assert await _claim(session_factory) is None


@pytest.mark.asyncio
async def test_claim_takes_oldest_and_marks_processing(session_factory) -> None:
    await _enqueue(session_factory, 2)

    item = await _claim(session_factory)

    assert item.payload == {"signature": "sig-0"}
    assert item.status == QueueItemStatus.processing
    assert item.processing_attempts == 1
    assert item.last_attempt is not None


@pytest.mark.asyncio
async def test_concurrent_claims_are_mutually_exclusive(session_factory) -> None:
    await _enqueue(session_factory, 3)

    claimed = await asyncio.gather(*(_claim(session_factory) for _ in range(6)))

    ids = [item.id for item in claimed if item is not None]
    assert len(ids) == 3
    assert len(set(ids)) == 3


@pytest.mark.asyncio
async def test_item_is_not_reclaimed_after_max_attempts(session_factory) -> None:
    await _enqueue(session_factory, 1)

    for attempt in range(1, 3):
        item = await _claim(session_factory, max_attempts=2)
        assert item.processing_attempts == attempt
        async with session_factory() as session:
            await session.execute(
                update(WebhookQueueItem).where(WebhookQueueItem.id == item.id).values(status=QueueItemStatus.pending)
            )
            await session.commit()

    assert await _claim(session_factory, max_attempts=2) is None


@pytest.mark.asyncio
async def test_report_outcome_only_applies_to_processing_items(session_factory) -> None:
    await _enqueue(session_factory, 1)
    item = await _claim(session_factory)

    async with session_factory() as session:
        repo = QueueRepository(session)
        assert await repo.report_outcome(item.id, QueueItemStatus.failed, "x" * 5000) is True
        assert await repo.report_outcome(item.id, QueueItemStatus.processed) is False
        stored = await repo.get(item.id)

    assert stored.status == QueueItemStatus.failed
    assert len(stored.error_message) == 1000


@pytest.mark.asyncio
async def test_failed_item_is_reclaimed_until_attempts_run_out(session_factory) -> None:
    await _enqueue(session_factory, 1)

    for attempt in range(1, 4):
        item = await _claim(session_factory, max_attempts=3)
        assert item is not None
        assert item.processing_attempts == attempt
        async with session_factory() as session:
            await QueueRepository(session).report_outcome(item.id, QueueItemStatus.failed, "connection timeout")

    assert await _claim(session_factory, max_attempts=3) is None
    async with session_factory() as session:
        assert await QueueRepository(session).count_by_status() == {"failed": 1}


@pytest.mark.asyncio
async def test_processed_item_is_never_reclaimed(session_factory) -> None:
    await _enqueue(session_factory, 1)
    item = await _claim(session_factory)
    async with session_factory() as session:
        await QueueRepository(session).report_outcome(item.id, QueueItemStatus.processed)

    assert await _claim(session_factory) is None


def test_timestamps_are_timezone_aware() -> None:
    item = WebhookQueueItem(job_id=1, payload={})

    assert item.created_at.tzinfo is not None
    assert utcnow().tzinfo is not None
    for column in ("created_at", "updated_at", "last_attempt"):
        assert WebhookQueueItem.__table__.c[column].type.timezone is True


@pytest.mark.asyncio
async def test_stale_processing_items_are_swept(session_factory) -> None:
    await _enqueue(session_factory, 2)
    retryable = await _claim(session_factory, max_attempts=3)
    exhausted = await _claim(session_factory, max_attempts=3)
    long_ago = utcnow() - timedelta(hours=1)
    async with session_factory() as session:
        await session.execute(
            update(WebhookQueueItem).where(WebhookQueueItem.id == retryable.id).values(last_attempt=long_ago)
        )
        await session.execute(
            update(WebhookQueueItem)
            .where(WebhookQueueItem.id == exhausted.id)
            .values(last_attempt=long_ago, processing_attempts=3)
        )
        await session.commit()

    async with session_factory() as session:
        repo = QueueRepository(session)
        assert await repo.requeue_stale(utcnow() - timedelta(minutes=15), max_attempts=3) == (1, 1)
        assert await repo.count_by_status() == {"pending": 1, "failed": 1}

    reclaimed = await _claim(session_factory)
    assert reclaimed.id == retryable.id
    assert reclaimed.processing_attempts == 2


@pytest.mark.asyncio
async def test_recent_processing_items_are_left_alone(session_factory) -> None:
    await _enqueue(session_factory, 1)
    await _claim(session_factory)

    async with session_factory() as session:
        repo = QueueRepository(session)
        assert await repo.requeue_stale(utcnow() - timedelta(minutes=15), max_attempts=3) == (0, 0)
        assert await repo.count_by_status() == {"processing": 1}
