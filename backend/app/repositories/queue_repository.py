from datetime import datetime
from typing import Any, Dict, Iterable

from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.base import utcnow
from app.models.enums import QueueItemStatus
from app.models.queue import WebhookQueueItem

ERROR_MESSAGE_LIMIT = 1000

# failed items stay claimable until their attempts run out
CLAIMABLE_STATUSES = (QueueItemStatus.pending, QueueItemStatus.failed)


class QueueRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, item_id: int) -> WebhookQueueItem | None:
        result = await self.session.execute(select(WebhookQueueItem).where(WebhookQueueItem.id == item_id))
        return result.scalar_one_or_none()

    async def enqueue_many(self, entries: Iterable[tuple[int, Dict[str, Any]]]) -> int:
        """Insert one pending item per (job id, payload) pair in a single commit."""
        items = [WebhookQueueItem(job_id=job_id, payload=payload) for job_id, payload in entries]
        if not items:
            return 0
        self.session.add_all(items)
        try:
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        return len(items)

    async def claim_next(self, max_attempts: int) -> WebhookQueueItem | None:
        """Atomically move the oldest claimable item to processing.

        Pending items and failed items with attempts left are claimable; a
        failed item at the attempt ceiling is dead-lettered.

        The candidate lookup and the status transition run as one UPDATE
        statement. PostgreSQL skips rows locked by concurrent claimers; SQLite
        serialises the statement behind its write lock. Either way no two
        callers can receive the same item.
        """
        candidate = (
            select(WebhookQueueItem.id)
            .where(
                WebhookQueueItem.status.in_(CLAIMABLE_STATUSES),
                WebhookQueueItem.processing_attempts < max_attempts,
            )
            .order_by(WebhookQueueItem.created_at, WebhookQueueItem.id)
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        now = utcnow()
        statement = (
            update(WebhookQueueItem)
            .where(
                WebhookQueueItem.id == candidate,
                WebhookQueueItem.status.in_(CLAIMABLE_STATUSES),
                WebhookQueueItem.processing_attempts < max_attempts,
            )
            .values(
                status=QueueItemStatus.processing,
                processing_attempts=WebhookQueueItem.processing_attempts + 1,
                last_attempt=now,
                updated_at=now,
            )
            .returning(WebhookQueueItem)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.session.execute(statement)
            item = result.scalars().first()
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        return item

    async def report_outcome(
        self,
        item_id: int,
        status: QueueItemStatus,
        error_message: str | None = None,
    ) -> bool:
        result = await self.session.execute(
            update(WebhookQueueItem)
            .where(
                WebhookQueueItem.id == item_id,
                WebhookQueueItem.status == QueueItemStatus.processing,
            )
            .values(
                status=status,
                error_message=error_message[:ERROR_MESSAGE_LIMIT] if error_message else None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return bool(result.rowcount)

    async def requeue_stale(self, stale_before: datetime, max_attempts: int) -> tuple[int, int]:
        """Return items stuck in processing to pending, or to failed once exhausted."""
        stale = and_(
            WebhookQueueItem.status == QueueItemStatus.processing,
            WebhookQueueItem.last_attempt < stale_before,
        )
        now = utcnow()
        requeued = await self.session.execute(
            update(WebhookQueueItem)
            .where(stale, WebhookQueueItem.processing_attempts < max_attempts)
            .values(
                status=QueueItemStatus.pending,
                error_message="Requeued after stale processing",
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        exhausted = await self.session.execute(
            update(WebhookQueueItem)
            .where(stale, WebhookQueueItem.processing_attempts >= max_attempts)
            .values(
                status=QueueItemStatus.failed,
                error_message="Stale in processing with no attempts left",
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return requeued.rowcount or 0, exhausted.rowcount or 0

    async def count_by_status(self) -> dict[str, int]:
        result = await self.session.execute(
            select(WebhookQueueItem.status, func.count()).group_by(WebhookQueueItem.status)
        )
        counts: dict[str, int] = {}
        for status, total in result.all():
            key = status.value if isinstance(status, QueueItemStatus) else str(status)
            counts[key] = total
        return counts
