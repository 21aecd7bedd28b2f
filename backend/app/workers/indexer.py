from __future__ import annotations

import asyncio
import signal
import time
from datetime import timedelta
from typing import Callable, Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.crypto import DecryptionError
from app.db.session import SessionLocal, init_db
from app.models.base import utcnow
from app.models.enums import JobStatus, QueueItemStatus
from app.models.queue import WebhookQueueItem
from app.repositories.credential_repository import CredentialRepository
from app.repositories.job_repository import JobRepository
from app.repositories.queue_repository import QueueRepository
from app.services.categories import transform_payload
from app.services.destination import DestinationWriter, PoolRegistry, is_schema_error

SCHEMA_ERROR_DETAIL_LIMIT = 250

Outcome = tuple[QueueItemStatus, Optional[str]]


class IndexerWorker:
    """Claims queue items one per tick and writes them to destination tables.

    Holds everything the worker process shares between ticks: the claim guard,
    the destination pool registry and the set of in-flight processing tasks.
    """

    def __init__(
        self,
        *,
        session_factory: Callable[[], AsyncSession] = SessionLocal,
        pools: PoolRegistry | None = None,
        poll_interval: float | None = None,
        max_attempts: int | None = None,
        grace_period: float | None = None,
        stale_after: float | None = None,
        sweep_interval: float | None = None,
    ):
        self.session_factory = session_factory
        self.pools = pools if pools is not None else PoolRegistry()
        self.poll_interval = poll_interval if poll_interval is not None else settings.worker_poll_interval
        self.max_attempts = max_attempts if max_attempts is not None else settings.max_processing_attempts
        self.grace_period = grace_period if grace_period is not None else settings.shutdown_grace_period
        self.stale_after = stale_after if stale_after is not None else settings.stale_processing_seconds
        self.sweep_interval = sweep_interval if sweep_interval is not None else settings.stale_sweep_interval
        self._claiming = False
        self._tasks: set[asyncio.Task] = set()
        self._stopping = asyncio.Event()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def stop(self) -> None:
        if not self._stopping.is_set():
            logger.info("Shutdown requested, stopping queue polling")
        self._stopping.set()

    async def tick(self) -> Optional[asyncio.Task]:
        """Claim at most one item and schedule its processing in the background."""
        if self._claiming:
            logger.debug("Previous claim still running, skipping tick")
            return None
        self._claiming = True
        try:
            async with self.session_factory() as session:
                item = await QueueRepository(session).claim_next(self.max_attempts)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Failed to claim queue item", error=str(exc))
            return None
        finally:
            self._claiming = False

        if item is None:
            logger.debug("No claimable queue items")
            return None

        logger.info("Claimed queue item {}", item.id, job_id=item.job_id, attempt=item.processing_attempts)
        task = asyncio.create_task(self.process_item(item))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def process_item(self, item: WebhookQueueItem) -> QueueItemStatus:
        try:
            status, error_message = await self._handle(item)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unhandled error while processing queue item", item_id=item.id, job_id=item.job_id)
            status, error_message = QueueItemStatus.failed, str(exc) or exc.__class__.__name__
        await self._report(item, status, error_message)
        return status

    async def _handle(self, item: WebhookQueueItem) -> Outcome:
        async with self.session_factory() as session:
            job_repo = JobRepository(session)
            job = await job_repo.get(item.job_id)
            if job is None:
                logger.info("Job no longer exists, resolving queue item", item_id=item.id, job_id=item.job_id)
                return QueueItemStatus.processed, f"Job {item.job_id} not found (deleted?)"
            if job.status != JobStatus.active:
                logger.info("Job is not active, skipping queue item", item_id=item.id, job_id=job.id, status=job.status)
                return QueueItemStatus.processed, f"Job not active ({job.status.value})"

            credential = await CredentialRepository(session).get(job.credential_id)
            if credential is None:
                message = f"Credential missing: {job.credential_id}"
                await self._flag_job(job_repo, job.id, message)
                return QueueItemStatus.failed, message

            try:
                async with self.pools.lease(credential) as engine:
                    rows = transform_payload(job.data_category, item.payload, job.category_params)
                    if not rows:
                        logger.info("Event produced no rows for job, resolving", item_id=item.id, job_id=job.id)
                        return QueueItemStatus.processed, "Payload transformation produced no rows"
                    inserted = await DestinationWriter(engine).insert_rows(job.target_table_name, rows)
            except DecryptionError as exc:
                message = f"Credential decryption failed: {exc}"
                await self._flag_job(job_repo, job.id, message)
                return QueueItemStatus.failed, message
            except Exception as exc:  # noqa: BLE001
                if is_schema_error(exc):
                    message = f"Target table error: {str(exc)[:SCHEMA_ERROR_DETAIL_LIMIT]}"
                    await self._flag_job(job_repo, job.id, message)
                    return QueueItemStatus.failed, message
                logger.warning(
                    "Failed to write queue item to destination",
                    item_id=item.id,
                    job_id=job.id,
                    attempt=item.processing_attempts,
                    error=str(exc),
                )
                return QueueItemStatus.failed, str(exc) or exc.__class__.__name__

            logger.info(
                "Wrote {} of {} rows to {}",
                inserted,
                len(rows),
                job.target_table_name,
                item_id=item.id,
                job_id=job.id,
            )
            try:
                await job_repo.touch_last_event(job.id)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Failed to stamp job last event time", job_id=job.id, error=str(exc))
            return QueueItemStatus.processed, None

    async def _flag_job(self, job_repo: JobRepository, job_id: int, message: str) -> None:
        logger.warning("Flagging job as errored: {}", message, job_id=job_id)
        try:
            await job_repo.mark_error(job_id, message)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to set job error status", job_id=job_id, error=str(exc))

    async def _report(self, item: WebhookQueueItem, status: QueueItemStatus, error_message: Optional[str]) -> None:
        try:
            async with self.session_factory() as session:
                updated = await QueueRepository(session).report_outcome(item.id, status, error_message)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Failed to report queue item outcome",
                item_id=item.id,
                job_id=item.job_id,
                status=status.value,
                error=str(exc),
            )
            return
        if not updated:
            logger.warning("Queue item was no longer processing when reporting", item_id=item.id, status=status.value)
        else:
            logger.debug("Queue item {} marked {}", item.id, status.value, job_id=item.job_id)

    async def housekeeping(self) -> None:
        stale_before = utcnow() - timedelta(seconds=self.stale_after)
        try:
            async with self.session_factory() as session:
                requeued, exhausted = await QueueRepository(session).requeue_stale(stale_before, self.max_attempts)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Stale queue sweep failed", error=str(exc))
        else:
            if requeued or exhausted:
                logger.warning("Swept stale queue items", requeued=requeued, failed=exhausted)
        await self.pools.evict_idle()

    async def run(self) -> None:
        logger.info(
            "Indexer worker started (poll interval {}s, max attempts {})",
            self.poll_interval,
            self.max_attempts,
        )
        last_sweep = 0.0
        while not self._stopping.is_set():
            await self.tick()
            if time.monotonic() - last_sweep >= self.sweep_interval:
                await self.housekeeping()
                last_sweep = time.monotonic()
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        await self.shutdown()

    async def shutdown(self) -> None:
        self._stopping.set()
        deadline = time.monotonic() + self.grace_period
        pending = list(self._tasks)
        if pending:
            logger.info("Waiting for {} in-flight items", len(pending))
            _, unfinished = await asyncio.wait(pending, timeout=self.grace_period)
            for task in unfinished:
                task.cancel()
            if unfinished:
                logger.warning("Cancelled {} items still running after grace period", len(unfinished))
        try:
            await asyncio.wait_for(self.pools.close_all(), timeout=max(deadline - time.monotonic(), 0.1))
        except asyncio.TimeoutError:
            logger.error("Timed out closing destination pools, exiting anyway")
        logger.info("Indexer worker stopped")


async def main() -> None:
    await init_db()
    worker = IndexerWorker()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, worker.stop)
        except NotImplementedError:
            logger.debug("Signal handlers not supported on this platform", signal=sig.name)
    await worker.run()


if __name__ == "__main__":
    asyncio.run(main())
