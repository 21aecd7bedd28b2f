from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from app.repositories.job_repository import JobRepository
from app.repositories.queue_repository import QueueRepository
from app.services.categories import monitored_address
from app.services.events import involved_accounts


@dataclass
class IngestSummary:
    events: int = 0
    matched: int = 0
    enqueued: int = 0
    dropped: bool = False


class EventGateway:
    """Fans a webhook batch out to the queue, one item per matching (job, event) pair."""

    def __init__(self, session: AsyncSession):
        self.job_repo = JobRepository(session)
        self.queue_repo = QueueRepository(session)

    async def ingest(self, events: Sequence[Any]) -> IngestSummary:
        summary = IngestSummary(events=len(events))
        if not events:
            return summary

        try:
            jobs = await self.job_repo.list_active()
        except Exception as exc:  # noqa: BLE001
            logger.exception("Failed to load active jobs, dropping webhook batch", events=len(events), error=str(exc))
            summary.dropped = True
            return summary

        watched = []
        for job in jobs:
            address = monitored_address(job.data_category, job.category_params, job_id=job.id)
            if address:
                watched.append((job.id, address))
        if not watched:
            logger.info("No active jobs with a valid address, nothing to enqueue", events=len(events))
            return summary

        entries: List[tuple[int, Dict[str, Any]]] = []
        for event in events:
            accounts = involved_accounts(event)
            if not accounts:
                continue
            for job_id, address in watched:
                if address in accounts:
                    entries.append((job_id, event))
        summary.matched = len(entries)

        if not entries:
            logger.debug("No events matched any active job", events=len(events), jobs=len(watched))
            return summary

        try:
            summary.enqueued = await self.queue_repo.enqueue_many(entries)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Failed to enqueue matched webhook events", matched=len(entries), error=str(exc))
            return summary

        logger.info("Enqueued {} items from {} events", summary.enqueued, len(events))
        return summary
