import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional, Protocol

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from app.repositories.job_repository import JobRepository
from app.services.categories import monitored_address
from app.services.helius import HeliusWebhookClient, SubscriptionEditError


class SubscriptionClient(Protocol):
    async def edit_webhook(self, addresses: List[str]) -> object: ...


class SubscriptionReconciler:
    """Keeps the platform webhook's address list in step with active jobs.

    Edits are full replacements computed from the job table, never deltas.
    Reconciliations inside one process are serialised by ``locked()``; two
    processes editing at the same moment can still overwrite each other.
    """

    _lock = asyncio.Lock()

    def __init__(self, session: AsyncSession, client: Optional[SubscriptionClient] = None):
        self.job_repo = JobRepository(session)
        self.client = client or HeliusWebhookClient()

    @asynccontextmanager
    async def locked(self) -> AsyncIterator[None]:
        async with self._lock:
            yield

    async def active_addresses(self, exclude_job_id: int | None = None) -> List[str]:
        jobs = await self.job_repo.list_active(exclude_job_id=exclude_job_id)
        addresses: dict[str, None] = {}
        for job in jobs:
            address = monitored_address(job.data_category, job.category_params, job_id=job.id)
            if address:
                addresses[address] = None
        logger.debug("Found {} unique active addresses", len(addresses), excluded_job=exclude_job_id)
        return list(addresses)

    async def add_address(self, new_address: str, current: Optional[List[str]] = None) -> List[str]:
        """Push every active address plus ``new_address``; raises on failure."""
        if not new_address or not new_address.strip():
            raise ValueError("Monitored address must not be empty")
        if current is None:
            current = await self.active_addresses()
        updated = list(dict.fromkeys([*current, new_address.strip()]))
        await self.client.edit_webhook(updated)
        return updated

    async def restore(self, addresses: List[str]) -> bool:
        """Best-effort rollback to a previous address list."""
        try:
            await self.client.edit_webhook(addresses)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Failed to roll back platform webhook, manual subscription sync required",
                error=str(exc),
                addresses=len(addresses),
            )
            return False
        logger.warning("Platform webhook rolled back to {} addresses", len(addresses))
        return True

    async def remove_address_if_unused(
        self,
        candidate_address: Optional[str],
        excluding_job_id: int,
    ) -> Optional[List[str]]:
        """Shrink the subscription when no other active job needs the address.

        Returns the pushed list, or None when nothing was changed. A failed edit
        is logged, not raised.
        """
        if not candidate_address:
            logger.info("Deleted job had no monitored address, subscription unchanged", job_id=excluding_job_id)
            return None
        remaining = await self.active_addresses(exclude_job_id=excluding_job_id)
        if candidate_address in remaining:
            logger.info(
                "Address still monitored by other active jobs, subscription unchanged",
                address=candidate_address,
                job_id=excluding_job_id,
            )
            return None
        try:
            await self.client.edit_webhook(remaining)
        except SubscriptionEditError as exc:
            logger.error(
                "Failed to shrink platform webhook, subscription may need a manual sync",
                address=candidate_address,
                job_id=excluding_job_id,
                error=str(exc),
            )
            return None
        return remaining

    async def sync_all(self) -> List[str]:
        addresses = await self.active_addresses()
        await self.client.edit_webhook(addresses)
        return addresses
