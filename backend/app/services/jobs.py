import re
from typing import Optional

from fastapi import HTTPException, status
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.job import IndexingJob
from app.models.user import User
from app.repositories.credential_repository import CredentialRepository
from app.repositories.job_repository import JobRepository
from app.schemas.job import JobCreateRequest
from app.services.categories import get_handler, monitored_address
from app.services.helius import SubscriptionEditError
from app.services.reconciler import SubscriptionClient, SubscriptionReconciler

TABLE_NAME_RE = re.compile(r"^[A-Za-z0-9_]+$")


class JobService:
    def __init__(self, session: AsyncSession, client: Optional[SubscriptionClient] = None):
        self.session = session
        self.job_repo = JobRepository(session)
        self.credential_repo = CredentialRepository(session)
        self.reconciler = SubscriptionReconciler(session, client)

    async def list_jobs(self, user: User) -> list[IndexingJob]:
        return await self.job_repo.list_for_user(user.id)

    async def create_job(self, user: User, payload: JobCreateRequest) -> IndexingJob:
        credential = await self.credential_repo.get_for_user(payload.credential_id, user.id)
        if credential is None:
            logger.warning(
                "User attempted to use a credential they do not own",
                user_id=user.id,
                credential_id=payload.credential_id,
            )
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid or inaccessible credential ID")

        if not TABLE_NAME_RE.match(payload.target_table_name):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid target table name")

        handler = get_handler(payload.data_category)
        address = handler.monitored_address(payload.category_params)
        if address is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Missing or invalid {handler.param_key} in category_params for {handler.category.value}",
            )

        async with self.reconciler.locked():
            previous = await self.reconciler.active_addresses()
            try:
                await self.reconciler.add_address(address, current=previous)
            except SubscriptionEditError as exc:
                logger.error("Failed to extend platform webhook for new job", address=address, error=str(exc))
                raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

            try:
                job = await self.job_repo.create(
                    user_id=user.id,
                    credential_id=credential.id,
                    data_category=handler.category,
                    category_params={**payload.category_params, handler.param_key: address},
                    target_table_name=payload.target_table_name,
                )
            except Exception as exc:
                logger.error(
                    "Failed to save job after editing platform webhook, rolling back subscription",
                    address=address,
                    error=str(exc),
                )
                await self.reconciler.restore(previous)
                raise HTTPException(
                    status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                    detail="Failed to save job to database",
                ) from exc

        logger.info("Job {} created", job.id, user_id=user.id, address=address)
        return job

    async def delete_job(self, user: User, job_id: int) -> None:
        job = await self.job_repo.get(job_id)
        if job is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
        if job.user_id != user.id:
            logger.warning("User attempted to delete a job they do not own", user_id=user.id, job_id=job_id)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")

        address = monitored_address(job.data_category, job.category_params, job_id=job.id)
        async with self.reconciler.locked():
            await self.reconciler.remove_address_if_unused(address, excluding_job_id=job.id)
            await self.job_repo.delete(job)
        logger.info("Job {} deleted", job_id, user_id=user.id)
