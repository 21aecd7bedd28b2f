from typing import Any, Dict

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.base import utcnow
from app.models.enums import DataCategory, JobStatus
from app.models.job import IndexingJob

ERROR_MESSAGE_LIMIT = 500


class JobRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, job_id: int) -> IndexingJob | None:
        result = await self.session.execute(select(IndexingJob).where(IndexingJob.id == job_id))
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: int) -> list[IndexingJob]:
        result = await self.session.execute(
            select(IndexingJob).where(IndexingJob.user_id == user_id).order_by(IndexingJob.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_active(self, exclude_job_id: int | None = None) -> list[IndexingJob]:
        query = select(IndexingJob).where(IndexingJob.status == JobStatus.active)
        if exclude_job_id is not None:
            query = query.where(IndexingJob.id != exclude_job_id)
        result = await self.session.execute(query.order_by(IndexingJob.id))
        return list(result.scalars().all())

    async def create(
        self,
        *,
        user_id: int,
        credential_id: int,
        data_category: DataCategory,
        category_params: Dict[str, Any],
        target_table_name: str,
        status: JobStatus = JobStatus.active,
    ) -> IndexingJob:
        job = IndexingJob(
            user_id=user_id,
            credential_id=credential_id,
            data_category=data_category,
            category_params=category_params,
            target_table_name=target_table_name,
            status=status,
        )
        self.session.add(job)
        try:
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        await self.session.refresh(job)
        return job

    async def delete(self, job: IndexingJob) -> None:
        await self.session.delete(job)
        await self.session.commit()

    async def mark_error(self, job_id: int, message: str) -> None:
        await self.session.execute(
            update(IndexingJob)
            .where(IndexingJob.id == job_id)
            .values(
                status=JobStatus.error,
                error_message=message[:ERROR_MESSAGE_LIMIT],
                updated_at=utcnow(),
            )
        )
        await self.session.commit()

    async def touch_last_event(self, job_id: int) -> None:
        await self.session.execute(
            update(IndexingJob).where(IndexingJob.id == job_id).values(last_event_at=utcnow())
        )
        await self.session.commit()
