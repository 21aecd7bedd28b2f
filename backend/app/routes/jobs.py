from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api import deps
from app.core.config import settings
from app.repositories.job_repository import JobRepository
from app.schemas.job import JobCreateRequest, JobResponse, TableSchemaResponse
from app.services.categories import get_handler
from app.services.jobs import JobService

router = APIRouter()


@router.get("", response_model=list[JobResponse])
async def list_jobs(
    session: AsyncSession = Depends(deps.get_db),
    user=Depends(deps.get_current_user),
    client=Depends(deps.get_subscription_client),
):
    return await JobService(session, client).list_jobs(user)


@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
async def create_job(
    payload: JobCreateRequest,
    session: AsyncSession = Depends(deps.get_db),
    user=Depends(deps.get_current_user),
    client=Depends(deps.get_subscription_client),
):
    return await JobService(session, client).create_job(user, payload)


@router.delete("/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_job(
    job_id: int,
    session: AsyncSession = Depends(deps.get_db),
    user=Depends(deps.get_current_user),
    client=Depends(deps.get_subscription_client),
) -> Response:
    await JobService(session, client).delete_job(user, job_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{job_id}/table-schema", response_model=TableSchemaResponse)
async def job_table_schema(
    job_id: int,
    session: AsyncSession = Depends(deps.get_db),
    user=Depends(deps.get_current_user),
):
    job = await JobRepository(session).get(job_id)
    if job is None or job.user_id != user.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    handler = get_handler(job.data_category)
    if handler is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unsupported data category")
    return TableSchemaResponse(
        target_table_name=job.target_table_name,
        sql=handler.create_table_sql(job.target_table_name, settings.destination_schema),
    )
