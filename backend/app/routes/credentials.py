from fastapi import APIRouter, Depends, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.api import deps
from app.schemas.credential import ConnectionTestResponse, CredentialCreateRequest, CredentialResponse
from app.services.credentials import CredentialService

router = APIRouter()


@router.get("", response_model=list[CredentialResponse])
async def list_credentials(
    session: AsyncSession = Depends(deps.get_db),
    user=Depends(deps.get_current_user),
):
    return await CredentialService(session).list_credentials(user)


@router.post("", response_model=CredentialResponse, status_code=status.HTTP_201_CREATED)
async def create_credential(
    payload: CredentialCreateRequest,
    session: AsyncSession = Depends(deps.get_db),
    user=Depends(deps.get_current_user),
):
    return await CredentialService(session).create_credential(user, payload)


@router.delete("/{credential_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_credential(
    credential_id: int,
    session: AsyncSession = Depends(deps.get_db),
    user=Depends(deps.get_current_user),
) -> Response:
    await CredentialService(session).delete_credential(user, credential_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{credential_id}/test", response_model=ConnectionTestResponse)
async def test_credential(
    credential_id: int,
    session: AsyncSession = Depends(deps.get_db),
    user=Depends(deps.get_current_user),
    engine_factory=Depends(deps.get_engine_factory),
):
    result = await CredentialService(session, engine_factory).test_connection(user, credential_id)
    status_code = status.HTTP_200_OK if result.success else status.HTTP_400_BAD_REQUEST
    return JSONResponse(status_code=status_code, content=result.model_dump())
