from typing import Callable, Optional

from fastapi import HTTPException, status
from loguru import logger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.crypto import DecryptionError, decrypt_secret, encrypt_secret
from app.models.credential import DbCredential
from app.models.user import User
from app.repositories.credential_repository import CredentialRepository
from app.schemas.credential import ConnectionTestResponse, CredentialCreateRequest
from app.services.destination import EngineFactory, create_destination_engine


class CredentialService:
    def __init__(self, session: AsyncSession, engine_factory: Optional[EngineFactory] = None):
        self.session = session
        self.repo = CredentialRepository(session)
        self._engine_factory: Callable = engine_factory or (
            lambda credential, password: create_destination_engine(credential, password, pool_size=1)
        )

    async def list_credentials(self, user: User) -> list[DbCredential]:
        return await self.repo.list_for_user(user.id)

    async def create_credential(self, user: User, payload: CredentialCreateRequest) -> DbCredential:
        credential = await self.repo.create(
            user_id=user.id,
            alias=payload.alias,
            host=payload.host,
            port=payload.port,
            db_name=payload.db_name,
            username=payload.username,
            ssl_mode=payload.ssl_mode,
            encrypted_password=encrypt_secret(payload.password),
        )
        logger.info("Credential {} saved", credential.id, user_id=user.id, host=credential.host)
        return credential

    async def _get_owned(self, user: User, credential_id: int) -> DbCredential:
        credential = await self.repo.get_for_user(credential_id, user.id)
        if credential is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Credential not found or access denied")
        return credential

    async def delete_credential(self, user: User, credential_id: int) -> None:
        credential = await self._get_owned(user, credential_id)
        await self.repo.delete(credential)
        logger.info("Credential {} deleted", credential_id, user_id=user.id)

    async def test_connection(self, user: User, credential_id: int) -> ConnectionTestResponse:
        credential = await self._get_owned(user, credential_id)
        try:
            password = decrypt_secret(credential.encrypted_password)
        except DecryptionError as exc:
            logger.error("Failed to decrypt credential for connection test", credential_id=credential_id)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Failed to decrypt password for testing: {exc}",
            ) from exc

        engine = self._engine_factory(credential, password)
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception as exc:  # noqa: BLE001
            logger.warning("Connection test failed", credential_id=credential_id, error=str(exc))
            return ConnectionTestResponse(success=False, message=str(exc))
        finally:
            await engine.dispose()

        logger.info("Connection test successful", credential_id=credential_id)
        return ConnectionTestResponse(success=True, message="Connection successful!")
