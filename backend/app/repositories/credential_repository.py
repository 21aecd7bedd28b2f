from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.credential import DbCredential
from app.models.enums import SslMode


class CredentialRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, credential_id: int) -> DbCredential | None:
        result = await self.session.execute(select(DbCredential).where(DbCredential.id == credential_id))
        return result.scalar_one_or_none()

    async def get_for_user(self, credential_id: int, user_id: int) -> DbCredential | None:
        result = await self.session.execute(
            select(DbCredential).where(DbCredential.id == credential_id, DbCredential.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: int) -> list[DbCredential]:
        result = await self.session.execute(
            select(DbCredential).where(DbCredential.user_id == user_id).order_by(DbCredential.created_at.desc())
        )
        return list(result.scalars().all())

    async def create(
        self,
        *,
        user_id: int,
        host: str,
        port: int,
        db_name: str,
        username: str,
        encrypted_password: str,
        ssl_mode: SslMode = SslMode.require,
        alias: str | None = None,
    ) -> DbCredential:
        credential = DbCredential(
            user_id=user_id,
            alias=alias,
            host=host,
            port=port,
            db_name=db_name,
            username=username,
            ssl_mode=ssl_mode,
            encrypted_password=encrypted_password,
        )
        self.session.add(credential)
        await self.session.commit()
        await self.session.refresh(credential)
        return credential

    async def delete(self, credential: DbCredential) -> None:
        await self.session.delete(credential)
        await self.session.commit()
