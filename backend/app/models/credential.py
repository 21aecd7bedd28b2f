from typing import Optional

from sqlmodel import Field

from app.models.base import TimestampedModel
from app.models.enums import SslMode


class DbCredential(TimestampedModel, table=True):
    __tablename__ = "db_credentials"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", index=True)
    alias: Optional[str] = None
    host: str
    port: int = Field(default=5432)
    db_name: str
    username: str
    ssl_mode: SslMode = Field(default=SslMode.require)
    encrypted_password: str = Field(nullable=False)
