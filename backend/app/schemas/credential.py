from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.enums import SslMode


class CredentialBase(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    alias: Optional[str]
    host: str
    port: int
    db_name: str
    username: str
    ssl_mode: SslMode
    created_at: datetime


class CredentialCreateRequest(BaseModel):
    alias: str | None = Field(default=None, max_length=120)
    host: str = Field(..., min_length=1)
    port: int = Field(default=5432, ge=1, le=65535)
    db_name: str = Field(..., min_length=1)
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)
    ssl_mode: SslMode = SslMode.require


class CredentialResponse(CredentialBase):
    pass


class ConnectionTestResponse(BaseModel):
    success: bool
    message: str
