from app.schemas.auth import LoginRequest, RegisterRequest, TokenResponse, UserResponse
from app.schemas.credential import ConnectionTestResponse, CredentialCreateRequest, CredentialResponse
from app.schemas.job import JobCreateRequest, JobResponse, TableSchemaResponse, WebhookAck

__all__ = [
    "LoginRequest",
    "RegisterRequest",
    "TokenResponse",
    "UserResponse",
    "ConnectionTestResponse",
    "CredentialCreateRequest",
    "CredentialResponse",
    "JobCreateRequest",
    "JobResponse",
    "TableSchemaResponse",
    "WebhookAck",
]
