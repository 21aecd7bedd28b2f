from app.repositories.user_repository import UserRepository
from app.repositories.credential_repository import CredentialRepository
from app.repositories.job_repository import JobRepository
from app.repositories.queue_repository import QueueRepository

__all__ = [
    "UserRepository",
    "CredentialRepository",
    "JobRepository",
    "QueueRepository",
]
