from app.models.user import User
from app.models.credential import DbCredential
from app.models.job import IndexingJob
from app.models.queue import WebhookQueueItem

__all__ = [
    "User",
    "DbCredential",
    "IndexingJob",
    "WebhookQueueItem",
]
