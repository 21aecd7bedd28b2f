from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field

from app.models.base import TimestampedModel
from app.models.enums import QueueItemStatus


class WebhookQueueItem(TimestampedModel, table=True):
    __tablename__ = "webhook_queue"

    id: Optional[int] = Field(default=None, primary_key=True)
    # no foreign key: items outlive deleted jobs and are resolved as moot
    job_id: int = Field(index=True)
    payload: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    status: QueueItemStatus = Field(default=QueueItemStatus.pending, index=True)
    processing_attempts: int = Field(default=0, nullable=False)
    last_attempt: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    error_message: Optional[str] = None
