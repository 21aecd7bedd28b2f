from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field

from app.models.base import TimestampedModel
from app.models.enums import DataCategory, JobStatus


class IndexingJob(TimestampedModel, table=True):
    __tablename__ = "indexing_jobs"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", index=True)
    # no foreign key: a deleted credential must surface as a worker failure
    credential_id: int = Field(index=True)
    data_category: DataCategory
    category_params: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    target_table_name: str
    status: JobStatus = Field(default=JobStatus.active, index=True)
    last_event_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    error_message: Optional[str] = None
