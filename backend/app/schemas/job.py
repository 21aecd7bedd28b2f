from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.enums import DataCategory, JobStatus


class JobBase(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    credential_id: int
    data_category: DataCategory
    category_params: Dict[str, Any]
    target_table_name: str
    status: JobStatus
    last_event_at: Optional[datetime]
    error_message: Optional[str]
    created_at: datetime
    updated_at: Optional[datetime]


class JobCreateRequest(BaseModel):
    credential_id: int
    data_category: DataCategory
    category_params: Dict[str, Any] = Field(default_factory=dict)
    target_table_name: str = Field(..., min_length=1, max_length=63)


class JobResponse(JobBase):
    pass


class TableSchemaResponse(BaseModel):
    target_table_name: str
    sql: str


class WebhookAck(BaseModel):
    status: str = "ok"
    events: int = 0
    enqueued: int = 0
