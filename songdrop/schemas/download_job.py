from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime

from songdrop.services.state_machine import JobStatus


class DownloadJobOut(BaseModel):
    id: int
    item_id: str
    owner_namespace: str
    title: Optional[str]
    status: JobStatus
    retry_count: int
    last_error: Optional[str]
    last_checked_at: Optional[datetime]
    downloaded_at: Optional[datetime]
    download_url: Optional[str]
    download_url_expiry: Optional[datetime]

    class Config:
        from_attributes = True


class EnqueueRequest(BaseModel):
    owner_namespace: str = Field(min_length=1, max_length=150)
    job_ids: List[int] = Field(min_length=1)


class WorkerStatusOut(BaseModel):
    running: bool
