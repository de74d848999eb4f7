from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from app.models.service import JobStatus, JobType


class ReprovisionResponse(BaseModel):
    job_id: UUID
    task_id: str
    service_id: UUID
    order_id: UUID
    queue: str
    status: str


class ProvisioningJobRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    service_id: UUID
    job_type: JobType
    status: JobStatus
    attempts: int
    max_attempts: int
    last_error: str | None
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime


class JobsOverviewResponse(BaseModel):
    counts: dict[str, int]
    jobs: list[ProvisioningJobRead]


class SettingsReloadResponse(BaseModel):
    renewal_webhook_configured: bool
    notification_timeout_secs: float
