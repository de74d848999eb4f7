"""Queue task names and payloads.

Payloads carry identifiers only; workers reload everything else from the
database. Each model serialises to the JSON kwargs of its Celery task.
"""
from uuid import UUID

from pydantic import BaseModel, ConfigDict

TYPE_PROVISION_VPS = "vps:provision"
TYPE_SUSPEND_VPS = "vps:suspend"
TYPE_TERMINATE_VPS = "vps:terminate"
TYPE_RENEWAL_REMINDER = "billing:renewal_reminder"
TYPE_GENERATE_INVOICE = "billing:generate_invoice"
TYPE_EXPIRE_SERVICE = "service:expire"

QUEUE_CRITICAL = "critical"
QUEUE_DEFAULT = "default"
QUEUE_LOW = "low"


class TaskPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    def to_kwargs(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


class ProvisionVPSPayload(TaskPayload):
    service_id: UUID
    order_id: UUID
    plan_id: UUID
    user_id: UUID


class SuspendVPSPayload(TaskPayload):
    service_id: UUID
    reason: str = ""


class TerminateVPSPayload(TaskPayload):
    service_id: UUID


class RenewalReminderPayload(TaskPayload):
    """Empty payload selects scan mode."""

    service_id: UUID | None = None
    user_id: UUID | None = None
    days_left: int = 0

    @property
    def is_scan(self) -> bool:
        return self.service_id is None or self.user_id is None


class GenerateInvoicePayload(TaskPayload):
    service_id: UUID
    user_id: UUID
    order_id: UUID | None = None


class ExpireServicePayload(TaskPayload):
    """Empty payload selects scan mode."""

    service_id: UUID | None = None


class ProvisioningTask(BaseModel):
    """A committed provisioning job awaiting dispatch."""

    job_id: UUID
    payload: ProvisionVPSPayload
