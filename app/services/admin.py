"""Operator actions on the provisioning pipeline."""

import logging
import uuid

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.models.billing import OrderStatus
from app.models.service import (
    OPEN_JOB_STATUSES,
    JobStatus,
    JobType,
    ProvisioningJob,
    Service,
    ServiceStatus,
)
from app.schemas.tasks import ProvisioningTask, ProvisionVPSPayload
from app.services.billing.enqueue import TaskSender, enqueue_provisioning
from app.services.billing.exceptions import (
    ServiceBusy,
    ServiceNotFound,
    ServiceNotProvisionable,
)
from app.services.common import coerce_uuid
from app.services.order_status import transition_order

logger = logging.getLogger(__name__)

ADMIN_JOB_MAX_ATTEMPTS = 3


class ProvisioningAdmin:
    @staticmethod
    def reprovision(
        db: Session, service_id: str, send: TaskSender | None = None
    ) -> dict:
        """Create a fresh provision job for a stalled service and dispatch it.

        Enqueue failures are compensated the same way as webhook dispatch and
        re-raised as ``EnqueueError``.
        """
        try:
            service = db.get(Service, coerce_uuid(service_id))
        except ValueError:
            service = None
        if not service:
            raise ServiceNotFound("Service not found")
        if service.status in (ServiceStatus.active, ServiceStatus.provisioning):
            raise ServiceBusy("Service is already active or provisioning")
        if service.status == ServiceStatus.terminated:
            raise ServiceNotProvisionable(
                "Service is not provisionable in current status"
            )
        open_job = db.scalar(
            select(ProvisioningJob.id).where(
                ProvisioningJob.service_id == service.id,
                ProvisioningJob.job_type == JobType.provision_vps,
                ProvisioningJob.status.in_(OPEN_JOB_STATUSES),
            )
        )
        if open_job:
            raise ServiceBusy("Service already has an open provisioning job")

        order = service.order_item.order
        job = ProvisioningJob(
            id=uuid.uuid4(),
            service_id=service.id,
            job_type=JobType.provision_vps,
            status=JobStatus.pending,
            attempts=0,
            max_attempts=ADMIN_JOB_MAX_ATTEMPTS,
        )
        db.add(job)
        service.status = ServiceStatus.provisioning
        if order.status == OrderStatus.paid:
            transition_order(order, OrderStatus.provisioning)
        db.commit()
        logger.info(
            "Admin reprovision of service %s as job %s",
            service.id,
            job.id,
            extra={"service_id": str(service.id), "job_id": str(job.id)},
        )

        task = ProvisioningTask(
            job_id=job.id,
            payload=ProvisionVPSPayload(
                service_id=service.id,
                order_id=order.id,
                plan_id=service.plan_id,
                user_id=service.user_id,
            ),
        )
        enqueued = enqueue_provisioning(db, [task], send=send)[0]
        return {
            "job_id": str(job.id),
            "task_id": enqueued.task_id,
            "service_id": str(service.id),
            "order_id": str(order.id),
            "queue": enqueued.queue,
            "status": JobStatus.pending.value,
        }

    @staticmethod
    def jobs_overview(db: Session, limit: int = 50) -> dict:
        counts = {status.value: 0 for status in JobStatus}
        rows = db.execute(
            select(ProvisioningJob.status, func.count()).group_by(ProvisioningJob.status)
        ).all()
        for status, count in rows:
            counts[status.value] = count
        jobs = db.scalars(
            select(ProvisioningJob)
            .order_by(ProvisioningJob.created_at.desc())
            .limit(limit)
        ).all()
        return {"counts": counts, "jobs": list(jobs)}


provisioning_admin = ProvisioningAdmin()
