"""Post-commit dispatch of provisioning tasks, with compensation on failure."""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.metrics import ENQUEUE_FAILURES
from app.models.billing import Order, OrderItem, OrderStatus
from app.models.service import (
    OPEN_JOB_STATUSES,
    JobStatus,
    ProvisioningJob,
    Service,
    ServiceStatus,
)
from app.schemas.tasks import QUEUE_CRITICAL, TYPE_PROVISION_VPS, ProvisioningTask
from app.services.billing.exceptions import EnqueueError
from app.services.common import utcnow
from app.services.order_status import compensate_order

logger = logging.getLogger(__name__)

# (task name, kwargs, queue) -> broker task id
TaskSender = Callable[[str, dict, str], str]


@dataclass(frozen=True)
class EnqueuedTask:
    job_id: str
    task_id: str
    queue: str


def send_celery_task(task_name: str, kwargs: dict, queue: str) -> str:
    from app.celery_app import celery_app

    async_result = celery_app.send_task(task_name, kwargs=kwargs, queue=queue)
    return str(async_result.id)


def enqueue_provisioning(
    db: Session,
    tasks: Iterable[ProvisioningTask],
    send: TaskSender | None = None,
) -> list[EnqueuedTask]:
    """Submit one ``vps:provision`` task per job.

    A failed submission is compensated immediately; all failures are
    raised together as one ``EnqueueError`` after every job was tried.
    """
    send = send or send_celery_task
    enqueued: list[EnqueuedTask] = []
    errors: list[str] = []
    for task in tasks:
        try:
            task_id = send(TYPE_PROVISION_VPS, task.payload.to_kwargs(), QUEUE_CRITICAL)
        except Exception as exc:
            # Broker client errors are not one exception family.
            ENQUEUE_FAILURES.inc()
            logger.error(
                "Failed to enqueue provisioning job %s: %s",
                task.job_id,
                exc,
                extra={"job_id": str(task.job_id)},
            )
            errors.append(f"job {task.job_id}: {exc}")
            compensate_failed_enqueue(db, task, str(exc))
            continue
        logger.info(
            "Enqueued provisioning job %s as task %s",
            task.job_id,
            task_id,
            extra={"job_id": str(task.job_id), "task_id": task_id},
        )
        enqueued.append(
            EnqueuedTask(job_id=str(task.job_id), task_id=task_id, queue=QUEUE_CRITICAL)
        )
    if errors:
        raise EnqueueError(errors)
    return enqueued


def compensate_failed_enqueue(db: Session, task: ProvisioningTask, error: str) -> None:
    """Best-effort revert of a committed dispatch that never reached the queue.

    Each step re-reads current state and only moves rows that are still
    where the dispatch left them, so running it twice is harmless.
    """
    now = utcnow()
    payload = task.payload
    try:
        job = db.get(ProvisioningJob, task.job_id)
        if job and job.status in OPEN_JOB_STATUSES:
            job.status = JobStatus.failed
            job.last_error = error
            job.completed_at = now
        service = db.get(Service, payload.service_id)
        if service and service.status == ServiceStatus.provisioning:
            service.status = ServiceStatus.pending
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(
            "Compensation failed for job %s", task.job_id, extra={"job_id": str(task.job_id)}
        )

    try:
        order = db.get(Order, payload.order_id)
        if (
            order
            and order.status == OrderStatus.provisioning
            and not order_has_completed_job(db, order.id)
        ):
            compensate_order(order, OrderStatus.paid)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(
            "Order compensation failed for order %s",
            payload.order_id,
            extra={"order_id": str(payload.order_id)},
        )


def order_has_completed_job(db: Session, order_id) -> bool:
    stmt = (
        select(ProvisioningJob.id)
        .join(Service, Service.id == ProvisioningJob.service_id)
        .join(OrderItem, OrderItem.id == Service.order_item_id)
        .where(
            OrderItem.order_id == order_id,
            ProvisioningJob.status == JobStatus.completed,
        )
        .limit(1)
    )
    return db.scalar(stmt) is not None
