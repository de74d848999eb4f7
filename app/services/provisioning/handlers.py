"""Worker task handlers for the service lifecycle.

Every handler may be re-invoked by the queue after a failure, so each one
re-reads state and converges instead of assuming a first run.
"""

import logging
import math
import threading
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.audit import AuditActorType, AuditLog
from app.models.billing import (
    BillingCycle,
    Invoice,
    InvoiceItem,
    InvoiceStatus,
    Order,
    OrderStatus,
)
from app.models.service import (
    OPEN_JOB_STATUSES,
    JobStatus,
    JobType,
    ProvisioningJob,
    Service,
    ServiceStatus,
)
from app.schemas.tasks import (
    ExpireServicePayload,
    GenerateInvoicePayload,
    ProvisionVPSPayload,
    RenewalReminderPayload,
    SuspendVPSPayload,
    TerminateVPSPayload,
)
from app.services.billing.exceptions import (
    BillingError,
    NotificationError,
    ProvisioningCancelled,
    ProvisioningError,
    ServiceNotFound,
    ServiceNotProvisionable,
)
from app.services.billing.fulfillment import generate_invoice_number
from app.services.common import add_months, ensure_utc, utcnow
from app.services.notifications import RenewalNotifier, renewal_notifier
from app.services.order_status import transition_order
from app.services.provisioning.backend import (
    ProvisioningBackend,
    SimulatedBackend,
    shutdown_event,
)

logger = logging.getLogger(__name__)

# A stale or redelivered provision task must not revive these.
UNPROVISIONABLE_STATUSES = (ServiceStatus.suspended, ServiceStatus.terminated)

REMINDER_DAYS = (7, 3, 1)
REMINDER_WINDOW = timedelta(days=8)
ACTION_REMINDER_SENT = "renewal_reminder_sent"
ACTION_REMINDER_FAILED = "renewal_reminder_failed"


def days_until(expires_at: datetime, now: datetime) -> int:
    """Whole days left, rounding partial days up; 0 once expired."""
    hours = (expires_at - now).total_seconds() / 3600
    if hours <= 0:
        return 0
    return math.ceil(hours / 24)


def is_reminder_day(days_left: int) -> bool:
    return days_left in REMINDER_DAYS


def renewal_due_date(cycle: BillingCycle | None, now: datetime) -> datetime:
    if cycle == BillingCycle.monthly:
        return add_months(now, 1)
    if cycle == BillingCycle.quarterly:
        return add_months(now, 3)
    if cycle == BillingCycle.annually:
        return add_months(now, 12)
    return now + timedelta(days=7)


def _merge_metadata(service: Service, **values) -> None:
    # Reassign so the JSON column registers the change.
    service.metadata_ = {**(service.metadata_ or {}), **values}


def _get_service(db: Session, service_id) -> Service:
    service = db.get(Service, service_id)
    if not service:
        raise ServiceNotFound(f"Service {service_id} not found")
    return service


class TaskHandlers:
    def __init__(
        self,
        backend: ProvisioningBackend | None = None,
        notifier: RenewalNotifier | None = None,
    ) -> None:
        self.backend = backend or SimulatedBackend()
        self.notifier = notifier or renewal_notifier

    # ── Provision ────────────────────────────────────────

    def provision(
        self,
        db: Session,
        payload: ProvisionVPSPayload,
        cancel: threading.Event | None = None,
    ) -> Service:
        cancel = cancel or shutdown_event
        service = _get_service(db, payload.service_id)
        job = self._latest_job(db, service.id)
        extra = {"service_id": str(service.id), "order_id": str(payload.order_id)}

        if service.status == ServiceStatus.active:
            # Redelivered after success: finish the bookkeeping, touch nothing else.
            logger.info("Service %s already active, skipping", service.id, extra=extra)
            if job and job.status in OPEN_JOB_STATUSES:
                job.status = JobStatus.completed
                job.completed_at = utcnow()
            self._activate_order(db, payload.order_id)
            db.commit()
            return service

        if service.status in UNPROVISIONABLE_STATUSES:
            reason = f"service is {service.status.value}"
            logger.warning(
                "Refusing to provision service %s: %s", service.id, reason, extra=extra
            )
            if job and job.status in OPEN_JOB_STATUSES:
                job.status = JobStatus.failed
                job.last_error = reason
                job.completed_at = utcnow()
            db.commit()
            raise ServiceNotProvisionable(f"Service {service.id} {reason}")

        if job and job.attempts >= job.max_attempts:
            logger.error(
                "Job %s exhausted %d attempts", job.id, job.attempts, extra=extra
            )
            job.status = JobStatus.failed
            job.last_error = job.last_error or "max attempts exceeded"
            job.completed_at = utcnow()
            db.commit()
            return service

        if job:
            job.status = JobStatus.running
            job.attempts = (job.attempts or 0) + 1
            job.started_at = utcnow()
        db.commit()

        logger.info("Provisioning service %s", service.id, extra=extra)
        try:
            resource = self.backend.provision(service.id, service.plan_id, cancel)
        except ProvisioningCancelled as exc:
            if job:
                job.status = JobStatus.pending
                job.last_error = str(exc)
            db.commit()
            raise
        except ProvisioningError as exc:
            if job:
                job.status = JobStatus.failed
                job.last_error = str(exc)
                job.completed_at = utcnow()
            db.commit()
            raise

        now = utcnow()
        service.status = ServiceStatus.active
        service.hostname = resource.hostname
        service.ip_address = resource.ip_address
        _merge_metadata(
            service, activated_at=now.isoformat(), provisioning_source="worker"
        )
        if job:
            job.status = JobStatus.completed
            job.completed_at = now
            job.last_error = None
        self._activate_order(db, payload.order_id)
        db.commit()
        logger.info(
            "Service %s active: hostname=%s ip=%s",
            service.id,
            resource.hostname,
            resource.ip_address,
            extra=extra,
        )
        return service

    @staticmethod
    def _latest_job(db: Session, service_id) -> ProvisioningJob | None:
        return db.scalars(
            select(ProvisioningJob)
            .where(
                ProvisioningJob.service_id == service_id,
                ProvisioningJob.job_type == JobType.provision_vps,
            )
            .order_by(ProvisioningJob.created_at.desc())
            .limit(1)
        ).first()

    @staticmethod
    def _activate_order(db: Session, order_id) -> None:
        order = db.get(Order, order_id)
        if not order or order.status == OrderStatus.active:
            return
        if order.status == OrderStatus.paid:
            # A compensated order whose job was re-run.
            transition_order(order, OrderStatus.provisioning)
        if order.status == OrderStatus.provisioning:
            transition_order(order, OrderStatus.active)
        else:
            logger.warning(
                "Order %s left at %s after provisioning",
                order.id,
                order.status.value,
                extra={"order_id": str(order.id)},
            )

    # ── Suspend / terminate ──────────────────────────────

    def suspend(self, db: Session, payload: SuspendVPSPayload) -> Service:
        service = _get_service(db, payload.service_id)
        if service.status == ServiceStatus.terminated:
            logger.warning("Service %s is terminated, not suspending", service.id)
            return service
        if service.status != ServiceStatus.suspended:
            service.status = ServiceStatus.suspended
            service.suspended_at = utcnow()
        service.suspend_reason = payload.reason or service.suspend_reason
        db.commit()
        logger.info(
            "Service %s suspended: %s",
            service.id,
            payload.reason,
            extra={"service_id": str(service.id)},
        )
        return service

    def terminate(self, db: Session, payload: TerminateVPSPayload) -> Service:
        service = _get_service(db, payload.service_id)
        now = utcnow()
        service.status = ServiceStatus.terminated
        service.cancelled_at = service.cancelled_at or now
        if "terminated_at" not in (service.metadata_ or {}):
            _merge_metadata(service, terminated_at=now.isoformat())
        db.commit()
        logger.info("Service %s terminated", service.id, extra={"service_id": str(service.id)})
        return service

    # ── Renewal reminders ────────────────────────────────

    def renewal_reminder(
        self,
        db: Session,
        payload: RenewalReminderPayload,
        now: datetime | None = None,
    ) -> int:
        """Returns the number of reminders attempted."""
        if payload.is_scan:
            return self._scan_reminders(db, now or utcnow())
        days_left = payload.days_left if payload.days_left > 0 else 1
        self._send_reminder(db, payload.service_id, payload.user_id, days_left)
        return 1

    def _scan_reminders(self, db: Session, now: datetime) -> int:
        services = db.scalars(
            select(Service).where(
                Service.status == ServiceStatus.active,
                Service.expires_at.is_not(None),
                Service.expires_at > now,
                Service.expires_at <= now + REMINDER_WINDOW,
            )
        ).all()

        attempted = 0
        errors: list[str] = []
        for service in services:
            days_left = days_until(ensure_utc(service.expires_at), now)
            if not is_reminder_day(days_left):
                continue
            try:
                if self.reminder_sent_today(db, service.id, days_left, now):
                    continue
                attempted += 1
                self._send_reminder(db, service.id, service.user_id, days_left)
            except (NotificationError, SQLAlchemyError) as exc:
                db.rollback()
                errors.append(f"service {service.id}: {exc}")
        logger.info("Renewal reminder scan: %d sent, %d failed", attempted, len(errors))
        if errors:
            raise NotificationError("; ".join(errors))
        return attempted

    @staticmethod
    def reminder_sent_today(
        db: Session, service_id, days_left: int, now: datetime
    ) -> bool:
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        rows = db.scalars(
            select(AuditLog).where(
                AuditLog.action == ACTION_REMINDER_SENT,
                AuditLog.entity_type == "service",
                AuditLog.entity_id == str(service_id),
                AuditLog.created_at >= start_of_day,
            )
        ).all()
        return any(
            int((row.metadata_ or {}).get("days_left") or 0) == days_left for row in rows
        )

    def _send_reminder(self, db: Session, service_id, user_id, days_left: int) -> None:
        result = self.notifier.send_renewal_reminder(service_id, user_id, days_left)
        details = {
            "service_id": str(service_id),
            "days_left": days_left,
            "channel": result.channel,
            "sent": result.sent,
        }
        if result.error:
            details["error"] = result.error
        db.add(
            AuditLog(
                actor_type=AuditActorType.worker,
                user_id=user_id,
                action=ACTION_REMINDER_FAILED if result.error else ACTION_REMINDER_SENT,
                entity_type="service",
                entity_id=str(service_id),
                ip_address="worker",
                user_agent="celery-worker",
                metadata_=details,
            )
        )
        db.commit()
        if result.error:
            raise NotificationError(result.error)
        logger.info(
            "Renewal reminder for service %s (%d days left) via %s",
            service_id,
            days_left,
            result.channel,
            extra={"service_id": str(service_id)},
        )

    # ── Renewal invoice ──────────────────────────────────

    def generate_invoice(
        self,
        db: Session,
        payload: GenerateInvoicePayload,
        now: datetime | None = None,
    ) -> Invoice:
        now = now or utcnow()
        service = _get_service(db, payload.service_id)
        item = service.order_item
        order = item.order
        cycle = item.billing_cycle

        invoice = Invoice(
            user_id=payload.user_id,
            order_id=order.id,
            invoice_number=generate_invoice_number(now),
            status=InvoiceStatus.pending,
            subtotal=item.unit_price,
            tax=0,
            total=item.unit_price,
            currency=order.currency,
            due_date=renewal_due_date(cycle, now),
        )
        db.add(invoice)
        db.flush()
        db.add(
            InvoiceItem(
                invoice_id=invoice.id,
                description=f"Service renewal ({cycle.value if cycle else 'unknown'})",
                quantity=1,
                unit_price=item.unit_price,
                amount=item.unit_price,
            )
        )
        db.commit()
        logger.info(
            "Renewal invoice %s for service %s: %d",
            invoice.invoice_number,
            service.id,
            item.unit_price,
            extra={"service_id": str(service.id)},
        )
        return invoice

    # ── Expiry ───────────────────────────────────────────

    def expire(
        self,
        db: Session,
        payload: ExpireServicePayload,
        now: datetime | None = None,
    ) -> int:
        """Returns the number of services suspended."""
        now = now or utcnow()
        if payload.service_id is not None:
            return int(self._expire_one(db, payload.service_id, now))

        service_ids = db.scalars(
            select(Service.id).where(
                Service.status == ServiceStatus.active,
                Service.expires_at.is_not(None),
                Service.expires_at <= now,
            )
        ).all()
        suspended = 0
        for service_id in service_ids:
            try:
                suspended += int(self._expire_one(db, service_id, now))
            except (BillingError, SQLAlchemyError):
                db.rollback()
                logger.exception(
                    "Failed to expire service %s",
                    service_id,
                    extra={"service_id": str(service_id)},
                )
        logger.info("Expiry scan: %d of %d suspended", suspended, len(service_ids))
        return suspended

    @staticmethod
    def _expire_one(db: Session, service_id, now: datetime) -> bool:
        service = _get_service(db, service_id)
        expires_at = ensure_utc(service.expires_at)
        if expires_at is None:
            return False
        if service.status != ServiceStatus.active or now <= expires_at:
            return False
        service.status = ServiceStatus.suspended
        service.suspended_at = now
        service.suspend_reason = "expired"
        _merge_metadata(service, expired_at=now.isoformat())
        db.commit()
        logger.info("Expired service %s suspended", service.id, extra={"service_id": str(service.id)})
        return True


task_handlers = TaskHandlers()
