"""Checkout fulfillment: order -> payment -> invoice -> service -> provisioning job.

Everything here runs inside one database transaction and is idempotent by
lookup, so a redelivered checkout event converges on the same rows.
Provisioning tasks are returned to the caller and dispatched only after
the transaction has committed.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.billing import (
    BillingCycle,
    Invoice,
    InvoiceItem,
    InvoiceStatus,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentStatus,
)
from app.models.service import (
    OPEN_JOB_STATUSES,
    JobStatus,
    JobType,
    ProvisioningJob,
    Service,
    ServiceStatus,
)
from app.schemas.tasks import ProvisioningTask, ProvisionVPSPayload
from app.services.billing.exceptions import (
    InvalidOrderTransition,
    InvalidPayload,
    MissingOrderReference,
    OrderNotFound,
)
from app.services.common import add_months, coerce_uuid, utcnow
from app.services.order_status import PAID_OR_BEYOND, transition_order

logger = logging.getLogger(__name__)

INVOICE_DUE_DAYS = 30
WEBHOOK_JOB_MAX_ATTEMPTS = 5


def generate_invoice_number(now: datetime) -> str:
    return f"INV-{now:%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"


def service_expiry(cycle: BillingCycle | None, now: datetime) -> datetime:
    if cycle == BillingCycle.quarterly:
        return add_months(now, 3)
    if cycle == BillingCycle.annually:
        return add_months(now, 12)
    return add_months(now, 1)


def order_reference(session_obj: dict[str, Any]) -> uuid.UUID:
    """Order id from checkout metadata, falling back to client_reference_id."""
    metadata = session_obj.get("metadata") or {}
    raw = metadata.get("order_id") or session_obj.get("client_reference_id")
    if not raw:
        raise MissingOrderReference("order_id not found in session metadata")
    try:
        return coerce_uuid(raw)
    except ValueError as exc:
        raise InvalidPayload(f"Invalid order reference: {raw}") from exc


def _object_id(value: Any) -> str | None:
    """Stripe fields may hold an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id") or None
    return value or None


class Fulfillment:
    @staticmethod
    def fulfill_checkout(db: Session, event: dict[str, Any]) -> list[ProvisioningTask]:
        session_obj = (event.get("data") or {}).get("object") or {}
        order_id = order_reference(session_obj)

        order = db.get(Order, order_id)
        if not order:
            raise OrderNotFound(f"Order {order_id} not found")

        if order.status == OrderStatus.pending_payment:
            transition_order(order, OrderStatus.paid)
        elif order.status not in PAID_OR_BEYOND:
            raise InvalidOrderTransition(order.status, OrderStatus.paid)

        now = utcnow()
        invoice = Fulfillment._ensure_invoice(db, order, now)
        Fulfillment._upsert_payment(db, order, invoice, session_obj, now)
        tasks = Fulfillment._prepare_jobs(db, order, now)

        if tasks and order.status == OrderStatus.paid:
            transition_order(order, OrderStatus.provisioning)

        db.commit()
        logger.info(
            "Fulfilled checkout for order %s (%d job(s) created)",
            order.id,
            len(tasks),
            extra={"order_id": str(order.id), "event_id": event.get("id")},
        )
        return tasks

    # ── Invoice ──────────────────────────────────────────

    @staticmethod
    def _ensure_invoice(db: Session, order: Order, now: datetime) -> Invoice:
        invoice = db.scalars(
            select(Invoice)
            .where(Invoice.order_id == order.id)
            .order_by(Invoice.created_at.desc())
            .limit(1)
        ).first()
        if invoice:
            return invoice

        invoice = Invoice(
            user_id=order.user_id,
            order_id=order.id,
            invoice_number=generate_invoice_number(now),
            status=InvoiceStatus.paid,
            subtotal=order.total_amount,
            tax=0,
            total=order.total_amount,
            currency=order.currency,
            due_date=now + timedelta(days=INVOICE_DUE_DAYS),
            paid_at=now,
        )
        db.add(invoice)
        db.flush()
        for item in order.items:
            snapshot = item.plan_snapshot or {}
            quantity = item.quantity or 1
            db.add(
                InvoiceItem(
                    invoice_id=invoice.id,
                    description=snapshot.get("name") or "Service",
                    quantity=quantity,
                    unit_price=item.unit_price,
                    amount=quantity * item.unit_price,
                )
            )
        db.flush()
        logger.info("Created Invoice: %s", invoice.invoice_number)
        return invoice

    # ── Payment ──────────────────────────────────────────

    @staticmethod
    def _upsert_payment(
        db: Session,
        order: Order,
        invoice: Invoice,
        session_obj: dict[str, Any],
        now: datetime,
    ) -> Payment:
        intent_id = _object_id(session_obj.get("payment_intent"))
        session_id = session_obj.get("id")

        payment = None
        if intent_id:
            payment = db.scalars(
                select(Payment)
                .where(Payment.stripe_payment_intent_id == intent_id)
                .limit(1)
            ).first()
        if payment is None and session_id:
            payment = db.scalars(
                select(Payment)
                .where(Payment.stripe_checkout_session_id == session_id)
                .limit(1)
            ).first()

        amount_total = session_obj.get("amount_total") or 0
        amount = amount_total if amount_total > 0 else order.total_amount
        currency = (order.currency or "USD").upper()

        if payment is None:
            payment = Payment(
                user_id=order.user_id,
                stripe_payment_intent_id=intent_id,
                stripe_checkout_session_id=session_id,
            )
            db.add(payment)
            logger.info("Recording payment for order %s", order.id)
        elif intent_id:
            payment.stripe_payment_intent_id = intent_id

        payment.user_id = order.user_id
        payment.invoice_id = invoice.id
        if session_id:
            payment.stripe_checkout_session_id = session_id
        payment.amount = amount
        payment.currency = currency
        payment.status = PaymentStatus.succeeded
        payment.method = "card"
        payment.updated_at = now
        db.flush()
        return payment

    # ── Services & jobs ──────────────────────────────────

    @staticmethod
    def _prepare_jobs(
        db: Session, order: Order, now: datetime
    ) -> list[ProvisioningTask]:
        items = db.scalars(
            select(OrderItem)
            .where(OrderItem.order_id == order.id)
            .order_by(OrderItem.created_at.asc())
        ).all()

        tasks: list[ProvisioningTask] = []
        for item in items:
            service = Fulfillment._ensure_service(db, order, item, now)
            if service.status == ServiceStatus.active:
                continue
            job = Fulfillment._ensure_job(db, service)
            if job is None:
                continue
            tasks.append(
                ProvisioningTask(
                    job_id=job.id,
                    payload=ProvisionVPSPayload(
                        service_id=service.id,
                        order_id=order.id,
                        plan_id=item.plan_id,
                        user_id=order.user_id,
                    ),
                )
            )
        return tasks

    @staticmethod
    def _ensure_service(
        db: Session, order: Order, item: OrderItem, now: datetime
    ) -> Service:
        service = db.scalars(
            select(Service).where(Service.order_item_id == item.id)
        ).first()
        if service:
            if service.status not in (ServiceStatus.active, ServiceStatus.provisioning):
                logger.info(
                    "Service %s: %s -> provisioning",
                    service.id,
                    service.status.value,
                    extra={"service_id": str(service.id)},
                )
                service.status = ServiceStatus.provisioning
            return service

        service = Service(
            id=uuid.uuid4(),
            user_id=order.user_id,
            order_item_id=item.id,
            plan_id=item.plan_id,
            status=ServiceStatus.provisioning,
            expires_at=service_expiry(item.billing_cycle, now),
            metadata_={
                "provisioning_source": "stripe_webhook",
                "created_at": now.isoformat(),
            },
        )
        db.add(service)
        db.flush()
        logger.info("Created Service: %s", service.id, extra={"service_id": str(service.id)})
        return service

    @staticmethod
    def _ensure_job(db: Session, service: Service) -> ProvisioningJob | None:
        """New pending job, or None when one is already pending or running."""
        latest = db.scalars(
            select(ProvisioningJob)
            .where(
                ProvisioningJob.service_id == service.id,
                ProvisioningJob.job_type == JobType.provision_vps,
            )
            .order_by(ProvisioningJob.created_at.desc())
            .limit(1)
        ).first()
        if latest and latest.status in OPEN_JOB_STATUSES:
            return None

        job = ProvisioningJob(
            id=uuid.uuid4(),
            service_id=service.id,
            job_type=JobType.provision_vps,
            status=JobStatus.pending,
            attempts=0,
            max_attempts=WEBHOOK_JOB_MAX_ATTEMPTS,
        )
        db.add(job)
        db.flush()
        logger.info("Created ProvisioningJob: %s", job.id, extra={"job_id": str(job.id)})
        return job


fulfillment = Fulfillment()
