"""Idempotency ledger and dispatch for inbound payment events."""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.metrics import WEBHOOK_EVENTS
from app.models.billing import PaymentEvent
from app.services.billing.enqueue import enqueue_provisioning
from app.services.billing.fulfillment import fulfillment
from app.services.billing.sync import payment_sync
from app.services.common import utcnow
from app.services.payment_gateway import StripeGateway, stripe_gateway

logger = logging.getLogger(__name__)

PROCESSED = "processed"
ALREADY_PROCESSED = "already_processed"
FAILED = "failed"


@dataclass(frozen=True)
class IngestResult:
    status: str
    event_id: str
    event_type: str
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status != FAILED


def handle_checkout_completed(db: Session, event: dict[str, Any]) -> None:
    tasks = fulfillment.fulfill_checkout(db, event)
    enqueue_provisioning(db, tasks)


EventHandler = Callable[[Session, dict[str, Any]], Any]

EVENT_HANDLERS: dict[str, EventHandler] = {
    "checkout.session.completed": handle_checkout_completed,
    "payment_intent.payment_failed": payment_sync.mark_payment_failed,
    "charge.refunded": payment_sync.sync_refund,
    "charge.dispute.created": payment_sync.sync_dispute,
}


class PaymentEvents:
    def __init__(self, gateway: StripeGateway | None = None) -> None:
        self.gateway = gateway or stripe_gateway

    def ingest(self, db: Session, payload: bytes, signature: str | None) -> IngestResult:
        """Verify, record, then dispatch one gateway event.

        Signature and payload errors propagate before anything is written.
        Handler errors are recorded on the ledger row and reported as FAILED.
        """
        event = self.gateway.construct_event(payload, signature)
        event_id = event["id"]
        event_type = event["type"]
        log_extra = {"event_id": event_id, "event_type": event_type}

        if self._exists(db, event_id):
            logger.info("Event %s already processed", event_id, extra=log_extra)
            WEBHOOK_EVENTS.labels(event_type=event_type, outcome=ALREADY_PROCESSED).inc()
            return IngestResult(ALREADY_PROCESSED, event_id, event_type)

        record = PaymentEvent(
            stripe_event_id=event_id,
            event_type=event_type,
            payload=event.get("data"),
            processed=False,
        )
        db.add(record)
        try:
            db.commit()
        except IntegrityError:
            # A concurrent delivery of the same event won the insert.
            db.rollback()
            WEBHOOK_EVENTS.labels(event_type=event_type, outcome=ALREADY_PROCESSED).inc()
            return IngestResult(ALREADY_PROCESSED, event_id, event_type)
        record_id = record.id

        error = None
        handler = EVENT_HANDLERS.get(event_type)
        if handler is None:
            logger.info("Ignoring unhandled event type %s", event_type, extra=log_extra)
        else:
            try:
                handler(db, event)
            except Exception as exc:
                db.rollback()
                error = str(exc) or exc.__class__.__name__
                logger.exception("Failed to process event %s", event_id, extra=log_extra)

        self._mark_processed(db, record_id, error)
        outcome = FAILED if error else PROCESSED
        WEBHOOK_EVENTS.labels(event_type=event_type, outcome=outcome).inc()
        return IngestResult(outcome, event_id, event_type, error)

    @staticmethod
    def _exists(db: Session, event_id: str) -> bool:
        stmt = select(PaymentEvent.id).where(PaymentEvent.stripe_event_id == event_id)
        return db.scalar(stmt) is not None

    @staticmethod
    def _mark_processed(db: Session, record_id, error: str | None) -> None:
        record = db.get(PaymentEvent, record_id)
        record.processed = True
        record.error_message = error
        record.processed_at = utcnow()
        db.commit()


payment_events = PaymentEvents()
