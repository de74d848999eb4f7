"""Secondary gateway events: payment failures, refunds, disputes.

These bypass fulfillment. A reference to a payment we do not know is
tolerated as a no-op so out-of-order or unrelated events still ack.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from app.models.billing import (
    Dispute,
    DisputeStatus,
    Payment,
    PaymentStatus,
    Refund,
    RefundStatus,
)
from app.services.common import utcnow

logger = logging.getLogger(__name__)

_DIALECT_INSERTS = {"postgresql": postgresql_insert, "sqlite": sqlite_insert}


def map_refund_status(gateway_status: str | None) -> RefundStatus:
    if gateway_status == "succeeded":
        return RefundStatus.succeeded
    if gateway_status in ("failed", "canceled"):
        return RefundStatus.failed
    return RefundStatus.pending


def map_dispute_status(gateway_status: str | None) -> DisputeStatus:
    if gateway_status == "won":
        return DisputeStatus.won
    if gateway_status == "lost":
        return DisputeStatus.lost
    if gateway_status in ("warning_under_review", "under_review"):
        return DisputeStatus.under_review
    return DisputeStatus.needs_response


def _event_object(event: dict[str, Any]) -> dict[str, Any]:
    return (event.get("data") or {}).get("object") or {}


def _intent_id(obj: dict[str, Any]) -> str | None:
    value = obj.get("payment_intent")
    if isinstance(value, dict):
        return value.get("id") or None
    return value or None


def _payment_for_intent(db: Session, intent_id: str | None) -> Payment | None:
    if not intent_id:
        return None
    return db.scalars(
        select(Payment).where(Payment.stripe_payment_intent_id == intent_id).limit(1)
    ).first()


def _upsert(db: Session, model, key: str, values: dict[str, Any], updates: list[str]):
    """INSERT ... ON CONFLICT (key) DO UPDATE, then load the winning row."""
    dialect = db.get_bind().dialect.name
    try:
        insert = _DIALECT_INSERTS[dialect]
    except KeyError as exc:
        raise NotImplementedError(f"Upsert not supported on {dialect}") from exc
    stmt = insert(model).values(**values)
    set_ = {column: stmt.excluded[column] for column in updates}
    set_["updated_at"] = utcnow()
    db.execute(stmt.on_conflict_do_update(index_elements=[key], set_=set_))
    db.commit()
    return db.scalars(
        select(model).where(getattr(model, key) == values[key])
    ).one()


class PaymentSync:
    @staticmethod
    def mark_payment_failed(db: Session, event: dict[str, Any]) -> None:
        intent_id = _event_object(event).get("id")
        if not intent_id:
            return
        result = db.execute(
            update(Payment)
            .where(Payment.stripe_payment_intent_id == intent_id)
            .values(status=PaymentStatus.failed, updated_at=utcnow())
        )
        db.commit()
        logger.info("Marked %d payment(s) failed for %s", result.rowcount, intent_id)

    @staticmethod
    def sync_refund(db: Session, event: dict[str, Any]) -> Refund | None:
        charge = _event_object(event)
        payment = _payment_for_intent(db, _intent_id(charge))
        if payment is None:
            logger.info("Refund event for unknown payment; ignoring")
            return None

        payment.status = PaymentStatus.refunded
        refunds = (charge.get("refunds") or {}).get("data") or []
        if not refunds:
            db.commit()
            logger.info("Marked payment %s refunded", payment.id)
            return None

        data = refunds[0]
        refund = _upsert(
            db,
            Refund,
            "stripe_refund_id",
            {
                "payment_id": payment.id,
                "stripe_refund_id": data["id"],
                "amount": data.get("amount") or 0,
                "reason": data.get("reason"),
                "status": map_refund_status(data.get("status")),
            },
            ["amount", "reason", "status"],
        )
        logger.info("Synced refund %s for payment %s", data["id"], payment.id)
        return refund

    @staticmethod
    def sync_dispute(db: Session, event: dict[str, Any]) -> Dispute | None:
        obj = _event_object(event)
        payment = _payment_for_intent(db, _intent_id(obj))
        if payment is None:
            logger.info("Dispute event for unknown payment; ignoring")
            return None

        due_by = (obj.get("evidence_details") or {}).get("due_by")
        dispute = _upsert(
            db,
            Dispute,
            "stripe_dispute_id",
            {
                "payment_id": payment.id,
                "stripe_dispute_id": obj["id"],
                "amount": obj.get("amount") or 0,
                "reason": obj.get("reason"),
                "status": map_dispute_status(obj.get("status")),
                "evidence_due_by": (
                    datetime.fromtimestamp(due_by, tz=UTC) if due_by else None
                ),
            },
            ["amount", "reason", "status", "evidence_due_by"],
        )
        logger.info("Synced dispute %s for payment %s", obj["id"], payment.id)
        return dispute


payment_sync = PaymentSync()
