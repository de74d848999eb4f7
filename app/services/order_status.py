"""Forward-only order lifecycle."""

import logging

from app.models.billing import Order, OrderStatus
from app.services.billing.exceptions import InvalidOrderTransition

logger = logging.getLogger(__name__)

ORDER_TRANSITIONS: frozenset[tuple[OrderStatus, OrderStatus]] = frozenset(
    {
        (OrderStatus.draft, OrderStatus.pending_payment),
        (OrderStatus.draft, OrderStatus.cancelled),
        (OrderStatus.pending_payment, OrderStatus.paid),
        (OrderStatus.pending_payment, OrderStatus.cancelled),
        (OrderStatus.paid, OrderStatus.provisioning),
        (OrderStatus.paid, OrderStatus.refunded),
        (OrderStatus.paid, OrderStatus.cancelled),
        (OrderStatus.provisioning, OrderStatus.active),
        (OrderStatus.provisioning, OrderStatus.cancelled),
    }
)

# Applied only when a committed provisioning dispatch could not be queued.
COMPENSATING_TRANSITIONS: frozenset[tuple[OrderStatus, OrderStatus]] = frozenset(
    {(OrderStatus.provisioning, OrderStatus.paid)}
)

TERMINAL_STATUSES = frozenset(
    {OrderStatus.active, OrderStatus.cancelled, OrderStatus.refunded}
)

# Statuses at which a checkout completion has already been applied.
PAID_OR_BEYOND = frozenset(
    {OrderStatus.paid, OrderStatus.provisioning, OrderStatus.active}
)


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return (current, target) in ORDER_TRANSITIONS


def validate_transition(current: OrderStatus, target: OrderStatus) -> None:
    if not can_transition(current, target):
        raise InvalidOrderTransition(current, target)


def transition_order(order: Order, target: OrderStatus) -> None:
    validate_transition(order.status, target)
    logger.info(
        "Order %s: %s -> %s",
        order.id,
        order.status.value,
        target.value,
        extra={"order_id": str(order.id)},
    )
    order.status = target


def compensate_order(order: Order, target: OrderStatus) -> bool:
    """Apply a compensating edge; returns False when the order has moved on."""
    if (order.status, target) not in COMPENSATING_TRANSITIONS:
        return False
    logger.warning(
        "Order %s compensated: %s -> %s",
        order.id,
        order.status.value,
        target.value,
        extra={"order_id": str(order.id)},
    )
    order.status = target
    return True
