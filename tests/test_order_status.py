import uuid

import pytest

from app.models.billing import Order, OrderStatus
from app.services import order_status
from app.services.billing.exceptions import InvalidOrderTransition

_STAGE = {
    OrderStatus.draft: 0,
    OrderStatus.pending_payment: 1,
    OrderStatus.paid: 2,
    OrderStatus.provisioning: 3,
    OrderStatus.active: 4,
    OrderStatus.cancelled: 5,
    OrderStatus.refunded: 5,
}


def _order(status: OrderStatus) -> Order:
    return Order(id=uuid.uuid4(), user_id=uuid.uuid4(), status=status)


def test_every_edge_moves_forward():
    for current, target in order_status.ORDER_TRANSITIONS:
        assert _STAGE[target] > _STAGE[current], (current, target)


def test_terminal_statuses_have_no_outgoing_edges():
    for current, _target in order_status.ORDER_TRANSITIONS:
        assert current not in order_status.TERMINAL_STATUSES


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (OrderStatus.pending_payment, OrderStatus.paid),
        (OrderStatus.paid, OrderStatus.provisioning),
        (OrderStatus.provisioning, OrderStatus.active),
        (OrderStatus.paid, OrderStatus.refunded),
    ],
)
def test_transition_order_applies_defined_edges(current, target):
    order = _order(current)
    order_status.transition_order(order, target)
    assert order.status == target


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (OrderStatus.draft, OrderStatus.paid),
        (OrderStatus.pending_payment, OrderStatus.active),
        (OrderStatus.provisioning, OrderStatus.paid),
        (OrderStatus.active, OrderStatus.provisioning),
        (OrderStatus.cancelled, OrderStatus.paid),
    ],
)
def test_transition_order_rejects_undefined_edges(current, target):
    order = _order(current)
    with pytest.raises(InvalidOrderTransition) as exc:
        order_status.transition_order(order, target)
    assert order.status == current
    assert exc.value.current == current.value
    assert exc.value.target == target.value


def test_compensate_order_only_reverts_provisioning_to_paid():
    order = _order(OrderStatus.provisioning)
    assert order_status.compensate_order(order, OrderStatus.paid) is True
    assert order.status == OrderStatus.paid

    active = _order(OrderStatus.active)
    assert order_status.compensate_order(active, OrderStatus.paid) is False
    assert active.status == OrderStatus.active
