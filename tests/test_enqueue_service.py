from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import select

from app.models.billing import BillingCycle, OrderStatus
from app.models.service import JobStatus, ProvisioningJob, Service, ServiceStatus
from app.services.billing import enqueue
from app.services.billing.exceptions import EnqueueError
from app.services.billing.fulfillment import fulfillment
from tests.payloads import checkout_event


@pytest.fixture()
def fulfilled(db_session, make_order):
    """An order fulfilled up to the point of dispatch."""
    order = make_order()
    tasks = fulfillment.fulfill_checkout(db_session, checkout_event(order))
    return order, tasks


def test_enqueue_provisioning_sends_one_task_per_job(db_session, fulfilled):
    _order, tasks = fulfilled
    send = MagicMock(return_value="task-123")

    enqueued = enqueue.enqueue_provisioning(db_session, tasks, send=send)

    assert len(enqueued) == 1
    assert enqueued[0].task_id == "task-123"
    assert enqueued[0].queue == "critical"
    name, kwargs, queue = send.call_args.args
    assert name == "vps:provision"
    assert queue == "critical"
    assert kwargs == {
        "service_id": str(tasks[0].payload.service_id),
        "order_id": str(tasks[0].payload.order_id),
        "plan_id": str(tasks[0].payload.plan_id),
        "user_id": str(tasks[0].payload.user_id),
    }


def test_enqueue_failure_compensates_job_service_and_order(db_session, fulfilled):
    order, tasks = fulfilled
    send = MagicMock(side_effect=ConnectionError("broker down"))

    with pytest.raises(EnqueueError) as exc:
        enqueue.enqueue_provisioning(db_session, tasks, send=send)

    assert "broker down" in str(exc.value)
    job = db_session.get(ProvisioningJob, tasks[0].job_id)
    service = db_session.get(Service, tasks[0].payload.service_id)
    db_session.refresh(order)
    assert job.status == JobStatus.failed
    assert job.last_error == "broker down"
    assert job.completed_at is not None
    assert service.status == ServiceStatus.pending
    assert order.status == OrderStatus.paid


def test_enqueue_collects_every_failure(db_session, make_order):
    order = make_order(cycles=(BillingCycle.monthly, BillingCycle.quarterly))
    tasks = fulfillment.fulfill_checkout(db_session, checkout_event(order))
    send = MagicMock(side_effect=[RuntimeError("first"), "task-2"])

    with pytest.raises(EnqueueError) as exc:
        enqueue.enqueue_provisioning(db_session, tasks, send=send)

    assert send.call_count == 2
    assert len(exc.value.messages) == 1
    statuses = sorted(j.status.value for j in db_session.scalars(select(ProvisioningJob)))
    assert statuses == ["failed", "pending"]


def test_compensation_leaves_order_when_a_job_completed(db_session, fulfilled):
    order, tasks = fulfilled
    service = db_session.get(Service, tasks[0].payload.service_id)
    db_session.add(
        ProvisioningJob(service_id=service.id, status=JobStatus.completed, attempts=1)
    )
    db_session.commit()

    enqueue.compensate_failed_enqueue(db_session, tasks[0], "broker down")

    db_session.refresh(order)
    assert order.status == OrderStatus.provisioning


def test_compensation_is_rerunnable(db_session, fulfilled):
    order, tasks = fulfilled

    enqueue.compensate_failed_enqueue(db_session, tasks[0], "first")
    enqueue.compensate_failed_enqueue(db_session, tasks[0], "second")

    job = db_session.get(ProvisioningJob, tasks[0].job_id)
    db_session.refresh(order)
    assert job.status == JobStatus.failed
    assert job.last_error == "first"
    assert order.status == OrderStatus.paid


def test_compensation_does_not_touch_a_service_that_moved_on(db_session, fulfilled):
    _order, tasks = fulfilled
    service = db_session.get(Service, tasks[0].payload.service_id)
    service.status = ServiceStatus.active
    db_session.commit()

    enqueue.compensate_failed_enqueue(db_session, tasks[0], "late failure")

    db_session.refresh(service)
    assert service.status == ServiceStatus.active


def test_send_celery_task_uses_send_task():
    async_result = MagicMock(id="abc-123")
    with patch("app.celery_app.celery_app.send_task", return_value=async_result) as send_task:
        task_id = enqueue.send_celery_task("vps:provision", {"service_id": "s"}, "critical")

    assert task_id == "abc-123"
    send_task.assert_called_once_with(
        "vps:provision", kwargs={"service_id": "s"}, queue="critical"
    )
