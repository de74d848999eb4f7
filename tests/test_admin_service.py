import uuid
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select

from app.models.billing import OrderStatus
from app.models.service import JobStatus, ProvisioningJob, ServiceStatus
from app.services.admin import ADMIN_JOB_MAX_ATTEMPTS, provisioning_admin
from app.services.billing.exceptions import (
    EnqueueError,
    ServiceBusy,
    ServiceNotFound,
    ServiceNotProvisionable,
)


@pytest.fixture()
def stalled(make_service, make_job):
    """A service whose provisioning failed and whose order was compensated."""
    service = make_service(status=ServiceStatus.pending, order_status=OrderStatus.paid)
    make_job(service, status=JobStatus.failed, attempts=1)
    return service


def test_reprovision_creates_job_and_dispatches(db_session, stalled):
    send = MagicMock(return_value="task-9")

    result = provisioning_admin.reprovision(db_session, str(stalled.id), send=send)

    assert result["task_id"] == "task-9"
    assert result["queue"] == "critical"
    assert result["status"] == "pending"
    assert result["service_id"] == str(stalled.id)
    job = db_session.get(ProvisioningJob, uuid.UUID(result["job_id"]))
    assert job.status == JobStatus.pending
    assert job.attempts == 0
    assert job.max_attempts == ADMIN_JOB_MAX_ATTEMPTS
    db_session.refresh(stalled)
    assert stalled.status == ServiceStatus.provisioning
    assert stalled.order_item.order.status == OrderStatus.provisioning
    assert send.call_args.args[1]["service_id"] == str(stalled.id)


def test_reprovision_unknown_or_malformed_id(db_session):
    with pytest.raises(ServiceNotFound):
        provisioning_admin.reprovision(db_session, str(uuid.uuid4()), send=MagicMock())
    with pytest.raises(ServiceNotFound):
        provisioning_admin.reprovision(db_session, "not-a-uuid", send=MagicMock())


@pytest.mark.parametrize("status", [ServiceStatus.active, ServiceStatus.provisioning])
def test_reprovision_rejects_busy_service(db_session, make_service, status):
    service = make_service(status=status)
    with pytest.raises(ServiceBusy):
        provisioning_admin.reprovision(db_session, str(service.id), send=MagicMock())


def test_reprovision_rejects_terminated_service(db_session, make_service):
    service = make_service(status=ServiceStatus.terminated)
    with pytest.raises(ServiceNotProvisionable) as exc:
        provisioning_admin.reprovision(db_session, str(service.id), send=MagicMock())
    assert not isinstance(exc.value, ServiceBusy)


def test_reprovision_rejects_open_job(db_session, make_service, make_job):
    service = make_service(status=ServiceStatus.suspended)
    make_job(service, status=JobStatus.running)
    with pytest.raises(ServiceBusy):
        provisioning_admin.reprovision(db_session, str(service.id), send=MagicMock())


def test_reprovision_enqueue_failure_compensates(db_session, stalled):
    send = MagicMock(side_effect=ConnectionError("broker down"))

    with pytest.raises(EnqueueError):
        provisioning_admin.reprovision(db_session, str(stalled.id), send=send)

    db_session.refresh(stalled)
    assert stalled.status == ServiceStatus.pending
    assert stalled.order_item.order.status == OrderStatus.paid
    statuses = {j.status for j in db_session.scalars(select(ProvisioningJob))}
    assert statuses == {JobStatus.failed}


def test_jobs_overview_counts_every_status(db_session, make_service, make_job):
    first = make_service(status=ServiceStatus.provisioning)
    second = make_service(status=ServiceStatus.pending)
    make_job(first, status=JobStatus.running)
    make_job(second, status=JobStatus.failed)
    make_job(second, status=JobStatus.failed)

    overview = provisioning_admin.jobs_overview(db_session, limit=2)

    assert overview["counts"] == {
        "pending": 0,
        "running": 1,
        "completed": 0,
        "failed": 2,
    }
    assert len(overview["jobs"]) == 2
