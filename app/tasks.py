"""Celery task entry points; one per queue task type."""

import logging
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.celery_app import celery_app
from app.config import settings
from app.db import session_scope
from app.metrics import TASK_RUNS
from app.schemas.tasks import (
    TYPE_EXPIRE_SERVICE,
    TYPE_GENERATE_INVOICE,
    TYPE_PROVISION_VPS,
    TYPE_RENEWAL_REMINDER,
    TYPE_SUSPEND_VPS,
    TYPE_TERMINATE_VPS,
    ExpireServicePayload,
    GenerateInvoicePayload,
    ProvisionVPSPayload,
    RenewalReminderPayload,
    SuspendVPSPayload,
    TerminateVPSPayload,
)
from app.services.billing.exceptions import (
    InvalidPayload,
    NotificationError,
    ProvisioningError,
)
from app.services.provisioning.handlers import task_handlers
from app.services.scan_lease import single_flight

logger = logging.getLogger(__name__)

_retry_options = {
    "retry_backoff": True,
    "retry_backoff_max": settings.task_retry_backoff_max,
    "retry_jitter": True,
    "max_retries": settings.provision_max_retries,
}


def _parse(model: type[BaseModel], kwargs: dict) -> Any:
    try:
        return model.model_validate(kwargs)
    except ValidationError as exc:
        raise InvalidPayload(str(exc)) from exc


def _run(task_name: str, fn: Callable[[Session], Any]) -> Any:
    extra = {"task_name": task_name}
    try:
        with session_scope() as db:
            result = fn(db)
    except Exception:
        TASK_RUNS.labels(task_name=task_name, outcome="error").inc()
        logger.warning("Task %s failed", task_name, extra=extra, exc_info=True)
        raise
    TASK_RUNS.labels(task_name=task_name, outcome="ok").inc()
    return result


def _run_sweep(task_name: str, fn: Callable[[Session], Any]) -> Any:
    with single_flight(task_name) as acquired:
        if not acquired:
            logger.info("Sweep %s already running, skipping", task_name)
            TASK_RUNS.labels(task_name=task_name, outcome="skipped").inc()
            return {"skipped": True}
        return _run(task_name, fn)


@celery_app.task(
    name=TYPE_PROVISION_VPS,
    autoretry_for=(ProvisioningError, SQLAlchemyError),
    **_retry_options,
)
def provision_vps(**kwargs) -> dict:
    payload = _parse(ProvisionVPSPayload, kwargs)
    return _run(
        TYPE_PROVISION_VPS,
        lambda db: {
            "service_id": str(payload.service_id),
            "status": task_handlers.provision(db, payload).status.value,
        },
    )


@celery_app.task(name=TYPE_SUSPEND_VPS, autoretry_for=(SQLAlchemyError,), **_retry_options)
def suspend_vps(**kwargs) -> dict:
    payload = _parse(SuspendVPSPayload, kwargs)
    return _run(
        TYPE_SUSPEND_VPS,
        lambda db: {"status": task_handlers.suspend(db, payload).status.value},
    )


@celery_app.task(name=TYPE_TERMINATE_VPS, autoretry_for=(SQLAlchemyError,), **_retry_options)
def terminate_vps(**kwargs) -> dict:
    payload = _parse(TerminateVPSPayload, kwargs)
    return _run(
        TYPE_TERMINATE_VPS,
        lambda db: {"status": task_handlers.terminate(db, payload).status.value},
    )


@celery_app.task(
    name=TYPE_RENEWAL_REMINDER,
    autoretry_for=(NotificationError, SQLAlchemyError),
    **_retry_options,
)
def renewal_reminder(**kwargs) -> dict:
    payload = _parse(RenewalReminderPayload, kwargs)

    def handle(db: Session) -> dict:
        return {"attempted": task_handlers.renewal_reminder(db, payload)}

    if payload.is_scan:
        return _run_sweep(TYPE_RENEWAL_REMINDER, handle)
    return _run(TYPE_RENEWAL_REMINDER, handle)


@celery_app.task(
    name=TYPE_GENERATE_INVOICE, autoretry_for=(SQLAlchemyError,), **_retry_options
)
def generate_invoice(**kwargs) -> dict:
    payload = _parse(GenerateInvoicePayload, kwargs)
    return _run(
        TYPE_GENERATE_INVOICE,
        lambda db: {
            "invoice_number": task_handlers.generate_invoice(db, payload).invoice_number
        },
    )


@celery_app.task(name=TYPE_EXPIRE_SERVICE, autoretry_for=(SQLAlchemyError,), **_retry_options)
def expire_service(**kwargs) -> dict:
    payload = _parse(ExpireServicePayload, kwargs)

    def handle(db: Session) -> dict:
        return {"suspended": task_handlers.expire(db, payload)}

    if payload.service_id is None:
        return _run_sweep(TYPE_EXPIRE_SERVICE, handle)
    return _run(TYPE_EXPIRE_SERVICE, handle)
