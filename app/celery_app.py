import logging

from celery import Celery
from celery.signals import setup_logging, worker_shutting_down
from kombu import Queue

from app.config import settings
from app.logging import configure_logging
from app.schemas.tasks import (
    QUEUE_CRITICAL,
    QUEUE_DEFAULT,
    QUEUE_LOW,
    TYPE_EXPIRE_SERVICE,
    TYPE_GENERATE_INVOICE,
    TYPE_PROVISION_VPS,
    TYPE_RENEWAL_REMINDER,
    TYPE_SUSPEND_VPS,
    TYPE_TERMINATE_VPS,
)
from app.services.provisioning.backend import shutdown_event
from app.services.scheduler_config import get_celery_config

logger = logging.getLogger(__name__)

celery_app = Celery("vps_billing")
celery_app.conf.update(get_celery_config())
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_queues=(Queue(QUEUE_CRITICAL), Queue(QUEUE_DEFAULT), Queue(QUEUE_LOW)),
    task_default_queue=QUEUE_DEFAULT,
    task_routes={
        TYPE_PROVISION_VPS: {"queue": QUEUE_CRITICAL},
        TYPE_SUSPEND_VPS: {"queue": QUEUE_DEFAULT},
        TYPE_TERMINATE_VPS: {"queue": QUEUE_DEFAULT},
        TYPE_GENERATE_INVOICE: {"queue": QUEUE_DEFAULT},
        TYPE_RENEWAL_REMINDER: {"queue": QUEUE_LOW},
        TYPE_EXPIRE_SERVICE: {"queue": QUEUE_LOW},
    },
    # Workers drain critical before default before low.
    broker_transport_options={"queue_order_strategy": "priority"},
    # Threads share one cancellation event and one settings snapshot.
    worker_pool="threads",
    worker_concurrency=settings.worker_concurrency,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    beat_scheduler="app.celery_scheduler:DbScheduler",
)
celery_app.conf.imports = ("app.tasks",)


@setup_logging.connect
def _configure_worker_logging(**_kwargs) -> None:
    configure_logging()


@worker_shutting_down.connect
def _cancel_in_flight_provisioning(**_kwargs) -> None:
    logger.info("Worker shutting down, cancelling in-flight provisioning")
    shutdown_event.set()
