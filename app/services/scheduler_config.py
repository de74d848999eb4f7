"""Celery configuration and the beat schedule.

A scheduler value resolves from its ``CELERY_*`` (or sweep) environment
variable, then the ``scheduler`` settings domain, then a fallback.
"""

import logging
import os
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from app.db import SessionLocal
from app.models.scheduler import ScheduledTask, ScheduleType
from app.schemas.tasks import (
    QUEUE_DEFAULT,
    QUEUE_LOW,
    TYPE_EXPIRE_SERVICE,
    TYPE_RENEWAL_REMINDER,
)
from app.services.domain_settings import scheduler_settings

logger = logging.getLogger(__name__)

DEFAULT_BROKER_URL = "redis://localhost:6379/0"
DEFAULT_RESULT_BACKEND = "redis://localhost:6379/1"

EXPIRE_SWEEP_ENTRY = "service-expire-sweep"
RENEWAL_SWEEP_ENTRY = "renewal-reminder-sweep"


def resolve(
    values: dict[str, str], key: str, env_key: str, default: str | None = None
) -> str | None:
    env_value = os.getenv(env_key)
    if env_value:
        return env_value
    return values.get(key) or default


def resolve_int(values: dict[str, str], key: str, env_key: str, default: int) -> int:
    raw = resolve(values, key, env_key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer scheduler setting %s=%r", key, raw)
        return default


def load_scheduler_values() -> dict[str, str]:
    session = SessionLocal()
    try:
        return scheduler_settings.values(session)
    except SQLAlchemyError:
        logger.exception("Failed to load scheduler settings from database.")
        return {}
    finally:
        session.close()


def get_celery_config() -> dict:
    values = load_scheduler_values()
    redis_url = os.getenv("REDIS_URL")
    return {
        "broker_url": resolve(
            values, "broker_url", "CELERY_BROKER_URL", redis_url or DEFAULT_BROKER_URL
        ),
        "result_backend": resolve(
            values,
            "result_backend",
            "CELERY_RESULT_BACKEND",
            redis_url or DEFAULT_RESULT_BACKEND,
        ),
        "timezone": resolve(values, "timezone", "CELERY_TIMEZONE", "UTC"),
        "beat_refresh_seconds": resolve_int(
            values, "beat_refresh_seconds", "CELERY_BEAT_REFRESH_SECONDS", 30
        ),
    }


def _entry(task_name: str, seconds: int, queue: str, args=None, kwargs=None) -> dict:
    return {
        "task": task_name,
        "schedule": timedelta(seconds=max(seconds, 1)),
        "args": args or [],
        "kwargs": kwargs or {},
        "options": {"queue": queue},
    }


def builtin_sweeps(values: dict[str, str]) -> dict[str, dict]:
    """The expiry and renewal reminder scans; always scheduled."""
    return {
        EXPIRE_SWEEP_ENTRY: _entry(
            TYPE_EXPIRE_SERVICE,
            resolve_int(values, "expire_sweep_seconds", "EXPIRE_SWEEP_SECONDS", 3600),
            QUEUE_LOW,
        ),
        RENEWAL_SWEEP_ENTRY: _entry(
            TYPE_RENEWAL_REMINDER,
            resolve_int(values, "renewal_sweep_seconds", "RENEWAL_SWEEP_SECONDS", 86400),
            QUEUE_LOW,
        ),
    }


def build_beat_schedule() -> dict:
    values: dict[str, str] = {}
    tasks: list[ScheduledTask] = []
    session = SessionLocal()
    try:
        values = scheduler_settings.values(session)
        tasks = list(
            session.scalars(
                select(ScheduledTask).where(
                    ScheduledTask.enabled.is_(True),
                    ScheduledTask.schedule_type == ScheduleType.interval,
                )
            )
        )
    except SQLAlchemyError:
        logger.exception("Failed to build Celery beat schedule.")
    finally:
        session.close()

    schedule = builtin_sweeps(values)
    for task in tasks:
        schedule[f"scheduled_task_{task.id}"] = _entry(
            task.task_name,
            task.interval_seconds or 0,
            task.queue or QUEUE_DEFAULT,
            task.args_json,
            task.kwargs_json,
        )
    return schedule
