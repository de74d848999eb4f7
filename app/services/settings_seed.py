"""Default settings rows.

Rows are created once from the environment and never overwritten, so values
an operator edits later survive restarts.
"""

import os

from sqlalchemy.orm import Session

from app.models.domain_settings import SettingValueType
from app.services.domain_settings import (
    DomainSettings,
    notification_settings,
    scheduler_settings,
)
from app.services.scheduler_config import DEFAULT_BROKER_URL, DEFAULT_RESULT_BACKEND


def _first_env(*names: str, default: str | None = None) -> str | None:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return default


def _notification_defaults() -> list[dict]:
    return [
        {
            "key": "renewal_webhook_url",
            "value_type": SettingValueType.string,
            "value_text": _first_env("RENEWAL_WEBHOOK_URL"),
        },
        {
            "key": "renewal_webhook_token",
            "value_type": SettingValueType.string,
            "value_text": _first_env("RENEWAL_WEBHOOK_TOKEN"),
            "is_secret": True,
        },
        {
            "key": "notification_timeout_secs",
            "value_type": SettingValueType.integer,
            "value_text": _first_env("NOTIFICATION_TIMEOUT_SECS", default="5"),
        },
    ]


def _scheduler_defaults() -> list[dict]:
    return [
        {
            "key": "broker_url",
            "value_type": SettingValueType.string,
            "value_text": _first_env(
                "CELERY_BROKER_URL", "REDIS_URL", default=DEFAULT_BROKER_URL
            ),
        },
        {
            "key": "result_backend",
            "value_type": SettingValueType.string,
            "value_text": _first_env(
                "CELERY_RESULT_BACKEND", "REDIS_URL", default=DEFAULT_RESULT_BACKEND
            ),
        },
        {
            "key": "timezone",
            "value_type": SettingValueType.string,
            "value_text": _first_env("CELERY_TIMEZONE", default="UTC"),
        },
        {
            "key": "beat_refresh_seconds",
            "value_type": SettingValueType.integer,
            "value_text": _first_env("CELERY_BEAT_REFRESH_SECONDS", default="30"),
        },
        {
            "key": "expire_sweep_seconds",
            "value_type": SettingValueType.integer,
            "value_text": _first_env("EXPIRE_SWEEP_SECONDS", default="3600"),
        },
        {
            "key": "renewal_sweep_seconds",
            "value_type": SettingValueType.integer,
            "value_text": _first_env("RENEWAL_SWEEP_SECONDS", default="86400"),
        },
    ]


def _seed(service: DomainSettings, db: Session, rows: list[dict]) -> None:
    for row in rows:
        service.ensure_by_key(db, **row)


def seed_notification_settings(db: Session) -> None:
    _seed(notification_settings, db, _notification_defaults())


def seed_scheduler_settings(db: Session) -> None:
    _seed(scheduler_settings, db, _scheduler_defaults())


def seed_all(db: Session) -> None:
    seed_notification_settings(db)
    seed_scheduler_settings(db)
    db.commit()
