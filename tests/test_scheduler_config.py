from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from app.models.domain_settings import DomainSetting, SettingDomain
from app.models.scheduler import ScheduledTask, ScheduleType
from app.services import scheduler_config


@pytest.fixture
def clear_scheduler_env(monkeypatch: pytest.MonkeyPatch) -> None:
    keys = (
        "CELERY_BROKER_URL",
        "CELERY_RESULT_BACKEND",
        "CELERY_TIMEZONE",
        "CELERY_BEAT_REFRESH_SECONDS",
        "EXPIRE_SWEEP_SECONDS",
        "RENEWAL_SWEEP_SECONDS",
        "REDIS_URL",
    )
    for key in keys:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def broken_session() -> MagicMock:
    session = MagicMock(name="scheduler_session")
    session.query.side_effect = OperationalError("SELECT", {}, Exception("db down"))
    return session


def _scheduler_setting(db, key: str, value: str) -> None:
    db.add(DomainSetting(domain=SettingDomain.scheduler, key=key, value_text=value))
    db.commit()


def test_resolve_prefers_env_then_db_then_default(
    clear_scheduler_env: None, monkeypatch: pytest.MonkeyPatch
) -> None:
    values = {"timezone": "Europe/Berlin"}
    assert scheduler_config.resolve({}, "timezone", "CELERY_TIMEZONE", "UTC") == "UTC"
    assert scheduler_config.resolve(values, "timezone", "CELERY_TIMEZONE", "UTC") == "Europe/Berlin"
    monkeypatch.setenv("CELERY_TIMEZONE", "Africa/Lagos")
    assert scheduler_config.resolve(values, "timezone", "CELERY_TIMEZONE", "UTC") == "Africa/Lagos"


def test_resolve_int_ignores_garbage(clear_scheduler_env: None) -> None:
    values = {"expire_sweep_seconds": "soon"}
    assert (
        scheduler_config.resolve_int(values, "expire_sweep_seconds", "EXPIRE_SWEEP_SECONDS", 3600)
        == 3600
    )
    assert (
        scheduler_config.resolve_int(
            {"expire_sweep_seconds": "900"}, "expire_sweep_seconds", "EXPIRE_SWEEP_SECONDS", 3600
        )
        == 900
    )


def test_get_celery_config_reads_database(db_session, clear_scheduler_env: None) -> None:
    _scheduler_setting(db_session, "broker_url", "redis://broker.example:6379/2")
    _scheduler_setting(db_session, "result_backend", "redis://backend.example:6379/3")
    _scheduler_setting(db_session, "timezone", "Europe/Berlin")
    _scheduler_setting(db_session, "beat_refresh_seconds", "45")

    assert scheduler_config.get_celery_config() == {
        "broker_url": "redis://broker.example:6379/2",
        "result_backend": "redis://backend.example:6379/3",
        "timezone": "Europe/Berlin",
        "beat_refresh_seconds": 45,
    }


def test_get_celery_config_env_overrides_database(
    db_session, clear_scheduler_env: None, monkeypatch: pytest.MonkeyPatch
) -> None:
    _scheduler_setting(db_session, "broker_url", "redis://broker.example:6379/2")
    monkeypatch.setenv("CELERY_BROKER_URL", "redis://env-broker:6379/0")

    assert scheduler_config.get_celery_config()["broker_url"] == "redis://env-broker:6379/0"


def test_get_celery_config_falls_back_to_redis_url(
    db_session, clear_scheduler_env: None, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("REDIS_URL", "redis://shared.example:6379/5")

    config = scheduler_config.get_celery_config()

    assert config["broker_url"] == "redis://shared.example:6379/5"
    assert config["result_backend"] == "redis://shared.example:6379/5"
    assert config["timezone"] == "UTC"
    assert config["beat_refresh_seconds"] == 30


def test_get_celery_config_uses_local_defaults_on_failure(
    broken_session: MagicMock, clear_scheduler_env: None
) -> None:
    with (
        patch.object(scheduler_config, "SessionLocal", return_value=broken_session),
        patch.object(scheduler_config.logger, "exception") as logger_mock,
    ):
        config = scheduler_config.get_celery_config()

    assert config == {
        "broker_url": "redis://localhost:6379/0",
        "result_backend": "redis://localhost:6379/1",
        "timezone": "UTC",
        "beat_refresh_seconds": 30,
    }
    logger_mock.assert_called_once_with("Failed to load scheduler settings from database.")
    broken_session.close.assert_called_once()


def test_build_beat_schedule_includes_builtin_sweeps(
    db_session, clear_scheduler_env: None
) -> None:
    schedule = scheduler_config.build_beat_schedule()

    expire = schedule[scheduler_config.EXPIRE_SWEEP_ENTRY]
    renewal = schedule[scheduler_config.RENEWAL_SWEEP_ENTRY]
    assert expire["task"] == "service:expire"
    assert expire["schedule"] == timedelta(hours=1)
    assert expire["kwargs"] == {}
    assert expire["options"] == {"queue": "low"}
    assert renewal["task"] == "billing:renewal_reminder"
    assert renewal["schedule"] == timedelta(days=1)
    assert renewal["options"] == {"queue": "low"}


def test_build_beat_schedule_sweep_interval_from_settings(
    db_session, clear_scheduler_env: None
) -> None:
    _scheduler_setting(db_session, "expire_sweep_seconds", "600")

    schedule = scheduler_config.build_beat_schedule()

    assert schedule[scheduler_config.EXPIRE_SWEEP_ENTRY]["schedule"] == timedelta(minutes=10)


def test_build_beat_schedule_adds_enabled_scheduled_tasks(
    db_session, clear_scheduler_env: None
) -> None:
    enabled = ScheduledTask(
        name="nightly invoices",
        task_name="billing:generate_invoice",
        queue="default",
        schedule_type=ScheduleType.interval,
        interval_seconds=0,
        kwargs_json={"service_id": "abc"},
        enabled=True,
    )
    disabled = ScheduledTask(
        name="disabled",
        task_name="vps:suspend",
        schedule_type=ScheduleType.interval,
        interval_seconds=60,
        enabled=False,
    )
    db_session.add_all([enabled, disabled])
    db_session.commit()

    schedule = scheduler_config.build_beat_schedule()

    key = f"scheduled_task_{enabled.id}"
    assert f"scheduled_task_{disabled.id}" not in schedule
    assert schedule[key]["task"] == "billing:generate_invoice"
    assert schedule[key]["schedule"] == timedelta(seconds=1)
    assert schedule[key]["args"] == []
    assert schedule[key]["kwargs"] == {"service_id": "abc"}
    assert schedule[key]["options"] == {"queue": "default"}


def test_build_beat_schedule_keeps_sweeps_when_db_fails(
    broken_session: MagicMock, clear_scheduler_env: None
) -> None:
    with (
        patch.object(scheduler_config, "SessionLocal", return_value=broken_session),
        patch.object(scheduler_config.logger, "exception") as logger_mock,
    ):
        schedule = scheduler_config.build_beat_schedule()

    assert set(schedule) == {
        scheduler_config.EXPIRE_SWEEP_ENTRY,
        scheduler_config.RENEWAL_SWEEP_ENTRY,
    }
    logger_mock.assert_called_once_with("Failed to build Celery beat schedule.")
    broken_session.close.assert_called_once()
