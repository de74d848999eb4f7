from unittest.mock import MagicMock, patch

from sqlalchemy.exc import OperationalError

from app.db import SessionLocal
from app.models.domain_settings import DomainSetting, SettingDomain
from app.services import runtime_settings
from app.services.runtime_settings import SettingsSnapshot, SettingsStore


def _store_setting(db, key, value):
    db.add(DomainSetting(domain=SettingDomain.notification, key=key, value_text=value))
    db.commit()


def test_from_env_uses_settings_defaults():
    snapshot = SettingsSnapshot.from_env()
    assert snapshot.renewal_webhook_url == ""
    assert snapshot.renewal_webhook_token == ""
    assert snapshot.notification_timeout_secs == 5.0


def test_from_values_prefers_database_values():
    snapshot = SettingsSnapshot.from_values(
        {
            "renewal_webhook_url": "https://hooks.example.com/r",
            "notification_timeout_secs": "12.5",
        }
    )
    assert snapshot.renewal_webhook_url == "https://hooks.example.com/r"
    assert snapshot.renewal_webhook_token == ""
    assert snapshot.notification_timeout_secs == 12.5


def test_from_values_rejects_bad_timeouts():
    assert SettingsSnapshot.from_values({"notification_timeout_secs": "abc"}).notification_timeout_secs == 5.0
    assert SettingsSnapshot.from_values({"notification_timeout_secs": "-1"}).notification_timeout_secs == 5.0
    assert SettingsSnapshot.from_values({"notification_timeout_secs": "0"}).notification_timeout_secs == 5.0


def test_reload_swaps_snapshot(db_session):
    store = SettingsStore(max_age_seconds=3600, session_factory=SessionLocal)
    before = store.get()
    _store_setting(db_session, "renewal_webhook_url", "https://hooks.example.com/r")

    assert store.get() is before
    reloaded = store.reload()

    assert reloaded is not before
    assert store.get() is reloaded
    assert reloaded.renewal_webhook_url == "https://hooks.example.com/r"


def test_get_fresh_keeps_snapshot_within_max_age(db_session):
    store = SettingsStore(max_age_seconds=3600, session_factory=SessionLocal)
    _store_setting(db_session, "renewal_webhook_url", "https://hooks.example.com/r")

    assert store.get_fresh().renewal_webhook_url == ""


def test_get_fresh_reloads_when_stale(db_session):
    store = SettingsStore(max_age_seconds=0, session_factory=SessionLocal)
    _store_setting(db_session, "renewal_webhook_token", "tok")

    assert store.get_fresh().renewal_webhook_token == "tok"


def test_get_fresh_keeps_previous_snapshot_on_database_error():
    session = MagicMock()
    store = SettingsStore(max_age_seconds=0, session_factory=lambda: session)
    previous = store.get()
    with patch.object(
        runtime_settings.notification_settings,
        "values",
        side_effect=OperationalError("SELECT", {}, Exception("db down")),
    ):
        assert store.get_fresh() is previous
    session.close.assert_called_once()


def test_get_fresh_skips_reload_while_another_thread_reloads():
    store = SettingsStore(max_age_seconds=0, session_factory=MagicMock())
    previous = store.get()
    store._reload_lock.acquire()
    try:
        assert store.get_fresh() is previous
    finally:
        store._reload_lock.release()
