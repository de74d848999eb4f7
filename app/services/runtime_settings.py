"""Live notification settings shared by API and worker threads.

Readers take the current ``SettingsSnapshot`` reference and never lock.
A reload builds a whole new snapshot and swaps the reference, so a reader
sees either the old values or the new ones, never a mix.
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from time import monotonic

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.db import SessionLocal
from app.services.domain_settings import notification_settings

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECS = 5.0


def _positive_float(raw: str | None, default: float) -> float:
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


@dataclass(frozen=True)
class SettingsSnapshot:
    renewal_webhook_url: str = ""
    renewal_webhook_token: str = ""
    notification_timeout_secs: float = DEFAULT_TIMEOUT_SECS
    loaded_at: float = field(default_factory=monotonic)

    @classmethod
    def from_env(cls) -> "SettingsSnapshot":
        return cls(
            renewal_webhook_url=settings.renewal_webhook_url or "",
            renewal_webhook_token=settings.renewal_webhook_token or "",
            notification_timeout_secs=_positive_float(
                str(settings.notification_timeout_secs), DEFAULT_TIMEOUT_SECS
            ),
        )

    @classmethod
    def from_values(cls, values: dict[str, str]) -> "SettingsSnapshot":
        """Database values win; missing or empty keys fall back to the environment."""
        base = cls.from_env()
        return cls(
            renewal_webhook_url=values.get("renewal_webhook_url")
            or base.renewal_webhook_url,
            renewal_webhook_token=values.get("renewal_webhook_token")
            or base.renewal_webhook_token,
            notification_timeout_secs=_positive_float(
                values.get("notification_timeout_secs"),
                base.notification_timeout_secs,
            ),
        )


class SettingsStore:
    def __init__(
        self,
        max_age_seconds: float | None = None,
        session_factory: Callable[[], Session] | None = None,
    ) -> None:
        self._snapshot = SettingsSnapshot.from_env()
        self._max_age = (
            settings.settings_reload_seconds if max_age_seconds is None else max_age_seconds
        )
        self._session_factory = session_factory or SessionLocal
        self._reload_lock = threading.Lock()

    def get(self) -> SettingsSnapshot:
        return self._snapshot

    def get_fresh(self) -> SettingsSnapshot:
        """Current snapshot, reloading first when it is older than the max age.

        Only one thread reloads; the others keep reading the old snapshot.
        """
        snapshot = self._snapshot
        if monotonic() - snapshot.loaded_at < self._max_age:
            return snapshot
        if not self._reload_lock.acquire(blocking=False):
            return snapshot
        try:
            return self._load()
        except SQLAlchemyError:
            logger.exception("Failed to refresh notification settings, keeping previous")
            return snapshot
        finally:
            self._reload_lock.release()

    def reload(self) -> SettingsSnapshot:
        with self._reload_lock:
            return self._load()

    def _load(self) -> SettingsSnapshot:
        db = self._session_factory()
        try:
            values = notification_settings.values(db)
        finally:
            db.close()
        snapshot = SettingsSnapshot.from_values(values)
        self._snapshot = snapshot
        logger.info(
            "Loaded notification settings (webhook %s)",
            "configured" if snapshot.renewal_webhook_url else "not configured",
        )
        return snapshot


settings_store = SettingsStore()
