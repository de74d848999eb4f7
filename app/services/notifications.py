"""Outbound renewal notifications over an operator-configured webhook."""

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

import httpx

from app.services.runtime_settings import SettingsStore, settings_store

logger = logging.getLogger(__name__)

CHANNEL_AUDIT_ONLY = "audit_log_only"
CHANNEL_WEBHOOK = "external_webhook"


@dataclass(frozen=True)
class DeliveryResult:
    sent: bool
    channel: str
    error: str | None = None


class RenewalNotifier:
    def __init__(
        self,
        store: SettingsStore | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self.store = store or settings_store
        self._client = client

    def send_renewal_reminder(
        self, service_id: uuid.UUID, user_id: uuid.UUID | None, days_left: int
    ) -> DeliveryResult:
        snapshot = self.store.get_fresh()
        if not snapshot.renewal_webhook_url:
            return DeliveryResult(sent=False, channel=CHANNEL_AUDIT_ONLY)

        body = {
            "event": "renewal_reminder",
            "service_id": str(service_id),
            "user_id": str(user_id) if user_id else "",
            "days_left": days_left,
            "sent_at": datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ"),
        }
        headers = {"Content-Type": "application/json"}
        if snapshot.renewal_webhook_token:
            headers["Authorization"] = f"Bearer {snapshot.renewal_webhook_token}"

        try:
            if self._client is not None:
                resp = self._client.post(
                    snapshot.renewal_webhook_url,
                    json=body,
                    headers=headers,
                    timeout=snapshot.notification_timeout_secs,
                )
            else:
                with httpx.Client(timeout=snapshot.notification_timeout_secs) as client:
                    resp = client.post(
                        snapshot.renewal_webhook_url, json=body, headers=headers
                    )
        except httpx.HTTPError as exc:
            logger.warning("Renewal webhook failed for service %s: %s", service_id, exc)
            return DeliveryResult(sent=False, channel=CHANNEL_WEBHOOK, error=str(exc))

        if resp.status_code < 200 or resp.status_code >= 300:
            error = f"webhook returned status {resp.status_code}"
            logger.warning("Renewal webhook for service %s: %s", service_id, error)
            return DeliveryResult(sent=False, channel=CHANNEL_WEBHOOK, error=error)
        return DeliveryResult(sent=True, channel=CHANNEL_WEBHOOK)


renewal_notifier = RenewalNotifier()
