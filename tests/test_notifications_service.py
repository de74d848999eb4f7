import json
import uuid

import httpx

from app.services.notifications import (
    CHANNEL_AUDIT_ONLY,
    CHANNEL_WEBHOOK,
    RenewalNotifier,
)
from app.services.runtime_settings import SettingsSnapshot


class StaticStore:
    def __init__(self, snapshot: SettingsSnapshot):
        self.snapshot = snapshot

    def get_fresh(self) -> SettingsSnapshot:
        return self.snapshot


def _notifier(handler, **snapshot) -> RenewalNotifier:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return RenewalNotifier(store=StaticStore(SettingsSnapshot(**snapshot)), client=client)


def test_without_webhook_url_only_audits():
    def handler(request):
        raise AssertionError("no request expected")

    notifier = _notifier(handler)

    result = notifier.send_renewal_reminder(uuid.uuid4(), uuid.uuid4(), 3)

    assert result.sent is False
    assert result.channel == CHANNEL_AUDIT_ONLY
    assert result.error is None


def test_posts_reminder_with_bearer_token():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["auth"] = request.headers.get("authorization")
        captured["body"] = json.loads(request.content)
        return httpx.Response(204)

    service_id, user_id = uuid.uuid4(), uuid.uuid4()
    notifier = _notifier(
        handler,
        renewal_webhook_url="https://hooks.example.com/renewals",
        renewal_webhook_token="secret-token",
    )

    result = notifier.send_renewal_reminder(service_id, user_id, 7)

    assert result.sent is True
    assert result.channel == CHANNEL_WEBHOOK
    assert captured["url"] == "https://hooks.example.com/renewals"
    assert captured["auth"] == "Bearer secret-token"
    body = captured["body"]
    assert body["event"] == "renewal_reminder"
    assert body["service_id"] == str(service_id)
    assert body["user_id"] == str(user_id)
    assert body["days_left"] == 7
    assert body["sent_at"].endswith("Z")


def test_no_authorization_header_without_token():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200)

    notifier = _notifier(handler, renewal_webhook_url="https://hooks.example.com/r")

    assert notifier.send_renewal_reminder(uuid.uuid4(), None, 1).sent is True
    assert seen["auth"] is None


def test_non_2xx_is_a_delivery_error():
    notifier = _notifier(
        lambda request: httpx.Response(502),
        renewal_webhook_url="https://hooks.example.com/r",
    )

    result = notifier.send_renewal_reminder(uuid.uuid4(), uuid.uuid4(), 3)

    assert result.sent is False
    assert result.channel == CHANNEL_WEBHOOK
    assert result.error == "webhook returned status 502"


def test_transport_error_is_a_delivery_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    notifier = _notifier(handler, renewal_webhook_url="https://hooks.example.com/r")

    result = notifier.send_renewal_reminder(uuid.uuid4(), uuid.uuid4(), 3)

    assert result.sent is False
    assert "connection refused" in result.error
