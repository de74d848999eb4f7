"""Stripe payment gateway integration."""

import json
import logging
from typing import Any

import stripe

from app.config import settings
from app.services.billing.exceptions import InvalidPayload, InvalidSignature

logger = logging.getLogger(__name__)


class StripeGateway:
    """Thin wrapper around the Stripe SDK's webhook verification."""

    def __init__(
        self,
        webhook_secret: str | None = None,
        tolerance: int | None = None,
    ) -> None:
        self._webhook_secret = (
            settings.stripe_webhook_secret if webhook_secret is None else webhook_secret
        )
        self._tolerance = (
            settings.stripe_webhook_tolerance_seconds if tolerance is None else tolerance
        )

    def is_configured(self) -> bool:
        return bool(self._webhook_secret)

    # ── Webhook ──────────────────────────────────────────

    def construct_event(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """Verify the ``Stripe-Signature`` header and return the event as a dict."""
        if not self.is_configured():
            logger.error("Stripe webhook secret is not configured")
            raise InvalidSignature("Webhook secret is not configured")
        if not signature:
            raise InvalidSignature("Missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(
                payload, signature, self._webhook_secret, tolerance=self._tolerance
            )
        except stripe.SignatureVerificationError as exc:
            logger.warning("Stripe signature verification failed: %s", exc)
            raise InvalidSignature() from exc
        except ValueError as exc:
            raise InvalidPayload("Webhook body is not valid JSON") from exc
        # Verified; work on the plain JSON rather than StripeObject.
        data = json.loads(payload)
        if not isinstance(data, dict):
            raise InvalidPayload("Webhook body must be a JSON object")
        if not data.get("id") or not data.get("type"):
            raise InvalidPayload("Event is missing id or type")
        return data


stripe_gateway = StripeGateway()
