"""Billing and provisioning domain exceptions.

Each exception carries the HTTP status and error code used when it
reaches the API layer; worker code only cares about the type.
"""


class BillingError(Exception):
    """Base exception for the fulfillment pipeline."""

    status_code = 500
    code = "billing_error"


class InvalidSignature(BillingError):
    """Raised when a webhook body does not match its signature header."""

    status_code = 400
    code = "invalid_signature"


class InvalidPayload(BillingError):
    """Raised when a webhook body or task payload cannot be parsed."""

    status_code = 400
    code = "invalid_payload"


class MissingOrderReference(BillingError):
    """Raised when a checkout event carries no order id."""

    status_code = 400
    code = "missing_order_reference"


class OrderNotFound(BillingError):
    status_code = 404
    code = "order_not_found"


class InvalidOrderTransition(BillingError):
    """Raised when an order status change is not an edge of the status graph."""

    status_code = 409
    code = "invalid_order_transition"

    def __init__(self, current: object, target: object) -> None:
        self.current = getattr(current, "value", current)
        self.target = getattr(target, "value", target)
        super().__init__(
            f"Cannot transition order from {self.current} to {self.target}"
        )


class EnqueueError(BillingError):
    """Raised after one or more provisioning tasks failed to reach the queue."""

    code = "enqueue_failed"

    def __init__(self, messages: list[str]) -> None:
        self.messages = messages
        super().__init__("; ".join(messages))


class ServiceNotFound(BillingError):
    status_code = 404
    code = "service_not_found"


class ServiceNotProvisionable(BillingError):
    status_code = 400
    code = "service_not_provisionable"


class ServiceBusy(ServiceNotProvisionable):
    """Raised when a reprovision is requested for an active or provisioning service."""

    status_code = 409
    code = "service_busy"


class ProvisioningError(BillingError):
    """Raised when an external provisioning step fails."""

    code = "provisioning_failed"


class ProvisioningCancelled(ProvisioningError):
    code = "provisioning_cancelled"


class NotificationError(BillingError):
    """Raised when a renewal notification could not be delivered."""

    code = "notification_failed"
