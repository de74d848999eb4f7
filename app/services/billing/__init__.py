from app.services.billing.exceptions import (
    BillingError,
    EnqueueError,
    InvalidOrderTransition,
    InvalidPayload,
    InvalidSignature,
    MissingOrderReference,
    NotificationError,
    OrderNotFound,
    ProvisioningCancelled,
    ProvisioningError,
    ServiceBusy,
    ServiceNotFound,
    ServiceNotProvisionable,
)

__all__ = [
    "BillingError",
    "EnqueueError",
    "InvalidOrderTransition",
    "InvalidPayload",
    "InvalidSignature",
    "MissingOrderReference",
    "NotificationError",
    "OrderNotFound",
    "ProvisioningCancelled",
    "ProvisioningError",
    "ServiceBusy",
    "ServiceNotFound",
    "ServiceNotProvisionable",
]
