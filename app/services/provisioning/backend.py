"""External VPS provisioning collaborator."""

import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Protocol

from app.services.billing.exceptions import ProvisioningCancelled

logger = logging.getLogger(__name__)

# Set when the worker is shutting down; provisioning steps stop waiting on it.
shutdown_event = threading.Event()


@dataclass(frozen=True)
class ProvisionedResource:
    hostname: str
    ip_address: str


class ProvisioningBackend(Protocol):
    def provision(
        self,
        service_id: uuid.UUID,
        plan_id: uuid.UUID,
        cancel: threading.Event,
    ) -> ProvisionedResource: ...


class SimulatedBackend:
    """Stands in for a hypervisor API: three timed steps, then a fixed address."""

    def __init__(
        self,
        compute_seconds: float = 1.0,
        network_seconds: float = 0.5,
        install_seconds: float = 0.5,
    ) -> None:
        self.steps = (
            ("allocating compute", compute_seconds),
            ("assigning network address", network_seconds),
            ("installing operating system", install_seconds),
        )

    def provision(
        self,
        service_id: uuid.UUID,
        plan_id: uuid.UUID,
        cancel: threading.Event,
    ) -> ProvisionedResource:
        for label, seconds in self.steps:
            logger.info("Service %s: %s", service_id, label)
            if cancel.wait(seconds):
                raise ProvisioningCancelled(f"Provisioning cancelled while {label}")
        raw = service_id.bytes
        return ProvisionedResource(
            hostname=f"vps-{str(service_id)[:8]}.example.com",
            ip_address=f"192.168.{raw[0] % 254 + 1}.{raw[1] % 254 + 1}",
        )
