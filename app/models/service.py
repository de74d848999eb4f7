import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base, TimestampMixin


class ServiceStatus(str, enum.Enum):
    pending = "pending"
    provisioning = "provisioning"
    active = "active"
    suspended = "suspended"
    terminated = "terminated"


class JobType(str, enum.Enum):
    provision_vps = "provision_vps"


class JobStatus(str, enum.Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"


OPEN_JOB_STATUSES = (JobStatus.pending, JobStatus.running)

_OPEN_JOB_PREDICATE = text("status IN ('pending', 'running')")


class Service(TimestampMixin, Base):
    """A provisioned VPS, one per order item."""

    __tablename__ = "services"
    __table_args__ = (
        UniqueConstraint("order_item_id", name="uq_services_order_item_id"),
        Index("ix_services_status_expires_at", "status", "expires_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    order_item_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("order_items.id"), nullable=False
    )
    plan_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    status: Mapped[ServiceStatus] = mapped_column(
        Enum(ServiceStatus), default=ServiceStatus.pending, nullable=False
    )
    hostname: Mapped[str | None] = mapped_column(String(255))
    ip_address: Mapped[str | None] = mapped_column(String(64))
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    suspended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    suspend_reason: Mapped[str | None] = mapped_column(Text)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)

    order_item = relationship("OrderItem")
    jobs = relationship("ProvisioningJob", back_populates="service")


class ProvisioningJob(TimestampMixin, Base):
    __tablename__ = "provisioning_jobs"
    __table_args__ = (
        # At most one open job per (service, job_type).
        Index(
            "uq_provisioning_jobs_open",
            "service_id",
            "job_type",
            unique=True,
            postgresql_where=_OPEN_JOB_PREDICATE,
            sqlite_where=_OPEN_JOB_PREDICATE,
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    service_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("services.id"), nullable=False, index=True
    )
    job_type: Mapped[JobType] = mapped_column(
        Enum(JobType), default=JobType.provision_vps, nullable=False
    )
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus), default=JobStatus.pending, nullable=False
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5)
    last_error: Mapped[str | None] = mapped_column(Text)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    service = relationship("Service", back_populates="jobs")
