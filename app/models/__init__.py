from app.models.audit import AuditActorType, AuditLog  # noqa: F401
from app.models.billing import (  # noqa: F401
    BillingCycle,
    Dispute,
    DisputeStatus,
    Invoice,
    InvoiceItem,
    InvoiceStatus,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentEvent,
    PaymentStatus,
    Refund,
    RefundStatus,
)
from app.models.domain_settings import (  # noqa: F401
    DomainSetting,
    SettingDomain,
    SettingValueType,
)
from app.models.scheduler import ScheduledTask, ScheduleType  # noqa: F401
from app.models.service import (  # noqa: F401
    OPEN_JOB_STATUSES,
    JobStatus,
    JobType,
    ProvisioningJob,
    Service,
    ServiceStatus,
)
