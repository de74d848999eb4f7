import sys
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from types import ModuleType

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import DateTime, create_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from tests.payloads import ADMIN_TOKEN, WEBHOOK_SECRET

# Create a test engine BEFORE any app imports
_test_engine = create_engine(
    "sqlite+pysqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


# Create a mock for the app.db module that uses our test engine
class TestBase(DeclarativeBase):
    pass


_TestSessionLocal = sessionmaker(bind=_test_engine, autoflush=False, autocommit=False)


class TimestampMixin:
    """Mixin that adds created_at / updated_at columns to any model."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


@contextmanager
def _test_session_scope() -> Iterator[Session]:
    session = _TestSessionLocal()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# Create a mock db module
mock_db_module = ModuleType("app.db")
mock_db_module.Base = TestBase
mock_db_module.TimestampMixin = TimestampMixin
mock_db_module.SessionLocal = _TestSessionLocal
mock_db_module.get_engine = lambda: _test_engine
mock_db_module.session_scope = _test_session_scope

# Also mock app.config to prevent .env loading
mock_config_module = ModuleType("app.config")


class MockSettings:
    database_url = "sqlite+pysqlite:///:memory:"
    redis_url = "redis://localhost:6379/0"
    db_pool_size = 5
    db_max_overflow = 10
    db_pool_timeout = 30
    db_pool_recycle = 1800
    stripe_secret_key = ""
    stripe_webhook_secret = WEBHOOK_SECRET
    stripe_webhook_tolerance_seconds = 300
    renewal_webhook_url = ""
    renewal_webhook_token = ""
    notification_timeout_secs = 5
    settings_reload_seconds = 30
    worker_concurrency = 2
    provision_max_retries = 5
    task_retry_backoff_max = 600
    expire_sweep_seconds = 3600
    renewal_sweep_seconds = 86400
    scan_lease_seconds = 900
    admin_api_token = ADMIN_TOKEN
    cors_origins = ""


mock_config_module.settings = MockSettings()
mock_config_module.Settings = MockSettings
mock_config_module.validate_settings = lambda s: []

# Insert mocks before any app imports
sys.modules["app.config"] = mock_config_module
sys.modules["app.db"] = mock_db_module

# Now import the models - they'll use our mocked db module
from app.models.audit import AuditLog  # noqa: E402,F401
from app.models.billing import (  # noqa: E402
    BillingCycle,
    Order,
    OrderItem,
    OrderStatus,
)
from app.models.domain_settings import DomainSetting  # noqa: E402,F401
from app.models.scheduler import ScheduledTask  # noqa: E402,F401
from app.models.service import (  # noqa: E402
    JobStatus,
    JobType,
    ProvisioningJob,
    Service,
    ServiceStatus,
)

# Create all tables
TestBase.metadata.create_all(_test_engine)

# Re-export Base for compatibility
Base = TestBase


@pytest.fixture(scope="session")
def engine():
    return _test_engine


@pytest.fixture()
def db_session(engine):
    """Create a database session for testing.

    Uses the same connection as the StaticPool engine to ensure
    all operations see the same data.
    """
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def _clean_tables(engine):
    yield
    with engine.begin() as conn:
        for table in reversed(TestBase.metadata.sorted_tables):
            conn.execute(table.delete())


# ============ FastAPI Test Client Fixtures ============


@pytest.fixture()
def client(db_session):
    """Create a test client with database dependency override."""
    from app.api.deps import get_db as api_get_db
    from app.main import app

    def override_get_db():
        yield db_session

    app.dependency_overrides[api_get_db] = override_get_db

    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture()
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Token": ADMIN_TOKEN}


# ============ Billing Fixtures ============


@pytest.fixture()
def make_order(db_session):
    """Factory for an order with one item per billing cycle given."""

    def _make_order(
        status: OrderStatus = OrderStatus.pending_payment,
        cycles: tuple[BillingCycle, ...] = (BillingCycle.monthly,),
        unit_price: int = 1500,
    ) -> Order:
        order = Order(
            user_id=uuid.uuid4(),
            status=status,
            currency="usd",
            total_amount=unit_price * len(cycles),
        )
        db_session.add(order)
        db_session.flush()
        for cycle in cycles:
            db_session.add(
                OrderItem(
                    order_id=order.id,
                    plan_id=uuid.uuid4(),
                    plan_snapshot={"name": f"VPS {cycle.value}", "vcpus": 2},
                    quantity=1,
                    unit_price=unit_price,
                    billing_cycle=cycle,
                )
            )
        db_session.commit()
        db_session.refresh(order)
        return order

    return _make_order


@pytest.fixture()
def make_service(db_session, make_order):
    """Factory for a service attached to a fresh order's first item."""

    def _make_service(
        status: ServiceStatus = ServiceStatus.active,
        expires_at: datetime | None = None,
        order_status: OrderStatus = OrderStatus.active,
        cycle: BillingCycle = BillingCycle.monthly,
    ) -> Service:
        order = make_order(status=order_status, cycles=(cycle,))
        item = order.items[0]
        service = Service(
            user_id=order.user_id,
            order_item_id=item.id,
            plan_id=item.plan_id,
            status=status,
            expires_at=expires_at,
        )
        db_session.add(service)
        db_session.commit()
        db_session.refresh(service)
        return service

    return _make_service


@pytest.fixture()
def make_job(db_session):
    def _make_job(
        service: Service,
        status: JobStatus = JobStatus.pending,
        attempts: int = 0,
        max_attempts: int = 5,
    ) -> ProvisioningJob:
        job = ProvisioningJob(
            service_id=service.id,
            job_type=JobType.provision_vps,
            status=status,
            attempts=attempts,
            max_attempts=max_attempts,
        )
        db_session.add(job)
        db_session.commit()
        db_session.refresh(job)
        return job

    return _make_job
