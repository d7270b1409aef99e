"""Test configuration and fixtures."""

from datetime import datetime, timedelta
import uuid

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from switchyard.bootstrap import build_runtime
from switchyard.integrations import IntegrationRepository, SecretRepository
from switchyard.metadata import Base, Tenant as TenantModel
from switchyard.queue import InMemoryQueue
from switchyard.settings import Settings
from switchyard.vault import SecretsVault


class FakeClock:
    """Settable naive-UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 5, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine)


@pytest.fixture
def test_db(session_factory) -> Session:
    """Create test database session."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        environment="test",
        database_url="sqlite://",
        inbound_max_attempts=3,
        outbound_max_attempts=3,
        inbound_backoff_seconds=[60, 300, 900],
        outbound_backoff_seconds=[60, 300, 900],
        webhook_replay_window_seconds=300,
    )


@pytest.fixture
def vault() -> SecretsVault:
    return SecretsVault({1: b"\x01" * 32, 2: b"\x02" * 32})


@pytest.fixture
def queue() -> InMemoryQueue:
    return InMemoryQueue()


@pytest.fixture
def runtime(test_settings, session_factory, vault, queue, clock):
    """Runtime with empty registries; tests register what they exercise."""
    return build_runtime(
        test_settings,
        queue=queue,
        session_factory=session_factory,
        vault=vault,
        clock=clock,
        register_builtins=False,
    )


def _create_tenant(db: Session, identifier: str) -> TenantModel:
    tenant = TenantModel(
        id=uuid.uuid5(uuid.NAMESPACE_DNS, identifier),
        identifier=identifier,
        name=f"Tenant {identifier}",
        active=True,
    )
    db.add(tenant)
    db.commit()
    db.refresh(tenant)
    return tenant


@pytest.fixture
def test_tenant(test_db: Session) -> TenantModel:
    return _create_tenant(test_db, "tenant_a")


@pytest.fixture
def other_tenant(test_db: Session) -> TenantModel:
    return _create_tenant(test_db, "tenant_b")


@pytest.fixture
def whatsapp_integration(test_db: Session, test_tenant: TenantModel, vault: SecretsVault):
    """Active WhatsApp integration routed by phone_number_id with webhook secrets."""
    record = IntegrationRepository(test_db).create(
        test_tenant.id,
        integration_type="WHATSAPP_PROVIDER",
        provider="meta",
        name="Support line",
        config={"external_ref": "PNID-1"},
        actor="tester",
    )
    secrets = SecretRepository(test_db, vault)
    secrets.put_secret(test_tenant.id, record.id, "app_secret", "whatsapp-app-secret")
    secrets.put_secret(test_tenant.id, record.id, "verify_token", "verify-me")
    return record
