"""Relational models for integrations, secrets, events, jobs and the job ledger."""

import uuid

from sqlalchemy import Column, String, Integer, DateTime, Boolean, Text, ForeignKey, Index, UniqueConstraint, CheckConstraint, text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.orm import declarative_base

from switchyard.timeutil import utcnow


@compiles(JSONB, "sqlite")
def compile_jsonb_for_sqlite(element, compiler, **kw):
    return compiler.visit_JSON(element, **kw)


Base = declarative_base()


# Integration families
INTEGRATION_TYPES = ("WHATSAPP_PROVIDER", "META_LEADGEN", "EMAIL_PROVIDER", "SMS_PROVIDER")
INTEGRATION_ACTIVE = "ACTIVE"
INTEGRATION_DISABLED = "DISABLED"

# Inbound event lifecycle
EVENT_RECEIVED = "RECEIVED"
EVENT_PROCESSING = "PROCESSING"
EVENT_DONE = "DONE"
EVENT_ERROR = "ERROR"

# Outbound job lifecycle
OUTBOUND_QUEUED = "QUEUED"
OUTBOUND_SENDING = "SENDING"
OUTBOUND_SENT = "SENT"
OUTBOUND_FAILED = "FAILED"
OUTBOUND_CANCELED = "CANCELED"

# Job ledger lifecycle
RUN_QUEUED = "QUEUED"
RUN_RUNNING = "RUNNING"
RUN_SUCCESS = "SUCCESS"
RUN_FAILED = "FAILED"


class Tenant(Base):
    """Isolated customer organization."""

    __tablename__ = "tenants"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    identifier = Column(String(255), nullable=False, unique=True)  # Human-facing slug
    name = Column(String(255), nullable=False)
    active = Column(Boolean, default=True, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class IntegrationConfig(Base):
    """Tenant-scoped connection to a third-party source or provider."""

    __tablename__ = "integration_configs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String(32), nullable=False)
    provider = Column(String(64), nullable=False)  # meta, twilio, resend, ...
    name = Column(String(255), nullable=False)
    status = Column(String(16), nullable=False, default=INTEGRATION_ACTIVE)
    config = Column(JSONB, nullable=False, default=dict)  # may carry external_ref for webhook routing
    created_by = Column(Text)
    updated_by = Column(Text)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_integration_configs_type_status", "type", "status"),
        CheckConstraint("status in ('ACTIVE','DISABLED')", name="ck_integration_configs_status"),
    )


class IntegrationSecret(Base):
    """Encrypted credential owned by one integration of one tenant."""

    __tablename__ = "integration_secrets"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    integration_id = Column(
        UUID(as_uuid=True),
        ForeignKey("integration_configs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    key = Column(String(128), nullable=False)
    value_enc = Column(Text, nullable=False)  # base64(nonce || tag || ciphertext)
    key_version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "integration_id", "key", name="uq_integration_secrets_scope_key"),
    )


class InboundEvent(Base):
    """Accepted external occurrence awaiting or finished processing."""

    __tablename__ = "inbound_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    source_type = Column(String(64), nullable=False)
    provider = Column(String(64), nullable=False)
    integration_id = Column(UUID(as_uuid=True), ForeignKey("integration_configs.id", ondelete="SET NULL"))
    external_id = Column(String(255))
    dedupe_key = Column(String(64))  # sha256 of payload when no stable external id exists
    payload = Column(JSONB, nullable=False, default=dict)
    meta = Column(JSONB, nullable=False, default=dict)
    result_meta = Column(JSONB)
    status = Column(String(16), nullable=False, default=EVENT_RECEIVED)
    attempt_count = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime)
    locked_by = Column(Text)
    locked_at = Column(DateTime)
    last_error_code = Column(String(100))
    last_error_msg = Column(Text)
    received_at = Column(DateTime, default=utcnow, nullable=False)
    processed_at = Column(DateTime)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "source_type", "external_id", name="uq_inbound_events_external"),
        UniqueConstraint("tenant_id", "dedupe_key", name="uq_inbound_events_dedupe"),
        Index("idx_inbound_events_tenant_status_time", "tenant_id", "status", "received_at"),
        Index("idx_inbound_events_due", "status", "next_attempt_at"),
        CheckConstraint(
            "status in ('RECEIVED','PROCESSING','DONE','ERROR')",
            name="ck_inbound_events_status",
        ),
    )


class OutboundJob(Base):
    """Send request to be delivered through a provider."""

    __tablename__ = "outbound_jobs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String(64), nullable=False)
    provider = Column(String(64), nullable=False)
    integration_id = Column(UUID(as_uuid=True), ForeignKey("integration_configs.id", ondelete="SET NULL"))
    dedupe_key = Column(String(255), nullable=False)
    payload = Column(JSONB, nullable=False, default=dict)
    result_meta = Column(JSONB)
    status = Column(String(16), nullable=False, default=OUTBOUND_QUEUED)
    attempt_count = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime)
    rate_limited_until = Column(DateTime)
    provider_message_id = Column(String(255))
    locked_by = Column(Text)
    locked_at = Column(DateTime)
    last_error_code = Column(String(100))
    last_error_msg = Column(Text)
    sent_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "dedupe_key", name="uq_outbound_jobs_dedupe"),
        Index("idx_outbound_jobs_tenant_status_time", "tenant_id", "status", "created_at"),
        Index("idx_outbound_jobs_due", "status", "next_attempt_at"),
        CheckConstraint(
            "status in ('QUEUED','SENDING','SENT','FAILED','CANCELED')",
            name="ck_outbound_jobs_status",
        ),
    )


class JobLock(Base):
    """Short-lived reservation suppressing duplicate idempotent enqueues."""

    __tablename__ = "job_locks"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), index=True)
    key = Column(String(255), nullable=False)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        # NULLs never collide in a plain unique constraint, so system locks get their own index.
        Index(
            "uq_job_locks_tenant_key", "tenant_id", "key", unique=True,
            postgresql_where=text("tenant_id IS NOT NULL"),
            sqlite_where=text("tenant_id IS NOT NULL"),
        ),
        Index(
            "uq_job_locks_system_key", "key", unique=True,
            postgresql_where=text("tenant_id IS NULL"),
            sqlite_where=text("tenant_id IS NULL"),
        ),
        Index("idx_job_locks_expires", "expires_at"),
    )


class JobRun(Base):
    """Durable record of one unit of deferred work; doubles as the queue row."""

    __tablename__ = "job_runs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    type = Column(String(64), nullable=False)
    tenant_id = Column(UUID(as_uuid=True), index=True)
    idempotency_key = Column(String(255))
    payload = Column(JSONB, nullable=False, default=dict)
    status = Column(String(16), nullable=False, default=RUN_QUEUED)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    available_at = Column(DateTime, default=utcnow, nullable=False)
    claimed_by = Column(Text)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    last_error_code = Column(String(100))
    last_error = Column(Text)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_job_runs_idempotency", "tenant_id", "idempotency_key", "type"),
        Index("idx_job_runs_status_available", "status", "available_at"),
        CheckConstraint(
            "status in ('QUEUED','RUNNING','SUCCESS','FAILED')",
            name="ck_job_runs_status",
        ),
    )
