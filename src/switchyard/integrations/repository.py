"""Integration config and secret repositories (table-backed, tenant-scoped)."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional
import logging
import uuid

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from switchyard.errors import IntegrationDisabled, IntegrationNotFound, InvalidRequest, SecretMissing
from switchyard.metadata import (
    INTEGRATION_ACTIVE,
    INTEGRATION_DISABLED,
    INTEGRATION_TYPES,
    IntegrationConfig,
    IntegrationSecret,
)
from switchyard.vault import SecretsVault

logger = logging.getLogger(__name__)

_UNSET = object()


def normalize_integration_type(value: str | None) -> str:
    integration_type = str(value or "").strip().upper().replace("-", "_")
    if integration_type in {"WHATSAPP", "WA"}:
        integration_type = "WHATSAPP_PROVIDER"
    if integration_type in {"META", "LEADGEN", "META_LEADS"}:
        integration_type = "META_LEADGEN"
    if integration_type not in INTEGRATION_TYPES:
        raise InvalidRequest("Invalid integration type")
    return integration_type


def normalize_provider(value: str | None) -> str:
    provider = str(value or "").strip().lower()
    if not provider:
        raise InvalidRequest("provider is required")
    return provider


def _as_uuid(value: Any) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError, AttributeError):
        raise InvalidRequest("Invalid UUID format")


@dataclass
class IntegrationRecord:
    """Resolved integration config."""

    id: str
    tenant_id: str
    type: str
    provider: str
    name: str
    status: str
    config: dict[str, Any]
    created_by: Optional[str]
    updated_by: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    @property
    def is_active(self) -> bool:
        return self.status == INTEGRATION_ACTIVE

    @property
    def external_ref(self) -> Optional[str]:
        value = str(self.config.get("external_ref") or "").strip()
        return value or None


@dataclass
class SecretKeyRecord:
    """Secret metadata; the value never leaves the repository unencrypted in listings."""

    key: str
    key_version: int
    updated_at: Optional[datetime]


class IntegrationRepository:
    """CRUD repository for tenant integration configs."""

    def __init__(self, db: Session):
        self.db = db

    def _record_from_row(self, row: IntegrationConfig) -> IntegrationRecord:
        return IntegrationRecord(
            id=str(row.id),
            tenant_id=str(row.tenant_id),
            type=str(row.type),
            provider=str(row.provider),
            name=str(row.name),
            status=str(row.status),
            config=dict(row.config or {}),
            created_by=row.created_by,
            updated_by=row.updated_by,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _get_row(self, tenant_id, integration_id) -> IntegrationConfig:
        row = (
            self.db.query(IntegrationConfig)
            .filter(
                IntegrationConfig.id == _as_uuid(integration_id),
                IntegrationConfig.tenant_id == _as_uuid(tenant_id),
            )
            .first()
        )
        if row is None:
            raise IntegrationNotFound()
        return row

    def create(
        self,
        tenant_id,
        *,
        integration_type: str,
        provider: str,
        name: str,
        config: dict[str, Any] | None = None,
        actor: str | None = None,
    ) -> IntegrationRecord:
        label = str(name or "").strip()
        if not label:
            raise InvalidRequest("name is required")
        if config is not None and not isinstance(config, dict):
            raise InvalidRequest("config must be an object")
        row = IntegrationConfig(
            tenant_id=_as_uuid(tenant_id),
            type=normalize_integration_type(integration_type),
            provider=normalize_provider(provider),
            name=label,
            status=INTEGRATION_ACTIVE,
            config=dict(config or {}),
            created_by=actor,
            updated_by=actor,
        )
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        logger.info("Created integration %s type=%s tenant=%s", row.id, row.type, row.tenant_id)
        return self._record_from_row(row)

    def list(
        self,
        tenant_id,
        *,
        integration_type: str | None = None,
        status: str | None = None,
    ) -> list[IntegrationRecord]:
        query = self.db.query(IntegrationConfig).filter(IntegrationConfig.tenant_id == _as_uuid(tenant_id))
        if integration_type:
            query = query.filter(IntegrationConfig.type == normalize_integration_type(integration_type))
        if status:
            query = query.filter(IntegrationConfig.status == str(status).strip().upper())
        rows = query.order_by(IntegrationConfig.created_at.desc()).limit(100).all()
        return [self._record_from_row(row) for row in rows]

    def get(self, tenant_id, integration_id) -> IntegrationRecord:
        return self._record_from_row(self._get_row(tenant_id, integration_id))

    def require_active(self, tenant_id, integration_id) -> IntegrationRecord:
        """Load an integration for processing; disabled or missing is a terminal condition."""
        try:
            record = self.get(tenant_id, integration_id)
        except IntegrationNotFound:
            raise IntegrationDisabled("Integration no longer exists")
        if not record.is_active:
            raise IntegrationDisabled()
        return record

    def update(
        self,
        tenant_id,
        integration_id,
        *,
        name: Any = _UNSET,
        config: Any = _UNSET,
        actor: str | None = None,
    ) -> IntegrationRecord:
        row = self._get_row(tenant_id, integration_id)
        if name is not _UNSET:
            label = str(name or "").strip()
            if not label:
                raise InvalidRequest("name cannot be empty")
            row.name = label
        if config is not _UNSET:
            if not isinstance(config, dict):
                raise InvalidRequest("config must be an object")
            row.config = dict(config)
            flag_modified(row, "config")
        row.updated_by = actor
        self.db.commit()
        self.db.refresh(row)
        return self._record_from_row(row)

    def _set_status(self, tenant_id, integration_id, status: str, actor: str | None) -> IntegrationRecord:
        row = self._get_row(tenant_id, integration_id)
        row.status = status
        row.updated_by = actor
        self.db.commit()
        self.db.refresh(row)
        logger.info("Integration %s is now %s", row.id, status)
        return self._record_from_row(row)

    def enable(self, tenant_id, integration_id, *, actor: str | None = None) -> IntegrationRecord:
        return self._set_status(tenant_id, integration_id, INTEGRATION_ACTIVE, actor)

    def disable(self, tenant_id, integration_id, *, actor: str | None = None) -> IntegrationRecord:
        return self._set_status(tenant_id, integration_id, INTEGRATION_DISABLED, actor)

    def list_active_by_type(self, integration_type: str) -> list[IntegrationRecord]:
        """Active integrations of one family across all tenants (webhook routing)."""
        rows = (
            self.db.query(IntegrationConfig)
            .filter(
                IntegrationConfig.type == normalize_integration_type(integration_type),
                IntegrationConfig.status == INTEGRATION_ACTIVE,
            )
            .order_by(IntegrationConfig.created_at.asc(), IntegrationConfig.id.asc())
            .all()
        )
        return [self._record_from_row(row) for row in rows]


class SecretRepository:
    """Encrypted per-integration secrets. Plaintext exists only in memory."""

    def __init__(self, db: Session, vault: SecretsVault):
        self.db = db
        self.vault = vault

    def _assert_integration_exists(self, tenant_id, integration_id) -> None:
        IntegrationRepository(self.db)._get_row(tenant_id, integration_id)

    def _get_row(self, tenant_id, integration_id, key: str) -> Optional[IntegrationSecret]:
        return (
            self.db.query(IntegrationSecret)
            .filter(
                IntegrationSecret.tenant_id == _as_uuid(tenant_id),
                IntegrationSecret.integration_id == _as_uuid(integration_id),
                IntegrationSecret.key == key,
            )
            .first()
        )

    def list_secret_keys(self, tenant_id, integration_id) -> list[SecretKeyRecord]:
        self._assert_integration_exists(tenant_id, integration_id)
        rows = (
            self.db.query(IntegrationSecret)
            .filter(
                IntegrationSecret.tenant_id == _as_uuid(tenant_id),
                IntegrationSecret.integration_id == _as_uuid(integration_id),
            )
            .order_by(IntegrationSecret.key.asc())
            .all()
        )
        return [
            SecretKeyRecord(key=str(row.key), key_version=int(row.key_version), updated_at=row.updated_at)
            for row in rows
        ]

    def put_secret(self, tenant_id, integration_id, key: str, plaintext: str) -> SecretKeyRecord:
        secret_key = str(key or "").strip()
        if not secret_key:
            raise InvalidRequest("secret key is required")
        if not isinstance(plaintext, str) or plaintext == "":
            raise InvalidRequest("secret value is required")
        self._assert_integration_exists(tenant_id, integration_id)
        value_enc, key_version = self.vault.encrypt(plaintext)

        row = self._get_row(tenant_id, integration_id, secret_key)
        if row is None:
            row = IntegrationSecret(
                tenant_id=_as_uuid(tenant_id),
                integration_id=_as_uuid(integration_id),
                key=secret_key,
                value_enc=value_enc,
                key_version=key_version,
            )
            self.db.add(row)
            try:
                self.db.commit()
            except IntegrityError:
                # Lost a create race; overwrite the row the other writer inserted.
                self.db.rollback()
                row = self._get_row(tenant_id, integration_id, secret_key)
                row.value_enc = value_enc
                row.key_version = key_version
                self.db.commit()
        else:
            row.value_enc = value_enc
            row.key_version = key_version
            self.db.commit()
        self.db.refresh(row)
        return SecretKeyRecord(key=str(row.key), key_version=int(row.key_version), updated_at=row.updated_at)

    def delete_secret(self, tenant_id, integration_id, key: str) -> bool:
        self._assert_integration_exists(tenant_id, integration_id)
        row = self._get_row(tenant_id, integration_id, str(key or "").strip())
        if row is None:
            return False
        self.db.delete(row)
        self.db.commit()
        return True

    def get_decrypted(self, tenant_id, integration_id, key: str) -> Optional[str]:
        row = self._get_row(tenant_id, integration_id, key)
        if row is None:
            return None
        return self.vault.decrypt(row.value_enc, int(row.key_version))

    def require_secret(self, tenant_id, integration_id, key: str) -> str:
        value = self.get_decrypted(tenant_id, integration_id, key)
        if value is None:
            raise SecretMissing(key)
        return value
