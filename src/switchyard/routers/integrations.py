"""Tenant integration config and secret endpoints."""

from uuid import UUID

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from switchyard.auth.dependencies import Principal, get_current_principal
from switchyard.bootstrap import Runtime
from switchyard.database import get_db
from switchyard.dependencies import get_runtime, require_tenant_role
from switchyard.integrations import IntegrationRecord, IntegrationRepository, SecretKeyRecord, SecretRepository
from switchyard.metadata import Tenant as TenantModel

router = APIRouter(prefix="/api/v1/integrations", tags=["integrations"])


def _parse_uuid_or_400(raw_value: str) -> UUID:
    try:
        return UUID(str(raw_value))
    except (ValueError, TypeError, AttributeError):
        raise HTTPException(status_code=400, detail="Invalid UUID format")


def _serialize_integration(record: IntegrationRecord) -> dict:
    return {
        "id": record.id,
        "tenant_id": record.tenant_id,
        "type": record.type,
        "provider": record.provider,
        "name": record.name,
        "status": record.status,
        "config": record.config,
        "created_by": record.created_by,
        "updated_by": record.updated_by,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }


def _serialize_secret_key(record: SecretKeyRecord) -> dict:
    return {
        "key": record.key,
        "key_version": record.key_version,
        "updated_at": record.updated_at,
    }


@router.get("")
async def list_integrations(
    type: str | None = Query(default=None),
    status: str | None = Query(default=None),
    tenant: TenantModel = Depends(require_tenant_role("viewer")),
    db: Session = Depends(get_db),
):
    records = IntegrationRepository(db).list(tenant.id, integration_type=type, status=status)
    return {
        "tenant_id": str(tenant.id),
        "integrations": [_serialize_integration(record) for record in records],
    }


@router.post("", status_code=201)
async def create_integration(
    body: dict = Body(default_factory=dict),
    tenant: TenantModel = Depends(require_tenant_role("admin")),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    """Create an integration; it starts ACTIVE with no secrets."""
    record = IntegrationRepository(db).create(
        tenant.id,
        integration_type=body.get("type"),
        provider=body.get("provider"),
        name=body.get("name"),
        config=body.get("config"),
        actor=principal.subject,
    )
    return _serialize_integration(record)


@router.get("/{integration_id}")
async def get_integration(
    integration_id: str,
    tenant: TenantModel = Depends(require_tenant_role("viewer")),
    db: Session = Depends(get_db),
):
    record = IntegrationRepository(db).get(tenant.id, _parse_uuid_or_400(integration_id))
    return _serialize_integration(record)


@router.patch("/{integration_id}")
async def update_integration(
    integration_id: str,
    body: dict = Body(default_factory=dict),
    tenant: TenantModel = Depends(require_tenant_role("admin")),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    """Update name and/or config. Omitted fields are left unchanged."""
    changes = {}
    if "name" in body:
        changes["name"] = body.get("name")
    if "config" in body:
        changes["config"] = body.get("config")
    if not changes:
        raise HTTPException(status_code=400, detail="Nothing to update")
    record = IntegrationRepository(db).update(
        tenant.id,
        _parse_uuid_or_400(integration_id),
        actor=principal.subject,
        **changes,
    )
    return _serialize_integration(record)


@router.post("/{integration_id}/enable")
async def enable_integration(
    integration_id: str,
    tenant: TenantModel = Depends(require_tenant_role("admin")),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    record = IntegrationRepository(db).enable(tenant.id, _parse_uuid_or_400(integration_id), actor=principal.subject)
    return _serialize_integration(record)


@router.post("/{integration_id}/disable")
async def disable_integration(
    integration_id: str,
    tenant: TenantModel = Depends(require_tenant_role("admin")),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    """Disable an integration. Pending work for it fails with INTEGRATION_DISABLED."""
    record = IntegrationRepository(db).disable(tenant.id, _parse_uuid_or_400(integration_id), actor=principal.subject)
    return _serialize_integration(record)


@router.get("/{integration_id}/secrets")
async def list_secrets(
    integration_id: str,
    tenant: TenantModel = Depends(require_tenant_role("admin")),
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    """List secret keys and versions. Values are never returned."""
    keys = SecretRepository(db, runtime.vault).list_secret_keys(tenant.id, _parse_uuid_or_400(integration_id))
    return {
        "integration_id": integration_id,
        "secrets": [_serialize_secret_key(record) for record in keys],
    }


@router.put("/{integration_id}/secrets/{key}")
async def put_secret(
    integration_id: str,
    key: str,
    body: dict = Body(default_factory=dict),
    tenant: TenantModel = Depends(require_tenant_role("admin")),
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    value = body.get("value")
    if not isinstance(value, str) or not value:
        raise HTTPException(status_code=400, detail="value is required")
    record = SecretRepository(db, runtime.vault).put_secret(
        tenant.id,
        _parse_uuid_or_400(integration_id),
        key,
        value,
    )
    return _serialize_secret_key(record)


@router.delete("/{integration_id}/secrets/{key}")
async def delete_secret(
    integration_id: str,
    key: str,
    tenant: TenantModel = Depends(require_tenant_role("admin")),
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    deleted = SecretRepository(db, runtime.vault).delete_secret(tenant.id, _parse_uuid_or_400(integration_id), key)
    if not deleted:
        raise HTTPException(status_code=404, detail="Secret not found")
    return {"deleted": True, "key": key}
