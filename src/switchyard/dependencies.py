"""Shared dependencies for FastAPI endpoints."""

import uuid
from typing import Callable, Optional

from fastapi import Header, HTTPException, Depends, Request, status
from sqlalchemy.orm import Session

from switchyard.auth.dependencies import Principal, get_current_principal, require_role
from switchyard.bootstrap import Runtime
from switchyard.database import get_db
from switchyard.metadata import Tenant as TenantModel


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service is starting")
    return runtime


def _resolve_tenant(db: Session, tenant_ref: str) -> Optional[TenantModel]:
    """Resolve tenant by UUID or identifier."""
    ref = str(tenant_ref or "").strip()
    if not ref:
        return None
    try:
        tenant_uuid = uuid.UUID(ref)
    except ValueError:
        return db.query(TenantModel).filter(TenantModel.identifier == ref).first()
    return db.query(TenantModel).filter(TenantModel.id == tenant_uuid).first()


async def get_tenant(
    x_tenant_id: str = Header(..., alias="X-Tenant-ID"),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db)
) -> TenantModel:
    """Resolve the X-Tenant-ID header and check the caller may act on it.

    Raises:
        HTTPException 404: Tenant not found
        HTTPException 403: Caller has no access, or the tenant is inactive
    """
    tenant_row = _resolve_tenant(db, x_tenant_id)
    if not tenant_row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Tenant {x_tenant_id} not found")

    if not (principal.can_access(str(tenant_row.id)) or principal.can_access(tenant_row.identifier)):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"No access to tenant {x_tenant_id}",
        )
    if not tenant_row.active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Tenant {x_tenant_id} is inactive")
    return tenant_row


def require_tenant_role(role: str) -> Callable:
    """Dependency factory: tenant access plus a minimum role."""
    role_check = require_role(role)

    async def check(
        tenant: TenantModel = Depends(get_tenant),
        principal: Principal = Depends(role_check),
    ) -> TenantModel:
        return tenant

    return check
