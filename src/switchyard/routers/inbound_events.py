"""Operator endpoints for inbound events. Payloads are PII-masked."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from switchyard.bootstrap import Runtime
from switchyard.database import get_db
from switchyard.dependencies import get_runtime, require_tenant_role
from switchyard.inbound import serialize_event
from switchyard.metadata import Tenant as TenantModel

router = APIRouter(prefix="/api/v1/inbound-events", tags=["inbound-events"])


@router.get("")
async def list_inbound_events(
    source_type: str | None = Query(default=None),
    status: str | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    tenant: TenantModel = Depends(require_tenant_role("viewer")),
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    """Newest first; pass ``next_cursor`` back as ``cursor`` for the next page."""
    events, next_cursor = runtime.inbound.list_events(
        db,
        tenant.id,
        source_type=source_type,
        status=status,
        cursor=cursor,
        limit=limit,
    )
    return {
        "tenant_id": str(tenant.id),
        "events": [serialize_event(event) for event in events],
        "next_cursor": next_cursor,
    }


@router.get("/{event_id}")
async def get_inbound_event(
    event_id: str,
    tenant: TenantModel = Depends(require_tenant_role("viewer")),
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    return serialize_event(runtime.inbound.get_event(db, tenant.id, event_id))


@router.post("/{event_id}/retry")
async def retry_inbound_event(
    event_id: str,
    tenant: TenantModel = Depends(require_tenant_role("operator")),
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    """Reset a finished or failed event to RECEIVED and enqueue it again."""
    event = runtime.inbound.retry(db, tenant.id, event_id)
    return serialize_event(event)
