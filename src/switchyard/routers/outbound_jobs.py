"""Outbound send requests."""

from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from switchyard.bootstrap import Runtime
from switchyard.database import get_db
from switchyard.dependencies import get_runtime, require_tenant_role
from switchyard.metadata import Tenant as TenantModel
from switchyard.outbound import serialize_job

router = APIRouter(prefix="/api/v1/outbound-jobs", tags=["outbound-jobs"])


@router.post("")
async def create_outbound_job(
    body: dict = Body(default_factory=dict),
    tenant: TenantModel = Depends(require_tenant_role("operator")),
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    """Create a send request.

    Repeating a ``dedupe_key`` returns the existing job with 200 instead of
    201, so callers can retry the request safely.
    """
    result = runtime.outbound.create_job(
        db,
        tenant.id,
        body.get("type"),
        body.get("provider"),
        body.get("dedupe_key"),
        body.get("payload") if "payload" in body else {},
        integration_id=body.get("integration_id"),
    )
    job = runtime.outbound.get_job(db, tenant.id, result.id)
    content = {"job": serialize_job(job), "duplicate": result.duplicate}
    return JSONResponse(status_code=200 if result.duplicate else 201, content=content)


@router.get("")
async def list_outbound_jobs(
    type: str | None = Query(default=None),
    status: str | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    tenant: TenantModel = Depends(require_tenant_role("viewer")),
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    jobs, next_cursor = runtime.outbound.list_jobs(
        db,
        tenant.id,
        job_type=type,
        status=status,
        cursor=cursor,
        limit=limit,
    )
    return {
        "tenant_id": str(tenant.id),
        "jobs": [serialize_job(job) for job in jobs],
        "next_cursor": next_cursor,
    }


@router.get("/{job_id}")
async def get_outbound_job(
    job_id: str,
    tenant: TenantModel = Depends(require_tenant_role("viewer")),
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    return serialize_job(runtime.outbound.get_job(db, tenant.id, job_id))


@router.post("/{job_id}/cancel")
async def cancel_outbound_job(
    job_id: str,
    tenant: TenantModel = Depends(require_tenant_role("operator")),
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    return serialize_job(runtime.outbound.cancel(db, tenant.id, job_id))


@router.post("/{job_id}/retry")
async def retry_outbound_job(
    job_id: str,
    tenant: TenantModel = Depends(require_tenant_role("operator")),
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    return serialize_job(runtime.outbound.retry(db, tenant.id, job_id))
