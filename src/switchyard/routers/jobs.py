"""Tenant-scoped job ledger endpoints."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from switchyard.bootstrap import Runtime
from switchyard.database import get_db
from switchyard.dependencies import get_runtime, require_tenant_role
from switchyard.metadata import JobRun, Tenant as TenantModel

router = APIRouter(prefix="/api/v1/jobs", tags=["jobs"])


def _serialize_run(run: JobRun) -> dict:
    return {
        "id": str(run.id),
        "type": run.type,
        "tenant_id": str(run.tenant_id) if run.tenant_id else None,
        "idempotency_key": run.idempotency_key,
        "payload": run.payload or {},
        "status": run.status,
        "attempts": run.attempts,
        "max_attempts": run.max_attempts,
        "available_at": run.available_at,
        "claimed_by": run.claimed_by,
        "started_at": run.started_at,
        "finished_at": run.finished_at,
        "last_error_code": run.last_error_code,
        "last_error": run.last_error,
        "created_at": run.created_at,
    }


@router.get("")
async def list_job_runs(
    type: str | None = Query(default=None),
    status: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    tenant: TenantModel = Depends(require_tenant_role("operator")),
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    """List tenant job runs with type/status filters."""
    runs, total = runtime.ledger.list_runs(
        db,
        tenant_id=tenant.id,
        job_type=type,
        status=status,
        limit=limit,
        offset=offset,
    )
    return {
        "tenant_id": str(tenant.id),
        "total": total,
        "limit": limit,
        "offset": offset,
        "runs": [_serialize_run(run) for run in runs],
    }


@router.get("/{run_id}")
async def get_job_run(
    run_id: str,
    tenant: TenantModel = Depends(require_tenant_role("operator")),
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    return _serialize_run(runtime.ledger.get(db, run_id, tenant_id=tenant.id))


@router.post("/{run_id}/retry")
async def retry_job_run(
    run_id: str,
    tenant: TenantModel = Depends(require_tenant_role("operator")),
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    """Requeue a FAILED run. Other statuses report ``retried: false``."""
    runtime.ledger.get(db, run_id, tenant_id=tenant.id)
    result = runtime.ledger.retry(db, run_id)
    return {"run_id": result.run_id, "retried": result.retried, "reason": result.reason}
