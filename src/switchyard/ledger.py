"""Idempotent job ledger.

Every unit of deferred work is a ``JobRun`` row. Callers that pass an
idempotency key get at most one live run per ``(tenant, key, type)`` while the
matching ``JobLock`` is unexpired; the worker moves runs through
QUEUED -> RUNNING -> SUCCESS/FAILED using status-guarded updates so two
workers can never both own a run.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from switchyard.errors import InvalidRequest, JobRunNotFound
from switchyard.metadata import JobLock, JobRun, RUN_FAILED, RUN_QUEUED, RUN_RUNNING, RUN_SUCCESS
from switchyard.queue import QueueBackend
from switchyard.timeutil import Clock, utcnow

logger = logging.getLogger(__name__)

INBOUND_PROCESS_EVENT = "INBOUND_PROCESS_EVENT"
OUTBOUND_PROCESS_JOB = "OUTBOUND_PROCESS_JOB"

_LIVE_RUN_STATUSES = (RUN_QUEUED, RUN_RUNNING, RUN_SUCCESS)
_MAX_ERROR_CHARS = 2000


@dataclass
class EnqueueResult:
    run_id: str
    deduplicated: bool


@dataclass
class RetryResult:
    run_id: str
    retried: bool
    reason: Optional[str] = None


@dataclass
class ClaimedRun:
    id: str
    type: str
    tenant_id: Optional[str]
    payload: dict[str, Any]
    attempts: int
    max_attempts: int


def _uuid_or_none(value: Any) -> Optional[uuid.UUID]:
    if value is None or value == "":
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError):
        raise InvalidRequest("Invalid UUID format")


def _tenant_clause(column, tenant_id: Optional[uuid.UUID]):
    return column.is_(None) if tenant_id is None else column == tenant_id


def requeue_delay_seconds(attempts_used: int) -> int:
    return min(300 * (2 ** max(attempts_used - 1, 0)), 3600)


class JobLedger:
    def __init__(self, queue: QueueBackend, settings, clock: Clock = utcnow):
        self.queue = queue
        self.settings = settings
        self.clock = clock

    # Producer side

    def _find_live_run(self, db: Session, job_type: str, tenant_id, idempotency_key: str) -> Optional[JobRun]:
        return (
            db.query(JobRun)
            .filter(
                _tenant_clause(JobRun.tenant_id, tenant_id),
                JobRun.idempotency_key == idempotency_key,
                JobRun.type == job_type,
                JobRun.status.in_(_LIVE_RUN_STATUSES),
            )
            .order_by(JobRun.created_at.desc())
            .first()
        )

    def _get_lock(self, db: Session, tenant_id, key: str) -> Optional[JobLock]:
        return (
            db.query(JobLock)
            .filter(_tenant_clause(JobLock.tenant_id, tenant_id), JobLock.key == key)
            .first()
        )

    def enqueue(
        self,
        db: Session,
        job_type: str,
        payload: dict[str, Any],
        *,
        idempotency_key: Optional[str] = None,
        tenant_id=None,
        delay_seconds: int = 0,
    ) -> EnqueueResult:
        """Record a run and hand it to the queue.

        With an idempotency key, a live run (QUEUED, RUNNING or SUCCESS) behind
        an unexpired lock is returned instead of creating another one.
        """
        tenant_uuid = _uuid_or_none(tenant_id)
        key = str(idempotency_key or "").strip() or None
        delay = max(0, int(delay_seconds or 0))

        # Two passes at most: the second follows a lost lock race.
        for _ in range(2):
            now = self.clock()
            lock = None
            if key:
                lock = self._get_lock(db, tenant_uuid, key)
                if lock is not None and lock.expires_at > now:
                    existing = self._find_live_run(db, job_type, tenant_uuid, key)
                    if existing is not None:
                        logger.debug("Deduplicated %s enqueue for key %s -> run %s", job_type, key, existing.id)
                        return EnqueueResult(run_id=str(existing.id), deduplicated=True)

            run_id = uuid.uuid4()
            run_payload = dict(payload or {})
            run_payload["job_run_id"] = str(run_id)
            run = JobRun(
                id=run_id,
                type=job_type,
                tenant_id=tenant_uuid,
                idempotency_key=key,
                payload=run_payload,
                status=RUN_QUEUED,
                attempts=0,
                max_attempts=self.settings.max_attempts_for(job_type),
                available_at=now + timedelta(seconds=delay),
                created_at=now,
            )

            try:
                if key:
                    expires_at = now + timedelta(seconds=self.settings.lock_ttl_for(job_type))
                    if lock is None:
                        db.add(JobLock(tenant_id=tenant_uuid, key=key, expires_at=expires_at, created_at=now))
                    else:
                        refreshed = (
                            db.query(JobLock)
                            .filter(JobLock.id == lock.id, JobLock.expires_at == lock.expires_at)
                            .update({JobLock.expires_at: expires_at}, synchronize_session=False)
                        )
                        if not refreshed:
                            db.rollback()
                            continue
                db.add(run)
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.debug("Lost job lock race for %s key %s; re-reading", job_type, key)
                continue

            self.queue.add(str(run_id), job_type, run_payload, delay)
            logger.info("Enqueued %s run %s tenant=%s delay=%ss", job_type, run_id, tenant_uuid, delay)
            return EnqueueResult(run_id=str(run_id), deduplicated=False)

        existing = self._find_live_run(db, job_type, tenant_uuid, key) if key else None
        if existing is not None:
            return EnqueueResult(run_id=str(existing.id), deduplicated=True)
        raise RuntimeError(f"Could not enqueue {job_type} for key {key}")

    def retry(self, db: Session, run_id) -> RetryResult:
        """Requeue a FAILED run; any other status is reported as not retriable."""
        run = self.get(db, run_id)
        if run.status != RUN_FAILED:
            return RetryResult(run_id=str(run.id), retried=False, reason="NOT_RETRIABLE")
        now = self.clock()
        updated = (
            db.query(JobRun)
            .filter(JobRun.id == run.id, JobRun.status == RUN_FAILED)
            .update(
                {
                    JobRun.status: RUN_QUEUED,
                    JobRun.attempts: 0,
                    JobRun.available_at: now,
                    JobRun.claimed_by: None,
                    JobRun.started_at: None,
                    JobRun.finished_at: None,
                    JobRun.last_error_code: None,
                    JobRun.last_error: None,
                },
                synchronize_session=False,
            )
        )
        db.commit()
        if not updated:
            return RetryResult(run_id=str(run.id), retried=False, reason="NOT_RETRIABLE")
        db.refresh(run)
        self.queue.add(str(run.id), run.type, dict(run.payload or {}), 0)
        logger.info("Retried %s run %s", run.type, run.id)
        return RetryResult(run_id=str(run.id), retried=True)

    # Lookups

    def get(self, db: Session, run_id, tenant_id=None) -> JobRun:
        try:
            run_uuid = uuid.UUID(str(run_id))
        except (ValueError, TypeError):
            raise JobRunNotFound()
        query = db.query(JobRun).filter(JobRun.id == run_uuid)
        if tenant_id is not None:
            query = query.filter(JobRun.tenant_id == _uuid_or_none(tenant_id))
        run = query.first()
        if run is None:
            raise JobRunNotFound()
        return run

    def list_runs(
        self,
        db: Session,
        *,
        tenant_id=None,
        job_type: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[JobRun], int]:
        query = db.query(JobRun)
        if tenant_id is not None:
            query = query.filter(JobRun.tenant_id == _uuid_or_none(tenant_id))
        if job_type:
            query = query.filter(JobRun.type == job_type)
        if status:
            query = query.filter(JobRun.status == str(status).strip().upper())
        total = query.count()
        rows = (
            query.order_by(JobRun.created_at.desc(), JobRun.id.desc())
            .offset(max(0, int(offset)))
            .limit(max(1, min(int(limit), 500)))
            .all()
        )
        return rows, total

    # Worker side

    def claim_next(self, db: Session, worker_id: str, job_types: Optional[list[str]] = None) -> Optional[ClaimedRun]:
        """Claim the oldest available QUEUED run, or return None."""
        now = self.clock()
        query = (
            db.query(JobRun)
            .filter(JobRun.status == RUN_QUEUED, JobRun.available_at <= now)
            .order_by(JobRun.available_at.asc(), JobRun.created_at.asc(), JobRun.id.asc())
        )
        if job_types:
            query = query.filter(JobRun.type.in_(job_types))
        if db.bind and db.bind.dialect.name == "postgresql":
            query = query.with_for_update(skip_locked=True)

        for candidate in query.limit(5).all():
            claimed = (
                db.query(JobRun)
                .filter(JobRun.id == candidate.id, JobRun.status == RUN_QUEUED)
                .update(
                    {
                        JobRun.status: RUN_RUNNING,
                        JobRun.attempts: JobRun.attempts + 1,
                        JobRun.claimed_by: worker_id,
                        JobRun.started_at: now,
                        JobRun.finished_at: None,
                    },
                    synchronize_session=False,
                )
            )
            if not claimed:
                continue
            db.commit()
            db.refresh(candidate)
            return ClaimedRun(
                id=str(candidate.id),
                type=str(candidate.type),
                tenant_id=str(candidate.tenant_id) if candidate.tenant_id else None,
                payload=dict(candidate.payload or {}),
                attempts=int(candidate.attempts or 0),
                max_attempts=int(candidate.max_attempts or 1),
            )
        db.rollback()
        return None

    def mark_succeeded(self, db: Session, run_id: str) -> bool:
        updated = (
            db.query(JobRun)
            .filter(JobRun.id == uuid.UUID(str(run_id)), JobRun.status == RUN_RUNNING)
            .update(
                {
                    JobRun.status: RUN_SUCCESS,
                    JobRun.finished_at: self.clock(),
                    JobRun.last_error_code: None,
                    JobRun.last_error: None,
                },
                synchronize_session=False,
            )
        )
        db.commit()
        if not updated:
            logger.warning("Run %s was not RUNNING when marked succeeded", run_id)
        return bool(updated)

    def mark_failed(
        self,
        db: Session,
        run_id: str,
        *,
        error_code: str,
        error: str,
        retriable: bool = True,
    ) -> str:
        """Record a failed attempt; returns the resulting status."""
        run = self.get(db, run_id)
        if run.status != RUN_RUNNING:
            logger.warning("Run %s was %s when marked failed", run_id, run.status)
            return str(run.status)

        now = self.clock()
        attempts_used = int(run.attempts or 0)
        max_attempts = int(run.max_attempts or 1)
        message = str(error or "")[:_MAX_ERROR_CHARS]
        if retriable and attempts_used < max_attempts:
            delay = requeue_delay_seconds(attempts_used)
            values = {
                JobRun.status: RUN_QUEUED,
                JobRun.available_at: now + timedelta(seconds=delay),
                JobRun.claimed_by: None,
                JobRun.last_error_code: error_code,
                JobRun.last_error: message,
            }
            new_status = RUN_QUEUED
        else:
            delay = 0
            values = {
                JobRun.status: RUN_FAILED,
                JobRun.finished_at: now,
                JobRun.claimed_by: None,
                JobRun.last_error_code: error_code,
                JobRun.last_error: message,
            }
            new_status = RUN_FAILED

        updated = (
            db.query(JobRun)
            .filter(JobRun.id == run.id, JobRun.status == RUN_RUNNING)
            .update(values, synchronize_session=False)
        )
        db.commit()
        if not updated:
            return str(self.get(db, run_id).status)

        if new_status == RUN_QUEUED:
            logger.warning(
                "Run %s failed (attempt %s/%s), requeued in %ss: %s",
                run_id, attempts_used, max_attempts, delay, message,
            )
            self.queue.add(str(run.id), run.type, dict(run.payload or {}), delay)
        else:
            logger.error(
                "Run %s failed permanently after attempt %s/%s: %s",
                run_id, attempts_used, max_attempts, message,
            )
        return new_status

    def purge_expired_locks(self, db: Session) -> int:
        deleted = (
            db.query(JobLock)
            .filter(JobLock.expires_at <= self.clock())
            .delete(synchronize_session=False)
        )
        db.commit()
        if deleted:
            logger.info("Purged %s expired job lock(s)", deleted)
        return int(deleted or 0)
