"""Outbound job store.

Send requests are deduplicated on a caller-supplied key and delivered by the
provider registered for the job type::

    QUEUED -> SENDING -> SENT
                      -> QUEUED  (rate limited, paced by the provider)
                      -> FAILED  (next_attempt_at set: retry scheduled)
                      -> FAILED  (next_attempt_at null: terminal)
    QUEUED -> CANCELED

Rate-limited sends do not consume an attempt.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from switchyard.errors import (
    InvalidRequest,
    OutboundJobConflict,
    OutboundJobNotFound,
    ProviderNotFound,
    SwitchyardError,
)
from switchyard.integrations import IntegrationRepository, SecretRepository
from switchyard.ledger import OUTBOUND_PROCESS_JOB, JobLedger
from switchyard.metadata import (
    OUTBOUND_CANCELED,
    OUTBOUND_FAILED,
    OUTBOUND_QUEUED,
    OUTBOUND_SENDING,
    OUTBOUND_SENT,
    OutboundJob,
)
from switchyard.runtime.registry import IntegrationContext, OutboundProviderRegistry, SendResult
from switchyard.timeutil import Clock, utcnow
from switchyard.utils.backoff import ladder_delay_seconds
from switchyard.utils.paging import clamp_limit, decode_cursor, encode_cursor
from switchyard.utils.pii import mask_pii
from switchyard.vault import SecretsVault

logger = logging.getLogger(__name__)

_MAX_ERROR_CHARS = 2000
_DEFAULT_RATE_LIMIT_DELAY_SECONDS = 10


@dataclass
class CreateResult:
    id: str
    duplicate: bool


def _as_uuid(value: Any, not_found: bool = False) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError, AttributeError):
        if not_found:
            raise OutboundJobNotFound()
        raise InvalidRequest("Invalid UUID format")


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_job(job: OutboundJob, *, mask: bool = True) -> dict[str, Any]:
    payload = job.payload or {}
    return {
        "id": str(job.id),
        "tenant_id": str(job.tenant_id),
        "type": job.type,
        "provider": job.provider,
        "integration_id": str(job.integration_id) if job.integration_id else None,
        "dedupe_key": job.dedupe_key,
        "payload": mask_pii(payload) if mask else payload,
        "result_meta": job.result_meta,
        "status": job.status,
        "attempt_count": int(job.attempt_count or 0),
        "next_attempt_at": _iso(job.next_attempt_at),
        "rate_limited_until": _iso(job.rate_limited_until),
        "provider_message_id": job.provider_message_id,
        "last_error_code": job.last_error_code,
        "last_error_msg": job.last_error_msg,
        "sent_at": _iso(job.sent_at),
        "created_at": _iso(job.created_at),
        "updated_at": _iso(job.updated_at),
    }


class OutboundJobService:
    def __init__(
        self,
        ledger: JobLedger,
        providers: OutboundProviderRegistry,
        vault: SecretsVault,
        settings,
        clock: Clock = utcnow,
    ):
        self.ledger = ledger
        self.providers = providers
        self.vault = vault
        self.settings = settings
        self.clock = clock

    def _find_by_dedupe_key(self, db: Session, tenant_id: uuid.UUID, dedupe_key: str) -> Optional[OutboundJob]:
        return (
            db.query(OutboundJob)
            .filter(OutboundJob.tenant_id == tenant_id, OutboundJob.dedupe_key == dedupe_key)
            .first()
        )

    def create_job(
        self,
        db: Session,
        tenant_id,
        job_type: str,
        provider: str,
        dedupe_key: str,
        payload: dict[str, Any],
        *,
        integration_id=None,
    ) -> CreateResult:
        """Persist a send request once per ``(tenant, dedupe_key)`` and enqueue it."""
        key = str(dedupe_key or "").strip()
        if not key:
            raise InvalidRequest("dedupe_key is required")
        kind = str(job_type or "").strip()
        provider_name = str(provider or "").strip().lower()
        if not kind or not provider_name:
            raise InvalidRequest("type and provider are required")
        if not isinstance(payload, dict):
            raise InvalidRequest("payload must be an object")
        tenant_uuid = _as_uuid(tenant_id)

        existing = self._find_by_dedupe_key(db, tenant_uuid, key)
        if existing is not None:
            return CreateResult(id=str(existing.id), duplicate=True)

        now = self.clock()
        job = OutboundJob(
            tenant_id=tenant_uuid,
            type=kind,
            provider=provider_name,
            integration_id=_as_uuid(integration_id) if integration_id else None,
            dedupe_key=key,
            payload=payload,
            status=OUTBOUND_QUEUED,
            attempt_count=0,
            created_at=now,
            updated_at=now,
        )
        db.add(job)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            existing = self._find_by_dedupe_key(db, tenant_uuid, key)
            if existing is None:
                raise
            logger.debug("Outbound job insert lost a race to %s", existing.id)
            return CreateResult(id=str(existing.id), duplicate=True)

        job_id = str(job.id)
        logger.info("Created outbound job %s type=%s tenant=%s", job_id, kind, tenant_uuid)
        try:
            self._enqueue(db, job_id, tenant_uuid, idempotency_key=f"outbound:{job_id}")
        except Exception:
            db.rollback()
            logger.exception("Failed to enqueue outbound job %s", job_id)
        return CreateResult(id=job_id, duplicate=False)

    def _enqueue(
        self,
        db: Session,
        job_id: str,
        tenant_id,
        *,
        idempotency_key: Optional[str] = None,
        delay_seconds: int = 0,
    ):
        return self.ledger.enqueue(
            db,
            OUTBOUND_PROCESS_JOB,
            {"job_id": str(job_id), "tenant_id": str(tenant_id)},
            idempotency_key=idempotency_key,
            tenant_id=tenant_id,
            delay_seconds=delay_seconds,
        )

    # Sending

    def _context(self, db: Session, job: OutboundJob) -> IntegrationContext:
        tenant_id = job.tenant_id
        integration_id = job.integration_id
        secrets = SecretRepository(db, self.vault)

        def read_secret(key: str) -> Optional[str]:
            return secrets.get_decrypted(tenant_id, integration_id, key)

        return IntegrationContext(
            tenant_id=str(tenant_id),
            integration_id=str(integration_id) if integration_id else None,
            secret_reader=read_secret if integration_id else None,
        )

    def _run_provider(self, db: Session, job: OutboundJob) -> SendResult:
        try:
            if job.integration_id is not None:
                IntegrationRepository(db).require_active(job.tenant_id, job.integration_id)
            provider = self.providers.get(job.type)
            if provider is None:
                raise ProviderNotFound(f"No provider registered for {job.type}")
            result = provider.send(self._context(db, job), job)
        except SwitchyardError as exc:
            db.rollback()
            return SendResult.failed(exc.code, exc.message, retriable=False)
        except Exception as exc:
            db.rollback()
            logger.exception("Provider for %s raised on job %s", job.type, job.id)
            return SendResult.failed("PROVIDER_EXCEPTION", str(exc), retriable=True)
        if not isinstance(result, SendResult):
            return SendResult.failed("PROVIDER_INVALID_RESULT", f"Provider returned {type(result).__name__}")
        return result

    def send_job(self, db: Session, job_id, worker_id: str) -> Optional[str]:
        """Claim and send one job; returns the new status, or None when not claimable."""
        job_uuid = _as_uuid(job_id)
        now = self.clock()
        claimed = (
            db.query(OutboundJob)
            .filter(
                OutboundJob.id == job_uuid,
                or_(
                    OutboundJob.status == OUTBOUND_QUEUED,
                    and_(OutboundJob.status == OUTBOUND_FAILED, OutboundJob.next_attempt_at.isnot(None)),
                ),
                or_(OutboundJob.next_attempt_at.is_(None), OutboundJob.next_attempt_at <= now),
            )
            .update(
                {
                    OutboundJob.status: OUTBOUND_SENDING,
                    OutboundJob.locked_by: worker_id,
                    OutboundJob.locked_at: now,
                    OutboundJob.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        db.commit()
        if not claimed:
            logger.info("Outbound job %s is not claimable; skipping", job_id)
            return None

        job = db.query(OutboundJob).filter(OutboundJob.id == job_uuid).one()
        result = self._run_provider(db, job)
        return self._record_outcome(db, job, result, worker_id)

    def _record_outcome(self, db: Session, job: OutboundJob, result: SendResult, worker_id: str) -> Optional[str]:
        now = self.clock()
        attempt_count = int(job.attempt_count or 0)
        next_attempt_at = None
        values: dict[Any, Any] = {
            OutboundJob.locked_by: None,
            OutboundJob.locked_at: None,
            OutboundJob.updated_at: now,
        }
        if result.success:
            status = OUTBOUND_SENT
            attempt_count += 1
            values.update({
                OutboundJob.status: OUTBOUND_SENT,
                OutboundJob.attempt_count: attempt_count,
                OutboundJob.provider_message_id: result.provider_message_id,
                OutboundJob.result_meta: result.result_meta,
                OutboundJob.sent_at: now,
                OutboundJob.next_attempt_at: None,
                OutboundJob.rate_limited_until: None,
                OutboundJob.last_error_code: None,
                OutboundJob.last_error_msg: None,
            })
        elif result.rate_limited:
            status = OUTBOUND_QUEUED
            retry_after = int(result.retry_after_seconds or _DEFAULT_RATE_LIMIT_DELAY_SECONDS)
            next_attempt_at = now + timedelta(seconds=max(1, retry_after))
            values.update({
                OutboundJob.status: OUTBOUND_QUEUED,
                OutboundJob.next_attempt_at: next_attempt_at,
                OutboundJob.rate_limited_until: next_attempt_at,
                OutboundJob.last_error_code: result.error_code or "RATE_LIMITED",
                OutboundJob.last_error_msg: str(result.error_msg or "")[:_MAX_ERROR_CHARS],
            })
        else:
            status = OUTBOUND_FAILED
            attempt_count += 1
            if result.retriable and attempt_count < self.settings.outbound_max_attempts:
                delay = ladder_delay_seconds(self.settings.outbound_backoff_seconds, attempt_count)
                next_attempt_at = now + timedelta(seconds=delay)
            values.update({
                OutboundJob.status: OUTBOUND_FAILED,
                OutboundJob.attempt_count: attempt_count,
                OutboundJob.next_attempt_at: next_attempt_at,
                OutboundJob.last_error_code: result.error_code or "SEND_FAILED",
                OutboundJob.last_error_msg: str(result.error_msg or "")[:_MAX_ERROR_CHARS],
            })
            if result.result_meta is not None:
                values[OutboundJob.result_meta] = result.result_meta

        updated = (
            db.query(OutboundJob)
            .filter(
                OutboundJob.id == job.id,
                OutboundJob.status == OUTBOUND_SENDING,
                OutboundJob.locked_by == worker_id,
            )
            .update(values, synchronize_session=False)
        )
        db.commit()
        if not updated:
            logger.warning("Outbound job %s lost its lock before completion", job.id)
            return None

        if status == OUTBOUND_SENT:
            logger.info("Outbound job %s sent as %s", job.id, result.provider_message_id)
        elif next_attempt_at is not None:
            if result.rate_limited:
                logger.warning("Outbound job %s rate limited until %s", job.id, next_attempt_at.isoformat())
            else:
                logger.warning(
                    "Outbound job %s failed with %s (attempt %s), retry at %s",
                    job.id, result.error_code, attempt_count, next_attempt_at.isoformat(),
                )
            self._enqueue(
                db,
                str(job.id),
                job.tenant_id,
                idempotency_key=f"outbound:{job.id}:{next_attempt_at.isoformat()}",
                delay_seconds=int((next_attempt_at - now).total_seconds()),
            )
        else:
            logger.error(
                "Outbound job %s failed permanently with %s (attempt %s): %s",
                job.id, result.error_code, attempt_count, result.error_msg,
            )
        return status

    # Operator actions

    def get_job(self, db: Session, tenant_id, job_id) -> OutboundJob:
        job = (
            db.query(OutboundJob)
            .filter(
                OutboundJob.id == _as_uuid(job_id, not_found=True),
                OutboundJob.tenant_id == _as_uuid(tenant_id),
            )
            .first()
        )
        if job is None:
            raise OutboundJobNotFound()
        return job

    def list_jobs(
        self,
        db: Session,
        tenant_id,
        *,
        job_type: Optional[str] = None,
        status: Optional[str] = None,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> tuple[list[OutboundJob], Optional[str]]:
        page_size = clamp_limit(limit)
        query = db.query(OutboundJob).filter(OutboundJob.tenant_id == _as_uuid(tenant_id))
        if job_type:
            query = query.filter(OutboundJob.type == job_type)
        if status:
            query = query.filter(OutboundJob.status == str(status).strip().upper())
        position = decode_cursor(cursor)
        if position is not None:
            ts, last_id = position
            query = query.filter(
                or_(
                    OutboundJob.created_at < ts,
                    and_(OutboundJob.created_at == ts, OutboundJob.id < _as_uuid(last_id)),
                )
            )
        rows = (
            query.order_by(OutboundJob.created_at.desc(), OutboundJob.id.desc())
            .limit(page_size + 1)
            .all()
        )
        page = rows[:page_size]
        next_cursor = None
        if len(rows) > page_size:
            next_cursor = encode_cursor(page[-1].created_at, page[-1].id)
        return page, next_cursor

    def cancel(self, db: Session, tenant_id, job_id) -> OutboundJob:
        """Cancel a job that has not been picked up yet.

        Only QUEUED jobs can be canceled; a job already SENDING (or finished)
        raises ``OutboundJobConflict``.
        """
        job = self.get_job(db, tenant_id, job_id)
        now = self.clock()
        updated = (
            db.query(OutboundJob)
            .filter(OutboundJob.id == job.id, OutboundJob.status == OUTBOUND_QUEUED)
            .update(
                {
                    OutboundJob.status: OUTBOUND_CANCELED,
                    OutboundJob.next_attempt_at: None,
                    OutboundJob.locked_by: None,
                    OutboundJob.locked_at: None,
                    OutboundJob.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        db.commit()
        db.refresh(job)
        if not updated:
            raise OutboundJobConflict(f"Cannot cancel a job in status {job.status}")
        logger.info("Outbound job %s canceled", job.id)
        return job

    def retry(self, db: Session, tenant_id, job_id) -> OutboundJob:
        """Put a FAILED or CANCELED job back on the queue."""
        job = self.get_job(db, tenant_id, job_id)
        now = self.clock()
        updated = (
            db.query(OutboundJob)
            .filter(OutboundJob.id == job.id, OutboundJob.status.in_((OUTBOUND_FAILED, OUTBOUND_CANCELED)))
            .update(
                {
                    OutboundJob.status: OUTBOUND_QUEUED,
                    OutboundJob.next_attempt_at: None,
                    OutboundJob.rate_limited_until: None,
                    OutboundJob.locked_by: None,
                    OutboundJob.locked_at: None,
                    OutboundJob.last_error_code: None,
                    OutboundJob.last_error_msg: None,
                    OutboundJob.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        db.commit()
        db.refresh(job)
        if not updated:
            raise OutboundJobConflict(f"Cannot retry a job in status {job.status}")
        self._enqueue(db, str(job.id), job.tenant_id)
        logger.info("Outbound job %s reset for retry", job.id)
        return job

    def sweep_due(self, db: Session, limit: Optional[int] = None) -> int:
        """Re-enqueue jobs whose scheduled attempt is due or whose delivery was lost."""
        batch = int(limit or self.settings.worker_sweep_batch_size)
        now = self.clock()
        enqueued = 0

        stale_lock = now - timedelta(seconds=self.settings.lock_ttl_for(OUTBOUND_PROCESS_JOB))
        stuck_ids = [
            row.id
            for row in db.query(OutboundJob.id)
            .filter(OutboundJob.status == OUTBOUND_SENDING, OutboundJob.locked_at < stale_lock)
            .limit(batch)
            .all()
        ]
        for stuck_id in stuck_ids:
            # The provider may or may not have delivered; a retry is at-least-once.
            released = (
                db.query(OutboundJob)
                .filter(
                    OutboundJob.id == stuck_id,
                    OutboundJob.status == OUTBOUND_SENDING,
                    OutboundJob.locked_at < stale_lock,
                )
                .update(
                    {
                        OutboundJob.status: OUTBOUND_QUEUED,
                        OutboundJob.locked_by: None,
                        OutboundJob.locked_at: None,
                        OutboundJob.updated_at: now,
                    },
                    synchronize_session=False,
                )
            )
            db.commit()
            if released:
                logger.warning("Released stuck outbound job %s", stuck_id)

        due = (
            db.query(OutboundJob)
            .filter(
                OutboundJob.status.in_((OUTBOUND_QUEUED, OUTBOUND_FAILED)),
                OutboundJob.next_attempt_at <= now,
            )
            .order_by(OutboundJob.next_attempt_at.asc())
            .limit(batch)
            .all()
        )
        for job in due:
            result = self._enqueue(
                db,
                str(job.id),
                job.tenant_id,
                idempotency_key=f"outbound:{job.id}:{job.next_attempt_at.isoformat()}",
            )
            enqueued += 0 if result.deduplicated else 1

        stale_before = now - timedelta(seconds=self.settings.sweep_stale_after_seconds)
        stale = (
            db.query(OutboundJob)
            .filter(
                OutboundJob.status == OUTBOUND_QUEUED,
                OutboundJob.next_attempt_at.is_(None),
                OutboundJob.updated_at <= stale_before,
            )
            .order_by(OutboundJob.updated_at.asc())
            .limit(batch)
            .all()
        )
        for job in stale:
            result = self._enqueue(
                db,
                str(job.id),
                job.tenant_id,
                idempotency_key=f"outbound:{job.id}:{job.updated_at.isoformat()}",
            )
            enqueued += 0 if result.deduplicated else 1

        if enqueued:
            logger.info("Outbound sweep enqueued %s job(s)", enqueued)
        return enqueued
