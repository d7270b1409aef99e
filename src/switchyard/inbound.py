"""Inbound event store.

Accepted webhook events are persisted once per external occurrence, then
processed by whichever processor is registered for their source type. The
status machine is::

    RECEIVED -> PROCESSING -> DONE
                           -> ERROR (next_attempt_at set)   -> PROCESSING ...
                           -> ERROR (next_attempt_at null)  terminal until retry()

Every transition out of a state is a conditional UPDATE guarded by the state
it leaves, so concurrent workers racing on one event cannot both win.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from switchyard.errors import (
    InboundEventConflict,
    InboundEventNotFound,
    InvalidRequest,
    ProcessorNotFound,
    SwitchyardError,
)
from switchyard.integrations import IntegrationRepository, SecretRepository
from switchyard.ledger import INBOUND_PROCESS_EVENT, JobLedger
from switchyard.metadata import EVENT_DONE, EVENT_ERROR, EVENT_PROCESSING, EVENT_RECEIVED, InboundEvent
from switchyard.runtime.registry import InboundProcessorRegistry, IntegrationContext, ProcessResult
from switchyard.timeutil import Clock, utcnow
from switchyard.utils.backoff import ladder_delay_seconds
from switchyard.utils.paging import clamp_limit, decode_cursor, encode_cursor
from switchyard.utils.pii import mask_pii
from switchyard.vault import SecretsVault

logger = logging.getLogger(__name__)

_MAX_ERROR_CHARS = 2000


@dataclass
class CreateResult:
    id: str
    duplicate: bool


def compute_dedupe_key(source_type: str, payload: Any) -> str:
    """sha256 over the source type and the canonical JSON form of the payload."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str, ensure_ascii=False)
    return hashlib.sha256(f"{source_type}:{canonical}".encode("utf-8")).hexdigest()


def _as_uuid(value: Any, not_found: bool = False) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError, AttributeError):
        if not_found:
            raise InboundEventNotFound()
        raise InvalidRequest("Invalid UUID format")


def serialize_event(event: InboundEvent, *, mask: bool = True) -> dict[str, Any]:
    payload = event.payload or {}
    return {
        "id": str(event.id),
        "tenant_id": str(event.tenant_id),
        "source_type": event.source_type,
        "provider": event.provider,
        "integration_id": str(event.integration_id) if event.integration_id else None,
        "external_id": event.external_id,
        "dedupe_key": event.dedupe_key,
        "payload": mask_pii(payload) if mask else payload,
        "meta": event.meta or {},
        "result_meta": event.result_meta,
        "status": event.status,
        "attempt_count": int(event.attempt_count or 0),
        "next_attempt_at": event.next_attempt_at.isoformat() if event.next_attempt_at else None,
        "locked_by": event.locked_by,
        "last_error_code": event.last_error_code,
        "last_error_msg": event.last_error_msg,
        "received_at": event.received_at.isoformat() if event.received_at else None,
        "processed_at": event.processed_at.isoformat() if event.processed_at else None,
    }


class InboundEventService:
    def __init__(
        self,
        ledger: JobLedger,
        processors: InboundProcessorRegistry,
        vault: SecretsVault,
        settings,
        clock: Clock = utcnow,
    ):
        self.ledger = ledger
        self.processors = processors
        self.vault = vault
        self.settings = settings
        self.clock = clock

    # Intake

    def _find_existing(
        self,
        db: Session,
        tenant_id: uuid.UUID,
        source_type: str,
        external_id: Optional[str],
        dedupe_key: Optional[str],
    ) -> Optional[InboundEvent]:
        query = db.query(InboundEvent).filter(InboundEvent.tenant_id == tenant_id)
        if external_id is not None:
            query = query.filter(
                InboundEvent.source_type == source_type,
                InboundEvent.external_id == external_id,
            )
        else:
            query = query.filter(InboundEvent.dedupe_key == dedupe_key)
        return query.first()

    def create_event(
        self,
        db: Session,
        tenant_id,
        source_type: str,
        provider: str,
        payload: dict[str, Any],
        *,
        external_id: Optional[str] = None,
        integration_id=None,
        meta: Optional[dict[str, Any]] = None,
    ) -> CreateResult:
        """Persist an event once and enqueue it for processing.

        A second delivery of the same occurrence (same external id, or same
        payload hash when there is none) returns the first row's id with
        ``duplicate=True``. Concurrent deliveries are settled by the unique
        constraints: the loser's insert fails and it re-reads the winner.
        """
        source = str(source_type or "").strip()
        provider_name = str(provider or "").strip().lower()
        if not source or not provider_name:
            raise InvalidRequest("source_type and provider are required")
        if not isinstance(payload, dict):
            raise InvalidRequest("payload must be an object")
        tenant_uuid = _as_uuid(tenant_id)
        external = str(external_id).strip() if external_id not in (None, "") else None
        dedupe_key = None if external is not None else compute_dedupe_key(source, payload)

        existing = self._find_existing(db, tenant_uuid, source, external, dedupe_key)
        if existing is not None:
            logger.debug("Duplicate inbound event %s/%s -> %s", source, external or dedupe_key, existing.id)
            return CreateResult(id=str(existing.id), duplicate=True)

        now = self.clock()
        event = InboundEvent(
            tenant_id=tenant_uuid,
            source_type=source,
            provider=provider_name,
            integration_id=_as_uuid(integration_id) if integration_id else None,
            external_id=external,
            dedupe_key=dedupe_key,
            payload=payload,
            meta=dict(meta or {}),
            status=EVENT_RECEIVED,
            attempt_count=0,
            received_at=now,
            updated_at=now,
        )
        db.add(event)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            existing = self._find_existing(db, tenant_uuid, source, external, dedupe_key)
            if existing is None:
                raise
            logger.debug("Inbound event insert lost a race to %s", existing.id)
            return CreateResult(id=str(existing.id), duplicate=True)

        event_id = str(event.id)
        logger.info("Received inbound event %s source=%s tenant=%s", event_id, source, tenant_uuid)
        try:
            self._enqueue(db, event_id, tenant_uuid, idempotency_key=f"inbound:{event_id}")
        except Exception:
            # The row is durable; the sweep re-enqueues stale RECEIVED events.
            db.rollback()
            logger.exception("Failed to enqueue inbound event %s", event_id)
        return CreateResult(id=event_id, duplicate=False)

    def _enqueue(
        self,
        db: Session,
        event_id: str,
        tenant_id,
        *,
        idempotency_key: Optional[str] = None,
        delay_seconds: int = 0,
    ):
        return self.ledger.enqueue(
            db,
            INBOUND_PROCESS_EVENT,
            {"event_id": str(event_id), "tenant_id": str(tenant_id)},
            idempotency_key=idempotency_key,
            tenant_id=tenant_id,
            delay_seconds=delay_seconds,
        )

    # Processing

    def _context(self, db: Session, event: InboundEvent) -> IntegrationContext:
        tenant_id = event.tenant_id
        integration_id = event.integration_id
        secrets = SecretRepository(db, self.vault)

        def read_secret(key: str) -> Optional[str]:
            return secrets.get_decrypted(tenant_id, integration_id, key)

        return IntegrationContext(
            tenant_id=str(tenant_id),
            integration_id=str(integration_id) if integration_id else None,
            secret_reader=read_secret if integration_id else None,
        )

    def _run_processor(self, db: Session, event: InboundEvent) -> ProcessResult:
        try:
            if event.integration_id is not None:
                IntegrationRepository(db).require_active(event.tenant_id, event.integration_id)
            processor = self.processors.get(event.source_type)
            if processor is None:
                raise ProcessorNotFound(f"No processor registered for {event.source_type}")
            result = processor.process(self._context(db, event), event)
        except SwitchyardError as exc:
            db.rollback()
            return ProcessResult.failed(exc.code, exc.message, retriable=False)
        except Exception as exc:
            db.rollback()
            logger.exception("Processor for %s raised on event %s", event.source_type, event.id)
            return ProcessResult.failed("PROCESSOR_EXCEPTION", str(exc), retriable=True)
        if not isinstance(result, ProcessResult):
            return ProcessResult.failed("PROCESSOR_INVALID_RESULT", f"Processor returned {type(result).__name__}")
        return result

    def process_event(self, db: Session, event_id, worker_id: str) -> Optional[str]:
        """Claim and process one event; returns the new status, or None when not claimable."""
        event_uuid = _as_uuid(event_id)
        now = self.clock()
        claimed = (
            db.query(InboundEvent)
            .filter(
                InboundEvent.id == event_uuid,
                or_(
                    InboundEvent.status == EVENT_RECEIVED,
                    and_(InboundEvent.status == EVENT_ERROR, InboundEvent.next_attempt_at.isnot(None)),
                ),
                or_(InboundEvent.next_attempt_at.is_(None), InboundEvent.next_attempt_at <= now),
            )
            .update(
                {
                    InboundEvent.status: EVENT_PROCESSING,
                    InboundEvent.locked_by: worker_id,
                    InboundEvent.locked_at: now,
                    InboundEvent.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        db.commit()
        if not claimed:
            logger.info("Inbound event %s is not claimable; skipping", event_id)
            return None

        event = db.query(InboundEvent).filter(InboundEvent.id == event_uuid).one()
        result = self._run_processor(db, event)
        return self._record_outcome(db, event, result, worker_id)

    def _record_outcome(self, db: Session, event: InboundEvent, result: ProcessResult, worker_id: str) -> Optional[str]:
        now = self.clock()
        attempt_count = int(event.attempt_count or 0) + 1
        next_attempt_at = None
        values: dict[Any, Any] = {
            InboundEvent.attempt_count: attempt_count,
            InboundEvent.locked_by: None,
            InboundEvent.locked_at: None,
            InboundEvent.updated_at: now,
        }
        if result.success:
            status = EVENT_DONE
            values.update({
                InboundEvent.status: EVENT_DONE,
                InboundEvent.processed_at: now,
                InboundEvent.result_meta: result.result_meta,
                InboundEvent.next_attempt_at: None,
                InboundEvent.last_error_code: None,
                InboundEvent.last_error_msg: None,
            })
        else:
            status = EVENT_ERROR
            if result.retriable and attempt_count < self.settings.inbound_max_attempts:
                delay = ladder_delay_seconds(self.settings.inbound_backoff_seconds, attempt_count)
                next_attempt_at = now + timedelta(seconds=delay)
            values.update({
                InboundEvent.status: EVENT_ERROR,
                InboundEvent.next_attempt_at: next_attempt_at,
                InboundEvent.last_error_code: result.error_code or "PROCESSING_FAILED",
                InboundEvent.last_error_msg: str(result.error_msg or "")[:_MAX_ERROR_CHARS],
            })
            if result.result_meta is not None:
                values[InboundEvent.result_meta] = result.result_meta

        updated = (
            db.query(InboundEvent)
            .filter(
                InboundEvent.id == event.id,
                InboundEvent.status == EVENT_PROCESSING,
                InboundEvent.locked_by == worker_id,
            )
            .update(values, synchronize_session=False)
        )
        db.commit()
        if not updated:
            logger.warning("Inbound event %s lost its lock before completion", event.id)
            return None

        if status == EVENT_DONE:
            logger.info("Inbound event %s processed (attempt %s)", event.id, attempt_count)
        elif next_attempt_at is not None:
            logger.warning(
                "Inbound event %s failed with %s (attempt %s), retry at %s",
                event.id, result.error_code, attempt_count, next_attempt_at.isoformat(),
            )
            self._enqueue(
                db,
                str(event.id),
                event.tenant_id,
                idempotency_key=f"inbound:{event.id}:{next_attempt_at.isoformat()}",
                delay_seconds=int((next_attempt_at - now).total_seconds()),
            )
        else:
            logger.error(
                "Inbound event %s failed permanently with %s (attempt %s): %s",
                event.id, result.error_code, attempt_count, result.error_msg,
            )
        return status

    # Operator actions

    def get_event(self, db: Session, tenant_id, event_id) -> InboundEvent:
        event = (
            db.query(InboundEvent)
            .filter(
                InboundEvent.id == _as_uuid(event_id, not_found=True),
                InboundEvent.tenant_id == _as_uuid(tenant_id),
            )
            .first()
        )
        if event is None:
            raise InboundEventNotFound()
        return event

    def list_events(
        self,
        db: Session,
        tenant_id,
        *,
        source_type: Optional[str] = None,
        status: Optional[str] = None,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> tuple[list[InboundEvent], Optional[str]]:
        page_size = clamp_limit(limit)
        query = db.query(InboundEvent).filter(InboundEvent.tenant_id == _as_uuid(tenant_id))
        if source_type:
            query = query.filter(InboundEvent.source_type == source_type)
        if status:
            query = query.filter(InboundEvent.status == str(status).strip().upper())
        position = decode_cursor(cursor)
        if position is not None:
            ts, last_id = position
            query = query.filter(
                or_(
                    InboundEvent.received_at < ts,
                    and_(InboundEvent.received_at == ts, InboundEvent.id < _as_uuid(last_id)),
                )
            )
        rows = (
            query.order_by(InboundEvent.received_at.desc(), InboundEvent.id.desc())
            .limit(page_size + 1)
            .all()
        )
        page = rows[:page_size]
        next_cursor = None
        if len(rows) > page_size:
            next_cursor = encode_cursor(page[-1].received_at, page[-1].id)
        return page, next_cursor

    def retry(self, db: Session, tenant_id, event_id) -> InboundEvent:
        """Reset an event to RECEIVED and enqueue it again.

        Allowed from any status but PROCESSING. ``attempt_count`` is kept so
        operators can still see how many tries the event has had.
        """
        event = self.get_event(db, tenant_id, event_id)
        if event.status == EVENT_PROCESSING:
            raise InboundEventConflict()
        now = self.clock()
        updated = (
            db.query(InboundEvent)
            .filter(InboundEvent.id == event.id, InboundEvent.status != EVENT_PROCESSING)
            .update(
                {
                    InboundEvent.status: EVENT_RECEIVED,
                    InboundEvent.locked_by: None,
                    InboundEvent.locked_at: None,
                    InboundEvent.next_attempt_at: None,
                    InboundEvent.last_error_code: None,
                    InboundEvent.last_error_msg: None,
                    InboundEvent.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        db.commit()
        if not updated:
            raise InboundEventConflict()
        self._enqueue(db, str(event.id), event.tenant_id)
        db.refresh(event)
        logger.info("Inbound event %s reset for retry", event.id)
        return event

    def sweep_due(self, db: Session, limit: Optional[int] = None) -> int:
        """Re-enqueue events whose retry is due or whose delivery was lost.

        Idempotency keys are derived from the scheduled attempt, so a sweep that
        overlaps the delayed run scheduled at failure time collapses into it.
        """
        batch = int(limit or self.settings.worker_sweep_batch_size)
        now = self.clock()
        enqueued = 0

        stale_lock = now - timedelta(seconds=self.settings.lock_ttl_for(INBOUND_PROCESS_EVENT))
        stuck_ids = [
            row.id
            for row in db.query(InboundEvent.id)
            .filter(InboundEvent.status == EVENT_PROCESSING, InboundEvent.locked_at < stale_lock)
            .limit(batch)
            .all()
        ]
        for stuck_id in stuck_ids:
            released = (
                db.query(InboundEvent)
                .filter(
                    InboundEvent.id == stuck_id,
                    InboundEvent.status == EVENT_PROCESSING,
                    InboundEvent.locked_at < stale_lock,
                )
                .update(
                    {
                        InboundEvent.status: EVENT_RECEIVED,
                        InboundEvent.locked_by: None,
                        InboundEvent.locked_at: None,
                        InboundEvent.updated_at: now,
                    },
                    synchronize_session=False,
                )
            )
            db.commit()
            if released:
                logger.warning("Released stuck inbound event %s", stuck_id)

        due = (
            db.query(InboundEvent)
            .filter(InboundEvent.status == EVENT_ERROR, InboundEvent.next_attempt_at <= now)
            .order_by(InboundEvent.next_attempt_at.asc())
            .limit(batch)
            .all()
        )
        for event in due:
            result = self._enqueue(
                db,
                str(event.id),
                event.tenant_id,
                idempotency_key=f"inbound:{event.id}:{event.next_attempt_at.isoformat()}",
            )
            enqueued += 0 if result.deduplicated else 1

        stale_before = now - timedelta(seconds=self.settings.sweep_stale_after_seconds)
        stale = (
            db.query(InboundEvent)
            .filter(InboundEvent.status == EVENT_RECEIVED, InboundEvent.updated_at <= stale_before)
            .order_by(InboundEvent.updated_at.asc())
            .limit(batch)
            .all()
        )
        for event in stale:
            result = self._enqueue(
                db,
                str(event.id),
                event.tenant_id,
                idempotency_key=f"inbound:{event.id}:{event.updated_at.isoformat()}",
            )
            enqueued += 0 if result.deduplicated else 1

        if enqueued:
            logger.info("Inbound sweep enqueued %s event(s)", enqueued)
        return enqueued
