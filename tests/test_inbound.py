"""Tests for the inbound event store and processing state machine."""

import uuid
from datetime import timedelta

import pytest
from sqlalchemy.orm import Session

from switchyard.errors import InboundEventConflict, InboundEventNotFound
from switchyard.inbound import compute_dedupe_key, serialize_event
from switchyard.integrations import IntegrationRepository
from switchyard.metadata import InboundEvent, JobRun
from switchyard.runtime import ProcessResult


SOURCE = "WHATSAPP_INBOUND"


class ScriptedProcessor:
    """Returns queued results in order; raises when given an exception."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def process(self, ctx, event):
        self.calls.append((ctx, event.id))
        outcome = self.outcomes.pop(0) if self.outcomes else ProcessResult.ok({"handled": True})
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _event(db: Session, event_id) -> InboundEvent:
    db.expire_all()
    return db.get(InboundEvent, uuid.UUID(str(event_id)))


def _create(runtime, db, tenant, *, external_id="wamid.1", payload=None, integration_id=None):
    return runtime.inbound.create_event(
        db,
        tenant.id,
        SOURCE,
        "meta",
        payload if payload is not None else {"from": "15550001111", "text": "hi"},
        external_id=external_id,
        integration_id=integration_id,
    )


def test_create_event_persists_and_enqueues(runtime, test_db: Session, test_tenant, queue):
    result = _create(runtime, test_db, test_tenant)

    assert result.duplicate is False
    event = _event(test_db, result.id)
    assert event.status == "RECEIVED"
    assert event.attempt_count == 0
    assert event.dedupe_key is None
    assert [item.job_type for item in queue.items] == ["INBOUND_PROCESS_EVENT"]
    assert queue.items[0].payload["event_id"] == result.id


def test_duplicate_external_id_returns_first_event(runtime, test_db: Session, test_tenant, queue):
    first = _create(runtime, test_db, test_tenant)
    second = _create(runtime, test_db, test_tenant, payload={"from": "other"})

    assert second.duplicate is True
    assert second.id == first.id
    assert test_db.query(InboundEvent).count() == 1
    assert len(queue) == 1


def test_same_external_id_in_other_tenant_is_distinct(runtime, test_db: Session, test_tenant, other_tenant):
    first = _create(runtime, test_db, test_tenant)
    second = _create(runtime, test_db, other_tenant)

    assert second.duplicate is False
    assert first.id != second.id


def test_payload_hash_dedupes_without_external_id(runtime, test_db: Session, test_tenant):
    first = _create(runtime, test_db, test_tenant, external_id=None, payload={"b": 2, "a": 1})
    second = _create(runtime, test_db, test_tenant, external_id=None, payload={"a": 1, "b": 2})

    assert second.duplicate is True
    assert second.id == first.id
    assert _event(test_db, first.id).dedupe_key == compute_dedupe_key(SOURCE, {"a": 1, "b": 2})


def test_lost_insert_race_rereads_winner(runtime, test_db: Session, test_tenant, monkeypatch):
    winner = _create(runtime, test_db, test_tenant, external_id="wamid.race")
    original = runtime.inbound._find_existing
    calls = {"n": 0}

    def stale_then_real(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return original(*args, **kwargs)

    monkeypatch.setattr(runtime.inbound, "_find_existing", stale_then_real)

    loser = _create(runtime, test_db, test_tenant, external_id="wamid.race")

    assert loser.duplicate is True
    assert loser.id == winner.id
    assert test_db.query(InboundEvent).count() == 1


def test_process_event_success(runtime, test_db: Session, test_tenant):
    processor = ScriptedProcessor(ProcessResult.ok({"lead_id": "L1"}))
    runtime.processors.register(SOURCE, processor)
    created = _create(runtime, test_db, test_tenant)

    status = runtime.inbound.process_event(test_db, created.id, "w1")

    assert status == "DONE"
    event = _event(test_db, created.id)
    assert event.status == "DONE"
    assert event.attempt_count == 1
    assert event.result_meta == {"lead_id": "L1"}
    assert event.locked_by is None
    assert event.processed_at is not None


def test_done_event_is_not_processed_again(runtime, test_db: Session, test_tenant):
    processor = ScriptedProcessor()
    runtime.processors.register(SOURCE, processor)
    created = _create(runtime, test_db, test_tenant)
    runtime.inbound.process_event(test_db, created.id, "w1")

    assert runtime.inbound.process_event(test_db, created.id, "w2") is None
    assert len(processor.calls) == 1


def test_retriable_failure_schedules_backoff(runtime, test_db: Session, test_tenant, clock, queue):
    runtime.processors.register(SOURCE, ScriptedProcessor(ProcessResult.failed("CRM_DOWN", "503", retriable=True)))
    created = _create(runtime, test_db, test_tenant)
    queue.drain()

    status = runtime.inbound.process_event(test_db, created.id, "w1")

    assert status == "ERROR"
    event = _event(test_db, created.id)
    assert event.attempt_count == 1
    assert event.last_error_code == "CRM_DOWN"
    assert event.next_attempt_at == clock.now + timedelta(seconds=60)
    assert len(queue.items) == 1
    assert queue.items[0].delay_seconds == 60


def test_redelivery_before_next_attempt_is_noop(runtime, test_db: Session, test_tenant, clock):
    processor = ScriptedProcessor(ProcessResult.failed("CRM_DOWN", "503", retriable=True))
    runtime.processors.register(SOURCE, processor)
    created = _create(runtime, test_db, test_tenant)
    runtime.inbound.process_event(test_db, created.id, "w1")
    clock.advance(1)

    assert runtime.inbound.process_event(test_db, created.id, "w2") is None
    assert len(processor.calls) == 1
    assert _event(test_db, created.id).status == "ERROR"

    clock.advance(59)
    assert runtime.inbound.process_event(test_db, created.id, "w2") == "DONE"
    assert len(processor.calls) == 2


def test_retries_stop_at_max_attempts(runtime, test_db: Session, test_tenant, clock, test_settings):
    failure = ProcessResult.failed("CRM_DOWN", "503", retriable=True)
    runtime.processors.register(SOURCE, ScriptedProcessor(*([failure] * 5)))
    created = _create(runtime, test_db, test_tenant)

    for attempt in range(1, test_settings.inbound_max_attempts + 1):
        assert runtime.inbound.process_event(test_db, created.id, "w1") == "ERROR"
        event = _event(test_db, created.id)
        assert event.attempt_count == attempt
        if attempt < test_settings.inbound_max_attempts:
            assert event.next_attempt_at is not None
            clock.advance(3600)

    event = _event(test_db, created.id)
    assert event.next_attempt_at is None
    assert runtime.inbound.process_event(test_db, created.id, "w1") is None


def test_backoff_ladder_index_is_clamped(runtime, test_db: Session, test_tenant, clock, test_settings):
    test_settings.inbound_max_attempts = 10
    failure = ProcessResult.failed("CRM_DOWN", "503", retriable=True)
    runtime.processors.register(SOURCE, ScriptedProcessor(*([failure] * 5)))
    created = _create(runtime, test_db, test_tenant)

    for _ in range(5):
        runtime.inbound.process_event(test_db, created.id, "w1")
        clock.advance(1000)

    event = _event(test_db, created.id)
    assert event.attempt_count == 5
    assert event.next_attempt_at == clock.now - timedelta(seconds=1000) + timedelta(seconds=900)


def test_terminal_failure_is_not_scheduled(runtime, test_db: Session, test_tenant, queue):
    runtime.processors.register(SOURCE, ScriptedProcessor(ProcessResult.failed("BAD_PAYLOAD", "nope")))
    created = _create(runtime, test_db, test_tenant)
    queue.drain()

    assert runtime.inbound.process_event(test_db, created.id, "w1") == "ERROR"

    event = _event(test_db, created.id)
    assert event.next_attempt_at is None
    assert event.last_error_code == "BAD_PAYLOAD"
    assert len(queue) == 0


def test_processor_exception_is_retriable(runtime, test_db: Session, test_tenant):
    runtime.processors.register(SOURCE, ScriptedProcessor(RuntimeError("kaboom")))
    created = _create(runtime, test_db, test_tenant)

    runtime.inbound.process_event(test_db, created.id, "w1")

    event = _event(test_db, created.id)
    assert event.status == "ERROR"
    assert event.last_error_code == "PROCESSOR_EXCEPTION"
    assert event.next_attempt_at is not None


def test_missing_processor_is_terminal(runtime, test_db: Session, test_tenant):
    created = _create(runtime, test_db, test_tenant)

    runtime.inbound.process_event(test_db, created.id, "w1")

    event = _event(test_db, created.id)
    assert event.last_error_code == "PROCESSOR_NOT_FOUND"
    assert event.next_attempt_at is None


def test_disabled_integration_is_terminal(runtime, test_db: Session, test_tenant, whatsapp_integration):
    processor = ScriptedProcessor()
    runtime.processors.register(SOURCE, processor)
    created = _create(runtime, test_db, test_tenant, integration_id=whatsapp_integration.id)
    IntegrationRepository(test_db).disable(test_tenant.id, whatsapp_integration.id)

    runtime.inbound.process_event(test_db, created.id, "w1")

    event = _event(test_db, created.id)
    assert event.last_error_code == "INTEGRATION_DISABLED"
    assert event.next_attempt_at is None
    assert processor.calls == []


def test_processor_context_reads_integration_secrets(runtime, test_db: Session, test_tenant, whatsapp_integration):
    processor = ScriptedProcessor()
    runtime.processors.register(SOURCE, processor)
    created = _create(runtime, test_db, test_tenant, integration_id=whatsapp_integration.id)

    runtime.inbound.process_event(test_db, created.id, "w1")

    ctx, _ = processor.calls[0]
    assert ctx.tenant_id == str(test_tenant.id)
    assert ctx.get_secret("verify_token") == "verify-me"
    assert ctx.get_secret("unknown") is None


def test_retry_resets_terminal_event(runtime, test_db: Session, test_tenant, queue):
    runtime.processors.register(SOURCE, ScriptedProcessor(ProcessResult.failed("BAD", "bad")))
    created = _create(runtime, test_db, test_tenant)
    runtime.inbound.process_event(test_db, created.id, "w1")
    queue.drain()

    event = runtime.inbound.retry(test_db, test_tenant.id, created.id)

    assert event.status == "RECEIVED"
    assert event.attempt_count == 1
    assert event.last_error_code is None
    assert len(queue) == 1
    assert runtime.inbound.process_event(test_db, created.id, "w1") == "DONE"


def test_retry_rejects_processing_event(runtime, test_db: Session, test_tenant):
    created = _create(runtime, test_db, test_tenant)
    test_db.query(InboundEvent).update({InboundEvent.status: "PROCESSING"})
    test_db.commit()

    with pytest.raises(InboundEventConflict):
        runtime.inbound.retry(test_db, test_tenant.id, created.id)


def test_get_event_is_tenant_scoped(runtime, test_db: Session, test_tenant, other_tenant):
    created = _create(runtime, test_db, test_tenant)

    with pytest.raises(InboundEventNotFound):
        runtime.inbound.get_event(test_db, other_tenant.id, created.id)
    with pytest.raises(InboundEventNotFound):
        runtime.inbound.get_event(test_db, test_tenant.id, "garbage")


def test_list_events_pages_newest_first(runtime, test_db: Session, test_tenant, clock):
    ids = []
    for index in range(5):
        ids.append(_create(runtime, test_db, test_tenant, external_id=f"wamid.{index}").id)
        clock.advance(1)

    first_page, cursor = runtime.inbound.list_events(test_db, test_tenant.id, limit=2)
    second_page, cursor2 = runtime.inbound.list_events(test_db, test_tenant.id, limit=2, cursor=cursor)
    third_page, cursor3 = runtime.inbound.list_events(test_db, test_tenant.id, limit=2, cursor=cursor2)

    listed = [str(event.id) for event in first_page + second_page + third_page]
    assert listed == list(reversed(ids))
    assert cursor3 is None


def test_serialize_event_masks_payload(runtime, test_db: Session, test_tenant):
    created = _create(runtime, test_db, test_tenant, payload={"from": "15550001111", "text": "hello"})

    data = serialize_event(_event(test_db, created.id))

    assert data["payload"]["from"] == "***1111"
    assert data["payload"]["text"] == "hello"


def test_sweep_reenqueues_due_errors_once(runtime, test_db: Session, test_tenant, clock, queue):
    runtime.processors.register(SOURCE, ScriptedProcessor(ProcessResult.failed("CRM_DOWN", "x", retriable=True)))
    created = _create(runtime, test_db, test_tenant)
    runtime.inbound.process_event(test_db, created.id, "w1")
    clock.advance(60)

    # The delayed run scheduled at failure time holds the same idempotency key.
    assert runtime.inbound.sweep_due(test_db) == 0

    test_db.query(JobRun).update({JobRun.status: "FAILED"})
    test_db.commit()
    assert runtime.inbound.sweep_due(test_db) == 1
    assert runtime.inbound.sweep_due(test_db) == 0


def test_sweep_releases_stuck_processing_event(runtime, test_db: Session, test_tenant, clock, test_settings):
    created = _create(runtime, test_db, test_tenant)
    test_db.query(InboundEvent).update({
        InboundEvent.status: "PROCESSING",
        InboundEvent.locked_by: "dead-worker",
        InboundEvent.locked_at: clock.now,
    })
    test_db.commit()
    clock.advance(test_settings.lock_ttl_for("INBOUND_PROCESS_EVENT") + 1)

    runtime.inbound.sweep_due(test_db)

    event = _event(test_db, created.id)
    assert event.status == "RECEIVED"
    assert event.locked_by is None
