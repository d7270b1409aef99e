"""Background queue worker for executing job runs."""

from __future__ import annotations

import logging
import os
import socket
import time
import uuid
from dataclasses import dataclass
from threading import Event, Thread
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from switchyard.bootstrap import Runtime, build_runtime
from switchyard.ledger import INBOUND_PROCESS_EVENT, OUTBOUND_PROCESS_JOB, ClaimedRun

logger = logging.getLogger(__name__)

_worker_thread: Optional[Thread] = None
_worker_stop_event: Optional[Event] = None


@dataclass
class ExecutionResult:
    success: bool
    error_code: Optional[str] = None
    error_text: Optional[str] = None
    retryable: bool = False


class NonRetryableRunError(RuntimeError):
    """Raised when a run cannot be executed due to an invalid payload or type."""


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value or "").strip().lower()
    return text in {"1", "true", "yes", "y", "on"}


def _build_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def _handle_inbound(runtime: Runtime, db: Session, payload: dict[str, Any], worker_id: str) -> None:
    event_id = payload.get("event_id")
    if not event_id:
        raise NonRetryableRunError("Run payload has no event_id")
    runtime.inbound.process_event(db, event_id, worker_id)


def _handle_outbound(runtime: Runtime, db: Session, payload: dict[str, Any], worker_id: str) -> None:
    job_id = payload.get("job_id")
    if not job_id:
        raise NonRetryableRunError("Run payload has no job_id")
    runtime.outbound.send_job(db, job_id, worker_id)


HANDLERS: dict[str, Callable[[Runtime, Session, dict[str, Any], str], None]] = {
    INBOUND_PROCESS_EVENT: _handle_inbound,
    OUTBOUND_PROCESS_JOB: _handle_outbound,
}


def _claim_next_run(runtime: Runtime, worker_id: str) -> Optional[ClaimedRun]:
    db = runtime.session_factory()
    try:
        return runtime.ledger.claim_next(db, worker_id, job_types=list(HANDLERS))
    finally:
        db.close()


def _execute_claimed_run(runtime: Runtime, run: ClaimedRun, worker_id: str) -> ExecutionResult:
    handler = HANDLERS.get(run.type)
    if handler is None:
        return ExecutionResult(False, "UNKNOWN_JOB_TYPE", f"No handler for {run.type}", retryable=False)
    db = runtime.session_factory()
    try:
        handler(runtime, db, run.payload, worker_id)
        return ExecutionResult(success=True)
    except NonRetryableRunError as exc:
        db.rollback()
        return ExecutionResult(False, "INVALID_RUN_PAYLOAD", str(exc), retryable=False)
    except Exception as exc:
        db.rollback()
        logger.exception("Run %s (%s) raised", run.id, run.type)
        return ExecutionResult(False, "UNHANDLED_EXCEPTION", f"Unhandled worker exception: {exc}", retryable=True)
    finally:
        db.close()


def _finalize_run(runtime: Runtime, run: ClaimedRun, result: ExecutionResult) -> None:
    db = runtime.session_factory()
    try:
        if result.success:
            runtime.ledger.mark_succeeded(db, run.id)
        else:
            runtime.ledger.mark_failed(
                db,
                run.id,
                error_code=result.error_code or "FAILED",
                error=result.error_text or "",
                retriable=result.retryable,
            )
    except Exception:
        db.rollback()
        logger.exception("Failed to finalize run %s", run.id)
    finally:
        db.close()


def sweep_once(runtime: Runtime) -> dict[str, int]:
    """Re-enqueue due inbound events and outbound jobs, then purge expired locks."""
    counts = {"inbound": 0, "outbound": 0, "locks": 0}
    steps = (
        ("inbound", lambda db: runtime.inbound.sweep_due(db)),
        ("outbound", lambda db: runtime.outbound.sweep_due(db)),
        ("locks", lambda db: runtime.ledger.purge_expired_locks(db)),
    )
    for name, step in steps:
        db = runtime.session_factory()
        try:
            counts[name] = step(db)
        except Exception:
            db.rollback()
            logger.exception("Sweep step %s failed", name)
        finally:
            db.close()
    return counts


def run_pending(runtime: Runtime, *, worker_id: Optional[str] = None, limit: int = 100) -> int:
    """Execute available runs until the queue is empty or ``limit`` is reached."""
    worker = worker_id or _build_worker_id()
    processed = 0
    while processed < limit:
        run = _claim_next_run(runtime, worker)
        if run is None:
            break
        result = _execute_claimed_run(runtime, run, worker)
        _finalize_run(runtime, run, result)
        processed += 1
    return processed


def run_loop(
    runtime: Runtime,
    *,
    stop_event: Optional[Event] = None,
    once: bool = False,
    poll_seconds: Optional[float] = None,
    sweep_seconds: Optional[float] = None,
    worker_id: Optional[str] = None,
) -> None:
    stop = stop_event or Event()
    worker = str(worker_id or os.getenv("SWITCHYARD_WORKER_ID") or _build_worker_id())
    poll = float(poll_seconds if poll_seconds is not None else runtime.settings.worker_poll_seconds)
    sweep_interval = float(sweep_seconds if sweep_seconds is not None else runtime.settings.worker_sweep_seconds)
    last_sweep_at = 0.0

    logger.info("Job worker started: worker_id=%s types=%s", worker, ",".join(HANDLERS))

    while not stop.is_set():
        now_monotonic = time.monotonic()
        if now_monotonic - last_sweep_at >= sweep_interval:
            last_sweep_at = now_monotonic
            counts = sweep_once(runtime)
            if any(counts.values()):
                logger.info("Sweep tick: %s", counts)

        try:
            run = _claim_next_run(runtime, worker)
        except Exception:
            logger.exception("Worker claim loop failed")
            if once:
                break
            stop.wait(max(1.0, poll))
            continue

        if run is None:
            logger.debug("Worker idle: no queued runs")
            if once:
                break
            stop.wait(max(0.1, poll))
            continue

        logger.info(
            "Claimed run %s tenant=%s type=%s attempt=%s/%s",
            run.id,
            run.tenant_id,
            run.type,
            run.attempts,
            run.max_attempts,
        )
        result = _execute_claimed_run(runtime, run, worker)
        _finalize_run(runtime, run, result)
        if once:
            break

    logger.info("Job worker stopping: worker_id=%s", worker)


def start_background_worker_thread(runtime: Runtime) -> None:
    global _worker_thread, _worker_stop_event
    if _worker_thread and _worker_thread.is_alive():
        return
    _worker_stop_event = Event()
    _worker_thread = Thread(
        target=run_loop,
        args=(runtime,),
        kwargs={"stop_event": _worker_stop_event},
        name="switchyard-job-worker",
        daemon=True,
    )
    _worker_thread.start()
    logger.info("Started background job worker thread")


def stop_background_worker_thread(timeout_seconds: float = 10.0) -> None:
    global _worker_thread, _worker_stop_event
    if _worker_stop_event:
        _worker_stop_event.set()
    if _worker_thread and _worker_thread.is_alive():
        _worker_thread.join(timeout=timeout_seconds)
    _worker_thread = None
    _worker_stop_event = None
    logger.info("Stopped background job worker thread")


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, str(os.getenv("SWITCHYARD_LOG_LEVEL") or "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_loop(build_runtime(), once=_to_bool(os.getenv("SWITCHYARD_WORKER_ONCE")))


if __name__ == "__main__":
    main()
