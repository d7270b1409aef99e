"""Durable queue backends the job ledger hands work to.

The ledger persists a ``JobRun`` before calling ``add``; the backend only has to
make sure the run is picked up no earlier than ``delay_seconds`` from now.
Delivery is at-least-once, so handlers must tolerate a run arriving twice.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from threading import Lock
from typing import Any, Callable, Optional, Protocol

from sqlalchemy.orm import Session

from switchyard.metadata import JobRun, RUN_QUEUED
from switchyard.timeutil import Clock, utcnow

logger = logging.getLogger(__name__)


class QueueBackend(Protocol):
    def add(self, run_id: str, job_type: str, payload: dict[str, Any], delay_seconds: int = 0) -> None:
        ...


class TableQueue:
    """Queue backed by the ``job_runs`` table itself.

    A run is visible to workers once ``available_at`` has passed; ``add`` only
    moves that timestamp, so repeating it for the same run is harmless.
    """

    def __init__(self, session_factory: Callable[[], Session], clock: Clock = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def add(self, run_id: str, job_type: str, payload: dict[str, Any], delay_seconds: int = 0) -> None:
        available_at = self.clock() + timedelta(seconds=max(0, int(delay_seconds or 0)))
        db = self.session_factory()
        try:
            updated = (
                db.query(JobRun)
                .filter(JobRun.id == uuid.UUID(str(run_id)), JobRun.status == RUN_QUEUED)
                .update({JobRun.available_at: available_at}, synchronize_session=False)
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        if not updated:
            logger.debug("Queue add for run %s (%s) matched no queued row", run_id, job_type)


@dataclass
class QueuedItem:
    run_id: str
    job_type: str
    payload: dict[str, Any]
    delay_seconds: int = 0


@dataclass
class InMemoryQueue:
    """Records submissions; used by tests and by wiring that drains runs itself."""

    items: list[QueuedItem] = field(default_factory=list)
    _lock: Lock = field(default_factory=Lock, repr=False)

    def add(self, run_id: str, job_type: str, payload: dict[str, Any], delay_seconds: int = 0) -> None:
        with self._lock:
            self.items.append(QueuedItem(str(run_id), job_type, dict(payload), int(delay_seconds or 0)))

    def drain(self, job_type: Optional[str] = None) -> list[QueuedItem]:
        with self._lock:
            taken = [item for item in self.items if job_type is None or item.job_type == job_type]
            self.items = [item for item in self.items if item not in taken]
        return taken

    def __len__(self) -> int:
        with self._lock:
            return len(self.items)
