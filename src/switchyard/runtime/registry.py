"""Processor and provider registries.

Registries are plain objects built once per process by ``build_runtime`` and
passed to whoever needs them; nothing registers into module globals.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Generic, Optional, Protocol, TypeVar

from switchyard.errors import SecretMissing

logger = logging.getLogger(__name__)


@dataclass
class IntegrationContext:
    """What a processor or provider gets to know about the caller."""

    tenant_id: str
    integration_id: Optional[str] = None
    secret_reader: Optional[Callable[[str], Optional[str]]] = field(default=None, repr=False)

    def get_secret(self, key: str) -> Optional[str]:
        if self.secret_reader is None or not self.integration_id:
            return None
        return self.secret_reader(key)

    def require_secret(self, key: str) -> str:
        value = self.get_secret(key)
        if value is None:
            raise SecretMissing(key)
        return value


@dataclass
class ProcessResult:
    success: bool
    result_meta: Optional[dict[str, Any]] = None
    error_code: Optional[str] = None
    error_msg: Optional[str] = None
    retriable: bool = False

    @classmethod
    def ok(cls, result_meta: Optional[dict[str, Any]] = None) -> "ProcessResult":
        return cls(success=True, result_meta=result_meta)

    @classmethod
    def failed(cls, error_code: str, error_msg: str = "", *, retriable: bool = False) -> "ProcessResult":
        return cls(success=False, error_code=error_code, error_msg=error_msg, retriable=retriable)


@dataclass
class SendResult:
    success: bool
    provider_message_id: Optional[str] = None
    result_meta: Optional[dict[str, Any]] = None
    error_code: Optional[str] = None
    error_msg: Optional[str] = None
    retriable: bool = False
    rate_limited: bool = False
    retry_after_seconds: Optional[int] = None

    @classmethod
    def sent(cls, provider_message_id: Optional[str], result_meta: Optional[dict[str, Any]] = None) -> "SendResult":
        return cls(success=True, provider_message_id=provider_message_id, result_meta=result_meta)

    @classmethod
    def failed(cls, error_code: str, error_msg: str = "", *, retriable: bool = False) -> "SendResult":
        return cls(success=False, error_code=error_code, error_msg=error_msg, retriable=retriable)

    @classmethod
    def throttled(cls, retry_after_seconds: int, error_msg: str = "") -> "SendResult":
        return cls(
            success=False,
            error_code="RATE_LIMITED",
            error_msg=error_msg,
            rate_limited=True,
            retry_after_seconds=retry_after_seconds,
        )


class InboundProcessor(Protocol):
    def process(self, ctx: IntegrationContext, event) -> ProcessResult:
        ...


class OutboundProvider(Protocol):
    def send(self, ctx: IntegrationContext, job) -> SendResult:
        ...


T = TypeVar("T")


class _Registry(Generic[T]):
    kind = "handler"

    def __init__(self):
        self._entries: dict[str, T] = {}
        self._lock = Lock()

    def register(self, name: str, handler: T) -> None:
        key = str(name or "").strip()
        if not key:
            raise ValueError(f"{self.kind} name is required")
        with self._lock:
            self._entries[key] = handler
        logger.info("Registered %s for %s %s", type(handler).__name__, self.kind, key)

    def get(self, name: str) -> Optional[T]:
        with self._lock:
            return self._entries.get(name)

    def has(self, name: str) -> bool:
        with self._lock:
            return name in self._entries

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._entries)


class InboundProcessorRegistry(_Registry[InboundProcessor]):
    """Maps an inbound source type to its processor."""

    kind = "source type"

    def source_types(self) -> list[str]:
        return self.names()


class OutboundProviderRegistry(_Registry[OutboundProvider]):
    """Maps an outbound job type to its provider."""

    kind = "job type"

    def job_types(self) -> list[str]:
        return self.names()
