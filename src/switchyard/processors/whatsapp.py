"""WhatsApp inbound message processor."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from switchyard.runtime.registry import IntegrationContext, ProcessResult

logger = logging.getLogger(__name__)

SOURCE_TYPE = "WHATSAPP_INBOUND"
_PREVIEW_CHARS = 140


@dataclass
class InboundMessage:
    tenant_id: str
    integration_id: Optional[str]
    from_phone: str
    message_id: Optional[str]
    text: str
    display_name: Optional[str]
    received_at: Optional[str]


# Receives a normalized message and returns metadata to store on the event.
LeadSink = Callable[[IntegrationContext, InboundMessage], Optional[dict[str, Any]]]


def normalize_phone(value: Any) -> str:
    digits = "".join(ch for ch in str(value or "") if ch.isdigit())
    return f"+{digits}" if digits else ""


class WhatsAppInboundProcessor:
    """Turns a stored WhatsApp message event into a call on the lead sink."""

    def __init__(self, sink: LeadSink):
        self.sink = sink

    def process(self, ctx: IntegrationContext, event) -> ProcessResult:
        payload = event.payload or {}
        from_phone = normalize_phone(payload.get("from"))
        if not from_phone:
            return ProcessResult.failed("INBOUND_EVENT_INVALID", "Message has no sender phone")

        message = InboundMessage(
            tenant_id=ctx.tenant_id,
            integration_id=ctx.integration_id,
            from_phone=from_phone,
            message_id=payload.get("message_id") or event.external_id,
            text=str(payload.get("text") or ""),
            display_name=payload.get("display_name"),
            received_at=str(payload.get("timestamp")) if payload.get("timestamp") else None,
        )
        try:
            meta = self.sink(ctx, message)
        except Exception as exc:
            logger.warning("Lead sink failed for event %s: %s", event.id, exc)
            return ProcessResult.failed("LEAD_SINK_FAILED", str(exc), retriable=True)

        result_meta = dict(meta or {})
        result_meta.setdefault("preview", message.text[:_PREVIEW_CHARS])
        return ProcessResult.ok(result_meta)
