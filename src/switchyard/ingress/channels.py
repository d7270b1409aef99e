"""Webhook channels and their payload extractors.

A channel maps a public webhook path to an integration family and an inbound
source type, and knows how to pull individual events out of a delivery body.
Each extracted event carries a stable id (used for replay detection and as
the event's external id) and, when the payload has one, a routing reference
that is matched against ``IntegrationConfig.config["external_ref"]``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional


@dataclass(frozen=True)
class ExtractedEvent:
    event_id: str
    routing_ref: Optional[str]
    payload: dict[str, Any]


@dataclass(frozen=True)
class WebhookChannel:
    name: str
    integration_type: str
    source_type: str
    extract: Callable[[dict[str, Any]], list[ExtractedEvent]]


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _text_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def extract_whatsapp_messages(body: dict[str, Any]) -> list[ExtractedEvent]:
    """WhatsApp Cloud API: ``entry[].changes[].value.messages[]``.

    Status callbacks (delivery receipts) carry no ``messages`` and are skipped.
    """
    events = []
    for entry in _as_list(body.get("entry")):
        for change in _as_list(_as_dict(entry).get("changes")):
            value = _as_dict(_as_dict(change).get("value"))
            metadata = _as_dict(value.get("metadata"))
            phone_number_id = _text_or_none(metadata.get("phone_number_id"))
            contacts = {
                _text_or_none(contact.get("wa_id")): _as_dict(contact.get("profile")).get("name")
                for contact in _as_list(value.get("contacts"))
                if isinstance(contact, dict)
            }
            for message in _as_list(value.get("messages")):
                message = _as_dict(message)
                message_id = _text_or_none(message.get("id"))
                if not message_id:
                    continue
                sender = _text_or_none(message.get("from"))
                text = _as_dict(message.get("text")).get("body") or _as_dict(message.get("button")).get("text") or ""
                events.append(ExtractedEvent(
                    event_id=message_id,
                    routing_ref=phone_number_id,
                    payload={
                        "message_id": message_id,
                        "from": sender,
                        "display_name": contacts.get(sender),
                        "text": text,
                        "message_type": message.get("type"),
                        "timestamp": message.get("timestamp"),
                        "phone_number_id": phone_number_id,
                    },
                ))
    return events


def extract_meta_leadgen(body: dict[str, Any]) -> list[ExtractedEvent]:
    """Meta Lead Ads: ``entry[].changes[]`` with ``field == "leadgen"``; routed by page id."""
    events = []
    for entry in _as_list(body.get("entry")):
        entry = _as_dict(entry)
        page_id = _text_or_none(entry.get("id"))
        for change in _as_list(entry.get("changes")):
            change = _as_dict(change)
            if change.get("field") != "leadgen":
                continue
            value = _as_dict(change.get("value"))
            leadgen_id = _text_or_none(value.get("leadgen_id"))
            if not leadgen_id:
                continue
            events.append(ExtractedEvent(
                event_id=leadgen_id,
                routing_ref=_text_or_none(value.get("page_id")) or page_id,
                payload={
                    "leadgen_id": leadgen_id,
                    "page_id": _text_or_none(value.get("page_id")) or page_id,
                    "form_id": _text_or_none(value.get("form_id")),
                    "ad_id": _text_or_none(value.get("ad_id")),
                    "created_time": value.get("created_time"),
                },
            ))
    return events


CHANNELS: dict[str, WebhookChannel] = {
    "whatsapp": WebhookChannel(
        name="whatsapp",
        integration_type="WHATSAPP_PROVIDER",
        source_type="WHATSAPP_INBOUND",
        extract=extract_whatsapp_messages,
    ),
    "meta-leadgen": WebhookChannel(
        name="meta-leadgen",
        integration_type="META_LEADGEN",
        source_type="META_LEADGEN",
        extract=extract_meta_leadgen,
    ),
}


def get_channel(name: str) -> Optional[WebhookChannel]:
    return CHANNELS.get(str(name or "").strip().lower())
