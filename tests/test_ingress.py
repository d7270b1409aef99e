"""Tests for webhook signature checks, replay detection and ingress routing."""

import json

import pytest
from sqlalchemy.orm import Session

from switchyard.errors import InvalidRequest, SignatureInvalid, SignatureMissing
from switchyard.ingress import ReplayCache, compute_signature, get_channel, parse_signature_header, verify_signature
from switchyard.ingress.channels import extract_meta_leadgen, extract_whatsapp_messages
from switchyard.integrations import IntegrationRepository, SecretRepository
from switchyard.metadata import InboundEvent


def whatsapp_body(message_id="wamid.A", phone_number_id="PNID-1", sender="15550001111"):
    return {
        "object": "whatsapp_business_account",
        "entry": [{
            "id": "WABA-1",
            "changes": [{
                "field": "messages",
                "value": {
                    "metadata": {"phone_number_id": phone_number_id},
                    "contacts": [{"wa_id": sender, "profile": {"name": "Ada"}}],
                    "messages": [{
                        "id": message_id,
                        "from": sender,
                        "type": "text",
                        "timestamp": "1714560000",
                        "text": {"body": "I'd like a quote"},
                    }],
                },
            }],
        }],
    }


def signed(body: dict, secret: str):
    raw = json.dumps(body).encode("utf-8")
    return raw, {"x-signature": f"sha256={compute_signature(raw, secret)}"}


# Signatures

def test_parse_signature_header():
    assert parse_signature_header("sha256=ABCDEF") == "abcdef"
    with pytest.raises(SignatureInvalid):
        parse_signature_header("sha1=abcdef")
    with pytest.raises(SignatureInvalid):
        parse_signature_header("sha256=not-hex")
    with pytest.raises(SignatureInvalid):
        parse_signature_header("abcdef")


def test_verify_signature_detects_body_change():
    raw = b'{"a": 1}'
    digest = compute_signature(raw, "secret")

    assert verify_signature(raw, digest, "secret") is True
    assert verify_signature(b'{"a": 2}', digest, "secret") is False
    assert verify_signature(raw, digest, "other") is False


# Replay cache

def test_replay_cache_detects_repeat_within_window(clock):
    cache = ReplayCache(window_seconds=300, clock=clock)

    assert cache.seen("whatsapp", "m1") is False
    assert cache.seen("whatsapp", "m1") is True
    assert cache.seen("meta-leadgen", "m1") is False


def test_replay_cache_forgets_after_window(clock):
    cache = ReplayCache(window_seconds=300, clock=clock)
    cache.seen("whatsapp", "m1")

    clock.advance(301)

    assert cache.seen("whatsapp", "m1") is False


def test_replay_cache_is_bounded(clock):
    cache = ReplayCache(window_seconds=300, max_entries=3, clock=clock)
    for index in range(5):
        cache.seen("whatsapp", f"m{index}")

    assert len(cache) == 3
    assert cache.seen("whatsapp", "m0") is False


# Channels

def test_extract_whatsapp_messages():
    events = extract_whatsapp_messages(whatsapp_body())

    assert len(events) == 1
    event = events[0]
    assert event.event_id == "wamid.A"
    assert event.routing_ref == "PNID-1"
    assert event.payload["display_name"] == "Ada"
    assert event.payload["text"] == "I'd like a quote"


def test_extract_whatsapp_skips_status_callbacks():
    body = {"entry": [{"changes": [{"value": {"metadata": {"phone_number_id": "P"}, "statuses": [{"id": "s"}]}}]}]}

    assert extract_whatsapp_messages(body) == []


def test_extract_meta_leadgen():
    body = {
        "object": "page",
        "entry": [{
            "id": "PAGE-1",
            "changes": [
                {"field": "leadgen", "value": {"leadgen_id": "LG-1", "form_id": "F-1", "created_time": 1714560000}},
                {"field": "feed", "value": {"post_id": "x"}},
            ],
        }],
    }

    events = extract_meta_leadgen(body)

    assert [event.event_id for event in events] == ["LG-1"]
    assert events[0].routing_ref == "PAGE-1"
    assert events[0].payload["form_id"] == "F-1"


def test_get_channel():
    assert get_channel("WhatsApp").source_type == "WHATSAPP_INBOUND"
    assert get_channel("unknown") is None


# Ingress service

def test_receive_creates_event_for_matching_integration(runtime, test_db: Session, whatsapp_integration, queue):
    raw, headers = signed(whatsapp_body(), "whatsapp-app-secret")

    result = runtime.ingress.receive(test_db, "whatsapp", raw, headers)

    assert len(result.accepted) == 1
    event = test_db.query(InboundEvent).one()
    assert event.external_id == "wamid.A"
    assert str(event.integration_id) == whatsapp_integration.id
    assert event.source_type == "WHATSAPP_INBOUND"
    assert event.meta == {"channel": "whatsapp", "routing_ref": "PNID-1"}
    assert len(queue) == 1


def test_receive_requires_signature_header(runtime, test_db: Session, whatsapp_integration):
    raw = json.dumps(whatsapp_body()).encode("utf-8")

    with pytest.raises(SignatureMissing):
        runtime.ingress.receive(test_db, "whatsapp", raw, {})
    assert test_db.query(InboundEvent).count() == 0


def test_receive_rejects_signature_over_other_body(runtime, test_db: Session, whatsapp_integration):
    _, headers = signed(whatsapp_body(message_id="wamid.original"), "whatsapp-app-secret")
    raw = json.dumps(whatsapp_body(message_id="wamid.forged")).encode("utf-8")

    with pytest.raises(SignatureInvalid):
        runtime.ingress.receive(test_db, "whatsapp", raw, headers)
    assert test_db.query(InboundEvent).count() == 0


def test_receive_accepts_hub_signature_alias(runtime, test_db: Session, whatsapp_integration):
    raw, headers = signed(whatsapp_body(), "whatsapp-app-secret")

    result = runtime.ingress.receive(test_db, "whatsapp", raw, {"x-hub-signature-256": headers["x-signature"]})

    assert len(result.accepted) == 1


def test_replayed_delivery_is_dropped(runtime, test_db: Session, whatsapp_integration):
    raw, headers = signed(whatsapp_body(), "whatsapp-app-secret")
    runtime.ingress.receive(test_db, "whatsapp", raw, headers)

    result = runtime.ingress.receive(test_db, "whatsapp", raw, headers)

    assert result.accepted == []
    assert result.duplicates == 1
    assert test_db.query(InboundEvent).count() == 1


def test_redelivery_after_replay_window_is_deduplicated_by_store(runtime, test_db: Session, whatsapp_integration, clock):
    raw, headers = signed(whatsapp_body(), "whatsapp-app-secret")
    runtime.ingress.receive(test_db, "whatsapp", raw, headers)
    clock.advance(301)

    result = runtime.ingress.receive(test_db, "whatsapp", raw, headers)

    assert result.duplicates == 1
    assert test_db.query(InboundEvent).count() == 1


def test_forged_delivery_does_not_poison_replay_cache(runtime, test_db: Session, whatsapp_integration):
    raw, _ = signed(whatsapp_body(), "whatsapp-app-secret")
    with pytest.raises(SignatureInvalid):
        runtime.ingress.receive(test_db, "whatsapp", raw, {"x-signature": "sha256=" + "0" * 64})

    _, headers = signed(whatsapp_body(), "whatsapp-app-secret")
    result = runtime.ingress.receive(test_db, "whatsapp", raw, headers)

    assert len(result.accepted) == 1


def test_unrouted_delivery_is_dropped(runtime, test_db: Session, whatsapp_integration):
    raw, headers = signed(whatsapp_body(phone_number_id="PNID-unknown"), "whatsapp-app-secret")

    result = runtime.ingress.receive(test_db, "whatsapp", raw, headers)

    assert result.dropped == 1
    assert result.reason == "NO_INTEGRATION"
    assert test_db.query(InboundEvent).count() == 0


def test_integration_without_external_ref_is_fallback(runtime, test_db: Session, test_tenant, vault):
    record = IntegrationRepository(test_db).create(
        test_tenant.id, integration_type="WHATSAPP_PROVIDER", provider="meta", name="Catch-all"
    )
    SecretRepository(test_db, vault).put_secret(test_tenant.id, record.id, "app_secret", "fallback-secret")
    raw, headers = signed(whatsapp_body(phone_number_id="PNID-other"), "fallback-secret")

    result = runtime.ingress.receive(test_db, "whatsapp", raw, headers)

    assert len(result.accepted) == 1


def test_disabled_integration_receives_nothing(runtime, test_db: Session, test_tenant, whatsapp_integration):
    IntegrationRepository(test_db).disable(test_tenant.id, whatsapp_integration.id)
    raw, headers = signed(whatsapp_body(), "whatsapp-app-secret")

    result = runtime.ingress.receive(test_db, "whatsapp", raw, headers)

    assert result.reason == "NO_INTEGRATION"


def test_invalid_json_is_dropped(runtime, test_db: Session, whatsapp_integration):
    raw = b"not json"
    headers = {"x-signature": f"sha256={compute_signature(raw, 'whatsapp-app-secret')}"}

    result = runtime.ingress.receive(test_db, "whatsapp", raw, headers)

    assert result.reason == "INVALID_JSON"


def test_oversized_body_is_dropped(runtime, test_db: Session, whatsapp_integration, test_settings):
    raw = b"x" * (test_settings.webhook_max_body_bytes + 1)

    result = runtime.ingress.receive(test_db, "whatsapp", raw, {})

    assert result.reason == "BODY_TOO_LARGE"


def test_unknown_channel(runtime, test_db: Session):
    with pytest.raises(InvalidRequest):
        runtime.ingress.receive(test_db, "carrier-pigeon", b"{}", {})


def test_handshake(runtime, test_db: Session, whatsapp_integration):
    ingress = runtime.ingress

    assert ingress.handshake(test_db, "whatsapp", "subscribe", "verify-me", "12345") == "12345"
    assert ingress.handshake(test_db, "whatsapp", "subscribe", "wrong", "12345") is None
    assert ingress.handshake(test_db, "whatsapp", "unsubscribe", "verify-me", "12345") is None
    assert ingress.handshake(test_db, "meta-leadgen", "subscribe", "verify-me", "12345") is None
