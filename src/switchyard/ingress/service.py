"""Webhook ingress: verify, de-replay and persist deliveries.

Gates for a delivery POST, in order:

1. bodies over ``webhook_max_body_bytes`` are accepted and dropped;
2. a signature header is required (``SignatureMissing``);
3. each extracted event is routed to candidate integrations and the body's
   HMAC is checked against their ``app_secret``; when candidates had secrets
   but none matched the delivery is rejected (``SignatureInvalid``), when
   there was nothing to check against it is dropped and logged;
4. verified events already seen within the replay window are dropped;
5. the rest become inbound events.

Signature checks run before the replay cache is touched so forged deliveries
cannot pre-seed event ids.
"""

from __future__ import annotations

import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Optional

from cryptography.exceptions import InvalidTag
from sqlalchemy.orm import Session

from switchyard.errors import InvalidRequest, KeyVersionNotFound, SignatureInvalid, SignatureMissing
from switchyard.inbound import InboundEventService
from switchyard.ingress.channels import ExtractedEvent, WebhookChannel, get_channel
from switchyard.ingress.replay import ReplayCache
from switchyard.ingress.signature import find_signature_header, parse_signature_header, verify_signature
from switchyard.integrations import IntegrationRecord, IntegrationRepository, SecretRepository
from switchyard.utils.pii import mask_pii
from switchyard.vault import SecretsVault

logger = logging.getLogger(__name__)

APP_SECRET_KEY = "app_secret"
VERIFY_TOKEN_KEY = "verify_token"


@dataclass
class IngressResult:
    accepted: list[str] = field(default_factory=list)
    duplicates: int = 0
    dropped: int = 0
    reason: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "received": True,
            "accepted": len(self.accepted),
            "duplicates": self.duplicates,
            "dropped": self.dropped,
        }


def _candidates(integrations: list[IntegrationRecord], routing_ref: Optional[str]) -> list[IntegrationRecord]:
    """Integrations whose external_ref matches; unrouted integrations are the fallback."""
    if routing_ref:
        routed = [record for record in integrations if record.external_ref == routing_ref]
        if routed:
            return routed
    return [record for record in integrations if record.external_ref is None]


class WebhookIngress:
    def __init__(self, inbound: InboundEventService, vault: SecretsVault, replay_cache: ReplayCache, settings):
        self.inbound = inbound
        self.vault = vault
        self.replay_cache = replay_cache
        self.settings = settings

    def resolve_channel(self, name: str) -> WebhookChannel:
        channel = get_channel(name)
        if channel is None:
            raise InvalidRequest(f"Unknown webhook channel {name}")
        return channel

    def _read_secret(self, secrets: SecretRepository, record: IntegrationRecord, key: str) -> Optional[str]:
        try:
            return secrets.get_decrypted(record.tenant_id, record.id, key)
        except (InvalidTag, KeyVersionNotFound, ValueError):
            logger.error("Could not decrypt %s for integration %s", key, record.id)
            return None

    def handshake(
        self,
        db: Session,
        channel_name: str,
        mode: Optional[str],
        verify_token: Optional[str],
        challenge: Optional[str],
    ) -> Optional[str]:
        """Return the challenge to echo when some active integration owns ``verify_token``."""
        channel = self.resolve_channel(channel_name)
        if mode != "subscribe" or not verify_token or not challenge:
            return None
        secrets = SecretRepository(db, self.vault)
        for record in IntegrationRepository(db).list_active_by_type(channel.integration_type):
            stored = self._read_secret(secrets, record, VERIFY_TOKEN_KEY)
            if stored and hmac.compare_digest(stored.encode("utf-8"), verify_token.encode("utf-8")):
                logger.info("Webhook %s verified for integration %s", channel.name, record.id)
                return challenge
        logger.warning("Webhook %s verification failed: no matching verify_token", channel.name)
        return None

    def receive(self, db: Session, channel_name: str, raw_body: bytes, headers) -> IngressResult:
        channel = self.resolve_channel(channel_name)

        if len(raw_body) > self.settings.webhook_max_body_bytes:
            logger.warning("Webhook %s body too large (%s bytes); dropped", channel.name, len(raw_body))
            return IngressResult(dropped=1, reason="BODY_TOO_LARGE")

        header = find_signature_header(headers)
        if header is None:
            logger.warning("Webhook %s missing signature; rejected", channel.name)
            raise SignatureMissing()
        digest = parse_signature_header(header)

        try:
            body = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            logger.warning("Webhook %s body is not valid JSON; dropped", channel.name)
            return IngressResult(dropped=1, reason="INVALID_JSON")
        if not isinstance(body, dict):
            return IngressResult(dropped=1, reason="INVALID_JSON")
        logger.debug("Webhook %s received: %s", channel.name, mask_pii(body))

        events = channel.extract(body)
        if not events:
            return IngressResult(reason="NO_EVENTS")

        matched, checked_any_secret = self._verify(db, channel, events, raw_body, digest)
        if not matched:
            if checked_any_secret:
                logger.warning("Webhook %s signature did not match any candidate integration", channel.name)
                raise SignatureInvalid()
            logger.warning("Webhook %s has no configured integration for its events; dropped", channel.name)
            return IngressResult(dropped=len(events), reason="NO_INTEGRATION")

        result = IngressResult(dropped=len(events) - len(matched))
        for event, record in matched:
            if self.replay_cache.seen(channel.name, event.event_id):
                result.duplicates += 1
                continue
            created = self.inbound.create_event(
                db,
                record.tenant_id,
                channel.source_type,
                record.provider,
                event.payload,
                external_id=event.event_id,
                integration_id=record.id,
                meta={"channel": channel.name, "routing_ref": event.routing_ref},
            )
            if created.duplicate:
                result.duplicates += 1
            else:
                result.accepted.append(created.id)
        logger.info(
            "Webhook %s: %s accepted, %s duplicate, %s dropped",
            channel.name, len(result.accepted), result.duplicates, result.dropped,
        )
        return result

    def _verify(
        self,
        db: Session,
        channel: WebhookChannel,
        events: list[ExtractedEvent],
        raw_body: bytes,
        digest: str,
    ) -> tuple[list[tuple[ExtractedEvent, IntegrationRecord]], bool]:
        integrations = IntegrationRepository(db).list_active_by_type(channel.integration_type)
        secrets = SecretRepository(db, self.vault)
        verdicts: dict[str, Optional[bool]] = {}
        checked_any_secret = False
        matched = []
        for event in events:
            for record in _candidates(integrations, event.routing_ref):
                if record.id not in verdicts:
                    secret = self._read_secret(secrets, record, APP_SECRET_KEY)
                    verdicts[record.id] = None if secret is None else verify_signature(raw_body, digest, secret)
                verdict = verdicts[record.id]
                if verdict is None:
                    continue
                checked_any_secret = True
                if verdict:
                    matched.append((event, record))
                    break
        return matched, checked_any_secret
