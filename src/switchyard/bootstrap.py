"""Per-process object graph.

``build_runtime`` constructs the vault, registries, queue, ledger and services
once; the API keeps the result on ``app.state.runtime`` and the worker receives
it as an argument.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, Mapping, Optional

from sqlalchemy.orm import Session

from switchyard.inbound import InboundEventService
from switchyard.ingress import ReplayCache, WebhookIngress
from switchyard.ledger import JobLedger
from switchyard.outbound import OutboundJobService
from switchyard.processors import InboundMessage, MetaLeadgenProcessor, WhatsAppInboundProcessor
from switchyard.processors import meta_leadgen, whatsapp
from switchyard.providers import TwilioWhatsAppProvider
from switchyard.providers import twilio
from switchyard.queue import QueueBackend, TableQueue
from switchyard.runtime.registry import InboundProcessorRegistry, IntegrationContext, OutboundProviderRegistry
from switchyard.timeutil import Clock, utcnow
from switchyard.utils.pii import mask_pii
from switchyard.vault import SecretsVault

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Any
    session_factory: Callable[[], Session]
    vault: SecretsVault
    queue: QueueBackend
    ledger: JobLedger
    processors: InboundProcessorRegistry
    providers: OutboundProviderRegistry
    inbound: InboundEventService
    outbound: OutboundJobService
    replay_cache: ReplayCache
    ingress: WebhookIngress


def logging_message_sink(ctx: IntegrationContext, message: InboundMessage) -> dict[str, Any]:
    """Default WhatsApp sink until a CRM collaborator is wired in."""
    logger.info("Inbound WhatsApp message for tenant %s: %s", ctx.tenant_id, mask_pii(asdict(message)))
    return {"sink": "log"}


def logging_lead_sink(ctx: IntegrationContext, fields: dict[str, Any]) -> dict[str, Any]:
    """Default leadgen sink until a CRM collaborator is wired in."""
    logger.info("Inbound lead for tenant %s: %s", ctx.tenant_id, mask_pii(fields))
    return {"sink": "log"}


def build_runtime(
    settings=None,
    *,
    queue: Optional[QueueBackend] = None,
    session_factory: Optional[Callable[[], Session]] = None,
    vault: Optional[SecretsVault] = None,
    environ: Optional[Mapping[str, str]] = None,
    clock: Clock = utcnow,
    message_sink=None,
    lead_sink=None,
    register_builtins: bool = True,
) -> Runtime:
    if settings is None:
        from switchyard.settings import settings as default_settings
        settings = default_settings
    if session_factory is None:
        from switchyard.database import SessionLocal
        session_factory = SessionLocal

    vault = vault or SecretsVault.from_settings(settings, environ)
    queue = queue or TableQueue(session_factory, clock=clock)
    ledger = JobLedger(queue, settings, clock=clock)
    processors = InboundProcessorRegistry()
    providers = OutboundProviderRegistry()
    inbound = InboundEventService(ledger, processors, vault, settings, clock=clock)
    outbound = OutboundJobService(ledger, providers, vault, settings, clock=clock)
    replay_cache = ReplayCache(
        window_seconds=settings.webhook_replay_window_seconds,
        max_entries=settings.webhook_replay_max_entries,
        clock=clock,
    )
    ingress = WebhookIngress(inbound, vault, replay_cache, settings)

    if register_builtins:
        processors.register(whatsapp.SOURCE_TYPE, WhatsAppInboundProcessor(message_sink or logging_message_sink))
        processors.register(meta_leadgen.SOURCE_TYPE, MetaLeadgenProcessor(lead_sink or logging_lead_sink))
        providers.register(twilio.JOB_TYPE, TwilioWhatsAppProvider())

    return Runtime(
        settings=settings,
        session_factory=session_factory,
        vault=vault,
        queue=queue,
        ledger=ledger,
        processors=processors,
        providers=providers,
        inbound=inbound,
        outbound=outbound,
        replay_cache=replay_cache,
        ingress=ingress,
    )
