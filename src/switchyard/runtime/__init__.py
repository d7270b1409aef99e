"""Runtime wiring: registries and the per-process object graph."""

from .registry import (
    InboundProcessor,
    InboundProcessorRegistry,
    IntegrationContext,
    OutboundProvider,
    OutboundProviderRegistry,
    ProcessResult,
    SendResult,
)

__all__ = [
    "InboundProcessor",
    "InboundProcessorRegistry",
    "IntegrationContext",
    "OutboundProvider",
    "OutboundProviderRegistry",
    "ProcessResult",
    "SendResult",
]
