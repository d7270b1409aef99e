"""Webhook ingress package."""

from .channels import CHANNELS, ExtractedEvent, WebhookChannel, get_channel
from .replay import ReplayCache
from .service import IngressResult, WebhookIngress
from .signature import compute_signature, parse_signature_header, verify_signature

__all__ = [
    "CHANNELS",
    "ExtractedEvent",
    "IngressResult",
    "ReplayCache",
    "WebhookChannel",
    "WebhookIngress",
    "compute_signature",
    "get_channel",
    "parse_signature_header",
    "verify_signature",
]
