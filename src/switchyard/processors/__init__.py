"""Inbound processors for the built-in webhook channels."""

from .meta_leadgen import MetaLeadgenProcessor
from .whatsapp import InboundMessage, WhatsAppInboundProcessor

__all__ = ["InboundMessage", "MetaLeadgenProcessor", "WhatsAppInboundProcessor"]
