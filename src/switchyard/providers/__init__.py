"""Outbound providers."""

from .twilio import TwilioWhatsAppProvider

__all__ = ["TwilioWhatsAppProvider"]
