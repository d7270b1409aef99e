"""Integrations package."""

from .repository import (
    IntegrationRecord,
    IntegrationRepository,
    SecretKeyRecord,
    SecretRepository,
    normalize_integration_type,
    normalize_provider,
)

__all__ = [
    "IntegrationRecord",
    "IntegrationRepository",
    "SecretKeyRecord",
    "SecretRepository",
    "normalize_integration_type",
    "normalize_provider",
]
