"""Error taxonomy shared by the API, the worker and the services."""

from __future__ import annotations


class SwitchyardError(Exception):
    """Base error carrying a stable machine code and an HTTP status."""

    code = "INTERNAL"
    status_code = 500

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    default_message = "Internal error"


class InvalidRequest(SwitchyardError):
    code = "INVALID_REQUEST"
    status_code = 400
    default_message = "Invalid request"


# Ingress
class SignatureMissing(SwitchyardError):
    code = "WEBHOOK_SIGNATURE_MISSING"
    status_code = 403
    default_message = "X-Signature header required"


class SignatureInvalid(SwitchyardError):
    code = "WEBHOOK_SIGNATURE_INVALID"
    status_code = 403
    default_message = "Invalid webhook signature"


# Configuration problems: terminal, never retried
class IntegrationNotFound(SwitchyardError):
    code = "INTEGRATION_NOT_FOUND"
    status_code = 404
    default_message = "Integration not found"


class IntegrationDisabled(SwitchyardError):
    code = "INTEGRATION_DISABLED"
    status_code = 409
    default_message = "Integration is disabled"


class SecretMissing(SwitchyardError):
    code = "INTEGRATION_SECRET_MISSING"
    status_code = 409

    def __init__(self, key: str):
        super().__init__(f'Secret "{key}" is missing for this integration')
        self.key = key


class ProcessorNotFound(SwitchyardError):
    code = "PROCESSOR_NOT_FOUND"
    status_code = 500
    default_message = "No inbound processor registered"


class ProviderNotFound(SwitchyardError):
    code = "PROVIDER_NOT_FOUND"
    status_code = 500
    default_message = "No outbound provider registered"


# Vault
class KeyVersionNotFound(SwitchyardError):
    code = "KEY_VERSION_NOT_FOUND"
    status_code = 500

    def __init__(self, version: int):
        super().__init__(f"Master key version {version} not found")
        self.version = version


class VaultConfigurationError(SwitchyardError):
    code = "VAULT_NOT_CONFIGURED"
    status_code = 500
    default_message = "No secrets master key configured"


# Lookups and state conflicts
class InboundEventNotFound(SwitchyardError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Inbound event not found"


class InboundEventConflict(SwitchyardError):
    code = "INBOUND_EVENT_CONFLICT"
    status_code = 409
    default_message = "Inbound event is being processed"


class OutboundJobNotFound(SwitchyardError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Outbound job not found"


class OutboundJobConflict(SwitchyardError):
    code = "OUTBOUND_JOB_CONFLICT"
    status_code = 409
    default_message = "Outbound job cannot change state"


class JobRunNotFound(SwitchyardError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Job run not found"
