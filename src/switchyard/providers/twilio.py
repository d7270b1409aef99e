"""Twilio WhatsApp sender."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from switchyard.runtime.registry import IntegrationContext, SendResult

logger = logging.getLogger(__name__)

JOB_TYPE = "WHATSAPP_SEND"
TWILIO_API_URL = "https://api.twilio.com/2010-04-01"
DEFAULT_RETRY_AFTER_SECONDS = 60


def _whatsapp_address(number: str) -> str:
    number = str(number or "").strip()
    return number if number.startswith("whatsapp:") else f"whatsapp:{number}"


def parse_retry_after(value: Optional[str], default: int = DEFAULT_RETRY_AFTER_SECONDS) -> int:
    try:
        seconds = int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default
    return seconds if seconds > 0 else default


class TwilioWhatsAppProvider:
    """Sends ``{"to": ..., "text": ...}`` payloads through the Twilio Messages API.

    Credentials (``account_sid``, ``auth_token``, ``from_number``) are
    integration secrets read through the context.
    """

    def __init__(self, client: Optional[httpx.Client] = None, timeout: float = 15.0):
        self.client = client or httpx.Client(base_url=TWILIO_API_URL, timeout=timeout)

    def send(self, ctx: IntegrationContext, job) -> SendResult:
        payload: dict[str, Any] = job.payload or {}
        to = str(payload.get("to") or "").strip()
        text = str(payload.get("text") or "")
        if not to or not text:
            return SendResult.failed("OUTBOUND_PAYLOAD_INVALID", "Payload requires 'to' and 'text'")

        account_sid = ctx.require_secret("account_sid")
        auth_token = ctx.require_secret("auth_token")
        from_number = ctx.require_secret("from_number")

        try:
            response = self.client.post(
                f"/Accounts/{account_sid}/Messages.json",
                data={
                    "To": _whatsapp_address(to),
                    "From": _whatsapp_address(from_number),
                    "Body": text,
                },
                auth=(account_sid, auth_token),
            )
        except httpx.HTTPError as exc:
            logger.warning("Twilio request failed for job %s: %s", job.id, exc)
            return SendResult.failed("PROVIDER_UNAVAILABLE", str(exc), retriable=True)

        if response.status_code == 429:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            return SendResult.throttled(retry_after, "Twilio rate limit reached")
        if response.status_code >= 500:
            return SendResult.failed(
                "PROVIDER_UNAVAILABLE",
                f"Twilio returned {response.status_code}",
                retriable=True,
            )
        if response.status_code >= 400:
            detail = _error_detail(response)
            return SendResult.failed("PROVIDER_REJECTED", detail)

        try:
            body = response.json()
        except ValueError:
            logger.warning("Twilio accepted job %s with a non-JSON body", job.id)
            return SendResult.sent(None, {"status": None})
        return SendResult.sent(body.get("sid"), {"status": body.get("status")})


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"Twilio returned {response.status_code}"
    code = body.get("code")
    message = body.get("message") or ""
    return f"Twilio returned {response.status_code} ({code}): {message}"
