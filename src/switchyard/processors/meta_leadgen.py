"""Meta Lead Ads inbound processor.

Leadgen webhooks only carry ids; the lead's field data is fetched from the
Graph API with the integration's page access token.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

import httpx

from switchyard.runtime.registry import IntegrationContext, ProcessResult

logger = logging.getLogger(__name__)

SOURCE_TYPE = "META_LEADGEN"
GRAPH_API_URL = "https://graph.facebook.com/v19.0"
ACCESS_TOKEN_KEY = "page_access_token"

LeadFieldsSink = Callable[[IntegrationContext, dict[str, Any]], Optional[dict[str, Any]]]


def flatten_field_data(field_data: Any) -> dict[str, Any]:
    """``[{"name": "email", "values": ["a@b.c"]}]`` -> ``{"email": "a@b.c"}``."""
    fields: dict[str, Any] = {}
    for item in field_data if isinstance(field_data, list) else []:
        if not isinstance(item, dict) or not item.get("name"):
            continue
        values = item.get("values") or []
        fields[str(item["name"])] = values[0] if len(values) == 1 else values
    return fields


class MetaLeadgenProcessor:
    def __init__(self, sink: LeadFieldsSink, client: Optional[httpx.Client] = None, timeout: float = 15.0):
        self.sink = sink
        self.client = client or httpx.Client(base_url=GRAPH_API_URL, timeout=timeout)

    def process(self, ctx: IntegrationContext, event) -> ProcessResult:
        payload = event.payload or {}
        leadgen_id = payload.get("leadgen_id") or event.external_id
        if not leadgen_id:
            return ProcessResult.failed("INBOUND_EVENT_INVALID", "Leadgen event has no leadgen_id")
        token = ctx.require_secret(ACCESS_TOKEN_KEY)

        try:
            response = self.client.get(f"/{leadgen_id}", params={"access_token": token})
        except httpx.HTTPError as exc:
            return ProcessResult.failed("META_GRAPH_UNAVAILABLE", str(exc), retriable=True)

        if response.status_code == 429 or response.status_code >= 500:
            return ProcessResult.failed(
                "META_GRAPH_UNAVAILABLE",
                f"Graph API returned {response.status_code}",
                retriable=True,
            )
        if response.status_code >= 400:
            return ProcessResult.failed("META_GRAPH_REJECTED", f"Graph API returned {response.status_code}")

        lead = response.json()
        fields = flatten_field_data(lead.get("field_data"))
        fields.update({
            "leadgen_id": str(leadgen_id),
            "form_id": payload.get("form_id") or lead.get("form_id"),
            "page_id": payload.get("page_id"),
        })
        try:
            meta = self.sink(ctx, fields)
        except Exception as exc:
            logger.warning("Lead sink failed for leadgen %s: %s", leadgen_id, exc)
            return ProcessResult.failed("LEAD_SINK_FAILED", str(exc), retriable=True)
        return ProcessResult.ok(dict(meta or {}))
