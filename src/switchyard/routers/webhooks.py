"""Public webhook endpoints.

Delivery POSTs answer 200 for every outcome except a missing or invalid
signature (403), so upstream senders never learn anything about internal
state from the status code.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from switchyard.bootstrap import Runtime
from switchyard.database import get_db
from switchyard.dependencies import get_runtime
from switchyard.errors import SignatureInvalid, SignatureMissing
from switchyard.ingress import get_channel
from switchyard.ratelimit import limiter
from switchyard.settings import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

_ACK = {"received": True}


def _require_channel(channel: str) -> str:
    if get_channel(channel) is None:
        raise HTTPException(status_code=404, detail="Unknown webhook channel")
    return channel


@router.get("/{channel}", response_class=PlainTextResponse)
async def verify_webhook(
    channel: str,
    hub_mode: Optional[str] = Query(default=None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    """Subscription handshake: echo ``hub.challenge`` when the verify token matches."""
    _require_channel(channel)
    challenge = runtime.ingress.handshake(db, channel, hub_mode, hub_verify_token, hub_challenge)
    if challenge is None:
        return PlainTextResponse("WEBHOOK_VERIFY_FAILED", status_code=403)
    return PlainTextResponse(challenge, status_code=200)


@router.post("/{channel}")
@limiter.limit(settings.webhook_rate_limit)
async def receive_webhook(
    channel: str,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    """Accept a signed delivery; processing happens on the worker."""
    _require_channel(channel)

    declared_length = request.headers.get("content-length")
    if declared_length and declared_length.isdigit() and int(declared_length) > settings.webhook_max_body_bytes:
        logger.warning("Webhook %s declared %s bytes; dropped", channel, declared_length)
        return _ACK

    raw_body = await request.body()
    try:
        result = runtime.ingress.receive(db, channel, raw_body, request.headers)
    except (SignatureMissing, SignatureInvalid):
        raise
    except Exception:
        db.rollback()
        logger.exception("Webhook %s delivery failed internally", channel)
        return _ACK
    return result.as_dict()
