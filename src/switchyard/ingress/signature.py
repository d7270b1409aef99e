"""HMAC-SHA256 webhook signatures (``sha256=<hex>``)."""

import hashlib
import hmac
from typing import Optional

from switchyard.errors import SignatureInvalid

SIGNATURE_HEADERS = ("x-signature", "x-hub-signature-256")


def find_signature_header(headers) -> Optional[str]:
    """First non-empty signature header; ``headers`` is any case-insensitive mapping."""
    for name in SIGNATURE_HEADERS:
        value = headers.get(name)
        if value and value.strip():
            return value.strip()
    return None


def parse_signature_header(header: str) -> str:
    """Return the lowercase hex digest from ``sha256=<hex>``."""
    algo, sep, digest = header.partition("=")
    digest = digest.strip().lower()
    if not sep or algo.strip().lower() != "sha256" or not digest:
        raise SignatureInvalid("Unsupported signature format")
    try:
        bytes.fromhex(digest)
    except ValueError:
        raise SignatureInvalid("Signature is not hex encoded")
    return digest


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, digest: str, secret: str) -> bool:
    return hmac.compare_digest(compute_signature(raw_body, secret), digest)
