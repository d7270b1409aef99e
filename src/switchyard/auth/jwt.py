"""Bearer token verification (HS256, shared secret with the identity service)."""

from datetime import timedelta
from typing import Any, Dict, Iterable, Optional

from jose import jwt, JWTError

from switchyard.settings import settings
from switchyard.timeutil import utcnow


def verify_access_token(token: str) -> Dict[str, Any]:
    """Verify signature and expiry and return the claims.

    Raises:
        JWTError: If the token is invalid, expired, or no secret is configured
    """
    if not settings.jwt_secret:
        raise JWTError("JWT secret is not configured")
    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"verify_signature": True, "verify_exp": True, "verify_aud": False},
        )
    except JWTError as e:
        raise JWTError(f"JWT verification failed: {str(e)}")
    if not claims.get("sub"):
        raise JWTError("JWT has no subject")
    return claims


def create_access_token(
    subject: str,
    *,
    tenant_ids: Iterable[str] = (),
    role: str = "viewer",
    is_super_admin: bool = False,
    expires_in: timedelta = timedelta(hours=1),
    secret: Optional[str] = None,
) -> str:
    """Mint a token in the shape ``verify_access_token`` expects (tests and local tooling)."""
    now = utcnow()
    claims = {
        "sub": subject,
        "tenant_ids": [str(tenant_id) for tenant_id in tenant_ids],
        "role": role,
        "is_super_admin": bool(is_super_admin),
        "iat": now,
        "exp": now + expires_in,
    }
    return jwt.encode(claims, secret or settings.jwt_secret, algorithm=settings.jwt_algorithm)
