"""FastAPI dependencies for authentication and authorization."""

from dataclasses import dataclass, field
from typing import Callable, Optional

from fastapi import Header, HTTPException, Depends, status
from jose import JWTError

from switchyard.auth.jwt import verify_access_token

ROLE_RANKS = {"viewer": 0, "operator": 1, "admin": 2}


@dataclass
class Principal:
    """Authenticated caller as described by the bearer token."""

    subject: str
    tenant_ids: set[str] = field(default_factory=set)
    role: str = "viewer"
    is_super_admin: bool = False

    def can_access(self, tenant_id: str) -> bool:
        return self.is_super_admin or str(tenant_id) in self.tenant_ids

    def has_role(self, role: str) -> bool:
        if self.is_super_admin:
            return True
        return ROLE_RANKS.get(self.role, -1) >= ROLE_RANKS[role]


async def get_current_principal(authorization: Optional[str] = Header(None)) -> Principal:
    """Verify the bearer token and return the caller.

    Raises:
        HTTPException 401: Missing, malformed, invalid or expired token
    """
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authorization header format",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        claims = verify_access_token(authorization[7:])
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    role = str(claims.get("role") or "viewer").strip().lower()
    return Principal(
        subject=str(claims["sub"]),
        tenant_ids={str(value) for value in claims.get("tenant_ids") or []},
        role=role if role in ROLE_RANKS else "viewer",
        is_super_admin=bool(claims.get("is_super_admin")),
    )


def require_role(role: str) -> Callable:
    """Dependency factory checking the caller's role (super admins always pass)."""
    if role not in ROLE_RANKS:
        raise ValueError(f"Unknown role {role}")

    async def check_role(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not principal.has_role(role):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role required: {role}",
            )
        return principal

    return check_role
