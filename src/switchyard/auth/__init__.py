"""Authentication boundary.

Tokens are issued elsewhere; this package only verifies them and turns the
claims into a ``Principal`` for tenant and role checks.
"""

from switchyard.auth.jwt import create_access_token, verify_access_token
from switchyard.auth.dependencies import Principal, get_current_principal, require_role

__all__ = [
    "Principal",
    "create_access_token",
    "get_current_principal",
    "require_role",
    "verify_access_token",
]
