"""
Authentication dependencies for FastAPI.

Identities are issued by the external identity service; the ledger only
verifies the bearer token and its claims.
"""

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from ledger_backend.app.core.exceptions import AuthenticationError
from ledger_backend.app.core.jwt import decode_access_token

security = HTTPBearer()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> dict:
    """
    Decode the bearer token into its claims (sub, role, owner_ref).

    Raises:
        AuthenticationError: 401 if the token is invalid, expired or lacks sub/role
    """
    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise AuthenticationError("Could not validate credentials")

    if not payload.get("sub") or not payload.get("role"):
        raise AuthenticationError("Invalid token payload")

    return payload
