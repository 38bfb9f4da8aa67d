"""Access-token verification.

Tokens are issued by the portal's login service; this API only verifies
them.  Both sides share ``JWT_SECRET`` and the HS256 algorithm.
"""
from jose import jwt, JWTError

from rxportal.config import get_settings

ACCESS_TOKEN_TYPE = "access"


def decode_access_token(token: str) -> dict | None:
    """Return the token payload, or None when it is invalid, expired or not an access token."""
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=["HS256"])
    except JWTError:
        return None
    if payload.get("type") != ACCESS_TOKEN_TYPE:
        return None
    return payload
