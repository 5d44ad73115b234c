"""
Authentication dependencies

Identity is asserted by the external authentication service as a signed JWT.
Every protected route receives the verified identity explicitly through
``get_current_user``; nothing reads an ambient session.
"""

import logging
from typing import Optional

from fastapi import Cookie, Header

from auth_utils import decode_jwt
from backend.utils.errors import InternalError, UnauthenticatedError

logger = logging.getLogger(__name__)


def _extract_token(auth_token: Optional[str], authorization: Optional[str]) -> Optional[str]:
    # Priority 1: httpOnly cookie (browser clients)
    if auth_token:
        return auth_token
    # Priority 2: Authorization header (API consumers)
    if authorization and authorization.startswith("Bearer "):
        return authorization.replace("Bearer ", "").strip()
    return None


async def get_current_user(
    auth_token: Optional[str] = Cookie(None),
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> dict:
    """
    Dependency function to get the current authenticated identity.

    Returns:
        {"user_id": str, "email": Optional[str]}

    Raises:
        UnauthenticatedError: token missing, invalid, expired or without subject
    """
    token = _extract_token(auth_token, authorization)
    if not token:
        raise UnauthenticatedError("Missing authentication token")

    try:
        payload = decode_jwt(token)
    except ValueError as e:
        logger.error(f"Cannot verify identity: {e}")
        raise InternalError("Authentication is not configured") from e

    if not payload:
        raise UnauthenticatedError("Invalid or expired token")

    user_id = payload.get("sub")
    if not user_id:
        raise UnauthenticatedError("Invalid token payload")

    return {"user_id": str(user_id), "email": payload.get("email")}
