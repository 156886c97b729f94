"""
Admin authentication.

Admin endpoints accept a bearer JWT signed with the service secret. The
token's role claim must be "admin".
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
import structlog
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import get_settings
from core.exceptions import AuthenticationError, PermissionDenied

logger = structlog.get_logger(__name__)

ADMIN_ROLE = "admin"

bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(
    subject: str,
    role: str = ADMIN_ROLE,
    expires_minutes: Optional[int] = None,
) -> str:
    """
    Issue a signed access token.

    Args:
        subject: Admin identifier (usually an email)
        role: Role claim
        expires_minutes: Lifetime override (defaults to settings)

    Returns:
        str: Encoded JWT
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    lifetime = expires_minutes if expires_minutes is not None else settings.jwt_expire_minutes
    claims = {
        "sub": subject,
        "role": role,
        "iat": now,
        "exp": now + timedelta(minutes=lifetime),
    }
    return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Dict[str, Any]:
    """
    Decode and validate a token.

    Raises:
        AuthenticationError: Token expired or invalid
    """
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError as e:
        raise AuthenticationError("Token has expired") from e
    except jwt.InvalidTokenError as e:
        logger.warning("invalid_access_token", security_event=True, error=str(e))
        raise AuthenticationError("Invalid token") from e


async def require_admin(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    """
    FastAPI dependency guarding admin endpoints.

    Returns:
        str: The admin's subject, recorded as the author of audit notes

    Raises:
        AuthenticationError: No token, or token invalid
        PermissionDenied: Token does not carry the admin role
    """
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Not authorized, no token")

    claims = decode_access_token(credentials.credentials)
    if claims.get("role") != ADMIN_ROLE:
        logger.warning("admin_access_denied", security_event=True, subject=claims.get("sub"))
        raise PermissionDenied("Admin access required")

    return str(claims.get("sub") or ADMIN_ROLE)
