"""
Token and shared-secret verification.

Session management lives outside this service. We only verify what callers
hand us: bearer JWTs issued by the auth service, the webhook signature and
the cron secret.
"""

import hmac
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from bookingcore.core.config import get_settings
from bookingcore.core.errors import AuthenticationError, AuthorizationError

bearer_scheme = HTTPBearer(auto_error=False)


def verify_shared_secret(provided: Optional[str], expected: str) -> None:
    """
    Constant-time comparison of a caller-supplied secret.
    An unset expected secret rejects everything.
    """
    if not expected or not provided:
        raise AuthenticationError("Invalid signature")
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise AuthenticationError("Invalid signature")


def create_access_token(data: dict, expires_minutes: int = 30) -> str:
    settings = get_settings()
    claims = dict(data)
    claims["exp"] = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> dict:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.ALGORITHM])
    except jwt.PyJWTError as e:
        raise AuthenticationError("Invalid or expired token") from e


async def get_token_claims(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> dict:
    if credentials is None:
        raise AuthenticationError("Not authenticated")
    claims = decode_access_token(credentials.credentials)
    if not claims.get("sub"):
        raise AuthenticationError("Token has no subject")
    return claims


async def get_current_user_id(claims: dict = Depends(get_token_claims)) -> str:
    return str(claims["sub"])


async def require_admin(claims: dict = Depends(get_token_claims)) -> str:
    if claims.get("role") != "admin":
        raise AuthorizationError("Admin access required")
    return str(claims["sub"])


async def require_cron_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> None:
    verify_shared_secret(credentials.credentials if credentials else None, get_settings().CRON_SECRET)
