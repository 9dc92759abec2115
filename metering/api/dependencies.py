"""
FastAPI Dependencies - Authentication and authorization.

NO DICTIONARIES - All dependencies return typed objects.
"""

import hmac
from dataclasses import dataclass
from uuid import UUID

import jwt
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from structlog import get_logger

from metering.config import settings
from metering.exceptions import AuthenticationError, OwnershipMismatchError

logger = get_logger(__name__)

JWT_ALGORITHMS = ["HS256"]

# ============================================================================
# Caller JWT Authentication
# ============================================================================


@dataclass
class CallerIdentity:
    """Authenticated caller identity from JWT token."""

    user_id: UUID
    email: str | None = None


# Bearer token scheme for JWT auth
bearer_scheme = HTTPBearer(auto_error=False)


def decode_caller_token(token: str) -> CallerIdentity:
    """
    Verify an identity-provider JWT and extract the caller.

    Checks signature (HS256), expiry and audience; `sub` is the user id.

    Raises:
        AuthenticationError: Token invalid, expired or missing a UUID subject
    """
    if not settings.auth_jwt_secret:
        raise AuthenticationError("JWT secret not configured")

    try:
        claims = jwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=JWT_ALGORITHMS,
            audience=settings.auth_jwt_audience,
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError as e:
        raise AuthenticationError("Token expired") from e
    except jwt.InvalidTokenError as e:
        raise AuthenticationError(f"Invalid token: {e}") from e

    try:
        user_id = UUID(str(claims["sub"]))
    except ValueError as e:
        raise AuthenticationError("Invalid token: subject is not a user id") from e

    email = claims.get("email")
    return CallerIdentity(user_id=user_id, email=email if isinstance(email, str) else None)


async def get_caller(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> CallerIdentity:
    """
    FastAPI dependency to validate the caller's bearer token.

    Usage:
        @router.get("/v1/account/balance")
        async def get_balance(caller: CallerIdentity = Depends(get_caller)):
            # caller.user_id is the verified user
            pass

    Raises:
        HTTPException 401 if no token or invalid token
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return decode_caller_token(credentials.credentials)
    except AuthenticationError as exc:
        logger.info("caller_token_rejected", reason=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


def require_owner(caller: CallerIdentity, user_id: UUID) -> None:
    """
    Reject requests that name a different user than the verified caller.

    Runs before any mutation.

    Raises:
        HTTPException 401 on mismatch
    """
    if caller.user_id == user_id:
        return

    exc = OwnershipMismatchError(caller.user_id, user_id)
    logger.warning(
        "ownership_mismatch",
        caller_id=str(caller.user_id),
        requested_id=str(user_id),
    )
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Token does not match requested user",
    ) from exc


# ============================================================================
# Service API Key Authentication (billing events)
# ============================================================================


async def require_service_key(
    x_api_key: str | None = Header(None, description="Service API key"),
) -> None:
    """
    FastAPI dependency for service-to-service calls.

    Raises:
        HTTPException 401 if the key is missing or wrong
    """
    expected = settings.service_api_key
    if not expected or x_api_key is None or not hmac.compare_digest(x_api_key, expected):
        logger.warning("service_key_rejected", key_present=x_api_key is not None)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )
