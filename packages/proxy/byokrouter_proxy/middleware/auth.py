"""Authentication dependencies for the proxy.

Two kinds of caller are recognised: end users, whose identity arrives in the
X-User-Id header set by the upstream gateway, and operators, who present the
management API key as a Bearer token on admin routes.
"""

import os
import secrets

import structlog
from fastapi import HTTPException, Request, status

from byokrouter.infrastructure.utils.validation import ValidationError, validate_user_id

# Initialize structured logger
logger = structlog.get_logger(__name__)

USER_ID_HEADER = "X-User-Id"


def get_management_api_key() -> str | None:
    """Get management API key from environment variable.

    Returns:
        Management API key string or None if not set.
    """
    return os.getenv("MANAGEMENT_API_KEY")


def _get_client_ip(request: Request) -> str:
    """Get client IP address from request."""
    # Check for forwarded IP (from proxy/load balancer)
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"


def _parse_bearer_token(authorization: str | None) -> str | None:
    """Parse Bearer token from Authorization header.

    Returns:
        The token if the header is a well-formed Bearer token, None otherwise.
    """
    if not authorization or not authorization.startswith("Bearer "):
        return None
    token = authorization[7:].strip()
    return token if token else None


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_management_auth(request: Request) -> bool:
    """FastAPI dependency protecting the admin routes.

    Returns:
        True if authentication is successful.

    Raises:
        HTTPException: 401 if the key is not configured, missing or wrong.
    """
    management_api_key = get_management_api_key()

    # Fail secure: if no management API key is configured, deny all access
    if not management_api_key:
        logger.warning(
            "management_api_key_not_configured",
            endpoint=request.url.path,
            method=request.method,
        )
        raise _unauthorized("Management API key not configured. Access denied.")

    authorization = request.headers.get("Authorization")
    if not authorization:
        logger.warning(
            "authentication_failed",
            reason="missing_authorization_header",
            endpoint=request.url.path,
            method=request.method,
            client_ip=_get_client_ip(request),
        )
        raise _unauthorized("Missing Authorization header")

    api_key = _parse_bearer_token(authorization)
    if not api_key:
        logger.warning(
            "authentication_failed",
            reason="invalid_authorization_format",
            endpoint=request.url.path,
            method=request.method,
            client_ip=_get_client_ip(request),
        )
        raise _unauthorized("Invalid Authorization header format. Expected: Bearer {api_key}")

    if not secrets.compare_digest(api_key, management_api_key):
        logger.warning(
            "authentication_failed",
            reason="invalid_api_key",
            endpoint=request.url.path,
            method=request.method,
            client_ip=_get_client_ip(request),
        )
        raise _unauthorized("Invalid management API key")

    logger.info(
        "authentication_success",
        endpoint=request.url.path,
        method=request.method,
        client_ip=_get_client_ip(request),
    )
    request.state.authenticated = True
    return True


async def get_user_id(request: Request) -> str:
    """FastAPI dependency returning the caller's user id.

    Raises:
        HTTPException: 401 if the header is missing or malformed.
    """
    raw_user_id = request.headers.get(USER_ID_HEADER)
    if not raw_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing {USER_ID_HEADER} header",
        )
    try:
        return validate_user_id(raw_user_id)
    except ValidationError as e:
        logger.warning(
            "authentication_failed",
            reason="invalid_user_id",
            endpoint=request.url.path,
            client_ip=_get_client_ip(request),
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
        ) from e
