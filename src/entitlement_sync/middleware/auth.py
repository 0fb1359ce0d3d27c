"""Authentication middleware for JWT validation.

Tokens are issued by the upstream auth service; `sub` carries the internal
user id. Webhook, health and cron paths carry their own authentication.
"""

import secrets
from collections.abc import Awaitable, Callable

import structlog
from fastapi import HTTPException, Request, Response
from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware

from entitlement_sync.config import settings

logger = structlog.get_logger()

# (path, is_prefix) pairs that skip JWT validation
PUBLIC_PATHS: list[tuple[str, bool]] = [
    ("/health", False),
    ("/billing/health", False),
    ("/webhooks", True),  # Stripe signature
    ("/internal/cron", True),  # CRON_SECRET bearer token
    ("/docs", True),
    ("/openapi.json", False),
]


def _is_public_path(path: str) -> bool:
    for public_path, is_prefix in PUBLIC_PATHS:
        if path == public_path:
            return True
        if is_prefix and path.startswith(public_path + "/"):
            return True
    return False


def _error_response(detail: str, status_code: int) -> Response:
    return Response(
        content=f'{{"detail": "{detail}"}}',
        status_code=status_code,
        media_type="application/json",
    )


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    parts = auth_header.split(" ")
    return parts[1] if len(parts) == 2 and parts[1] else None


class AuthMiddleware(BaseHTTPMiddleware):
    """Validates the bearer JWT and stores the user id on request.state."""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        if request.method == "OPTIONS" or _is_public_path(request.url.path):
            return await call_next(request)

        token = _bearer_token(request)
        if not token:
            return _error_response("Authentication required", 401)

        try:
            payload = jwt.decode(
                token,
                settings.JWT_SECRET_KEY,
                algorithms=[settings.JWT_ALGORITHM],
            )
        except JWTError as e:
            logger.warning("JWT validation failed", error=str(e))
            return _error_response("Invalid or expired token", 401)

        user_id = payload.get("sub")
        if not user_id:
            logger.warning("JWT payload missing user ID")
            return _error_response("Invalid token - missing user ID", 401)

        request.state.user_id = str(user_id)
        structlog.contextvars.bind_contextvars(user_id=str(user_id))
        return await call_next(request)


def get_current_user_id(request: Request) -> str:
    """Get current user ID from request state.

    Raises:
        HTTPException: If user is not authenticated
    """
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return str(user_id)


def verify_cron_secret(request: Request) -> None:
    """Require `Authorization: Bearer <CRON_SECRET>` for scheduler calls."""
    expected_token = settings.CRON_SECRET
    if not expected_token:
        # Fail closed when no secret is configured
        logger.error("CRON_SECRET not configured - rejecting cron request")
        raise HTTPException(status_code=401, detail="Unauthorized")

    token = _bearer_token(request)
    if not token or not secrets.compare_digest(token.encode(), expected_token.encode()):
        logger.warning("Invalid cron authorization")
        raise HTTPException(status_code=401, detail="Unauthorized")
