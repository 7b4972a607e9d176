"""
Multi-Tenant Middleware
Extracts tenant_id from JWT bearer tokens
"""
import logging
from typing import Optional

import jwt
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from callqueue.core.config import get_settings

logger = logging.getLogger(__name__)


def decode_tenant_id(token: str) -> Optional[str]:
    """
    Decode a bearer token and return its tenant_id claim.

    The signature is verified whenever JWT_SECRET is configured. Without a
    secret, tokens are only accepted outside production.
    """
    settings = get_settings()

    if settings.jwt_secret:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    elif settings.environment != "production":
        payload = jwt.decode(token, options={"verify_signature": False})
    else:
        logger.error("JWT_SECRET is not configured; rejecting bearer token")
        return None

    return payload.get("tenant_id") or payload.get("user_metadata", {}).get("tenant_id")


class TenantMiddleware(BaseHTTPMiddleware):
    """
    Middleware to extract and validate tenant_id from JWT token

    Usage:
    1. Add to main.py: app.add_middleware(TenantMiddleware)
    2. Access tenant via request.state.tenant_id in endpoints
    """

    async def dispatch(self, request: Request, call_next):
        request.state.tenant_id = None

        # Skip tenant check for public endpoints
        public_paths = ["/", "/health", "/docs", "/openapi.json", "/redoc"]
        if request.url.path in public_paths:
            return await call_next(request)

        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            # Endpoints enforce auth via dependencies
            return await call_next(request)

        token = auth_header.split(" ", 1)[1]

        try:
            request.state.tenant_id = decode_tenant_id(token)
        except jwt.InvalidTokenError as e:
            logger.info(f"Rejected bearer token: {e}")
            request.state.tenant_id = None

        return await call_next(request)


def get_current_tenant(request: Request) -> Optional[str]:
    """
    Dependency to get current tenant_id from request

    Usage in endpoints:
    @router.get("/campaigns")
    def list_campaigns(tenant_id: str = Depends(get_current_tenant)):
        ...
    """
    return getattr(request.state, "tenant_id", None)
