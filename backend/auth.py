"""
Authentication and security middleware for the Inference Management API.

Bearer tokens are verified against the token server's JWKS. The verified
claims become a ``TenantIdentity`` that handlers use to scope every
cluster operation to the caller's namespace.
"""
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import jwt
from fastapi import Header, Request
from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware

from config import settings
from errors import Forbidden, Unauthenticated
from logger import get_logger, set_request_id

logger = get_logger(__name__)

# Initialize rate limiter
limiter = Limiter(key_func=get_remote_address, enabled=settings.RATE_LIMIT_ENABLED)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Middleware to add request ID to all requests."""

    async def dispatch(self, request: Request, call_next):
        # Generate or extract request ID
        request_id = request.headers.get('X-Request-ID') or str(uuid.uuid4())[:8]
        set_request_id(request_id)

        # Process request
        response = await call_next(request)

        # Add request ID to response headers
        response.headers['X-Request-ID'] = request_id

        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware to add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        # Add security headers
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['X-XSS-Protection'] = '1; mode=block'
        response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'

        # Remove server header
        if 'server' in response.headers:
            del response.headers['server']

        return response


@dataclass(frozen=True)
class TenantIdentity:
    """Caller identity derived from a verified bearer token."""
    subject: str
    tenant_id: str
    is_admin: bool = False
    name: Optional[str] = None
    issuer: Optional[str] = None
    expires_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant": self.tenant_id,
            "user": self.name or self.subject,
            "subject": self.subject,
            "isAdmin": self.is_admin,
            "issuer": self.issuer,
            "expiresAt": self.expires_at,
        }


class TokenVerifier:
    """
    Verifies bearer tokens and extracts the tenant identity.

    Args:
        jwks_url: JWKS document of the token server
        algorithms: Accepted signing algorithms
        audience: Expected ``aud`` claim, empty to skip the check
        issuer: Expected ``iss`` claim, empty to skip the check
        admin_tenants: Tenants whose members are administrators
        jwks_client: Optional pre-built ``jwt.PyJWKClient``
    """

    def __init__(
        self,
        jwks_url: str,
        algorithms: List[str],
        audience: str = "",
        issuer: str = "",
        admin_tenants: Optional[List[str]] = None,
        jwks_client: Optional[jwt.PyJWKClient] = None,
    ):
        self.algorithms = list(algorithms)
        self.audience = audience or None
        self.issuer = issuer or None
        self.admin_tenants = set(admin_tenants or [])
        self.jwks_client = jwks_client or jwt.PyJWKClient(jwks_url, cache_keys=True)

    @classmethod
    def from_settings(cls, settings) -> "TokenVerifier":
        return cls(
            jwks_url=settings.JWKS_URL,
            algorithms=settings.JWT_ALGORITHMS,
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
            admin_tenants=settings.ADMIN_TENANTS,
        )

    def verify(self, token: str) -> TenantIdentity:
        """
        Verify ``token`` and build the caller's identity.

        Raises:
            Unauthenticated: Signature, expiry, audience or issuer check failed,
                or the token carries no tenant claim
        """
        try:
            signing_key = self.jwks_client.get_signing_key_from_jwt(token)
            claims = jwt.decode(
                token,
                signing_key.key,
                algorithms=self.algorithms,
                audience=self.audience,
                issuer=self.issuer,
                options={"verify_aud": self.audience is not None, "require": ["exp"]},
            )
        except jwt.PyJWKClientError as e:
            logger.warning(f"Unable to obtain token signing key: {e}")
            raise Unauthenticated("Unable to verify token")
        except jwt.ExpiredSignatureError:
            raise Unauthenticated("Token has expired")
        except jwt.InvalidTokenError as e:
            raise Unauthenticated(f"Invalid token: {e}")

        tenant = claims.get("tenant")
        if not isinstance(tenant, str) or not tenant:
            raise Unauthenticated("Invalid or missing tenant claim")

        return TenantIdentity(
            subject=str(claims.get("sub", "")),
            tenant_id=tenant,
            is_admin=claims.get("admin") is True or tenant in self.admin_tenants,
            name=claims.get("name"),
            issuer=claims.get("iss"),
            expires_at=claims.get("exp"),
        )


def get_identity(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> TenantIdentity:
    """
    Resolve the caller's identity from the Authorization header.

    Raises:
        Unauthenticated: Missing, malformed or unverifiable credential
    """
    if not authorization:
        raise Unauthenticated("Access token required")
    if not authorization.startswith("Bearer "):
        raise Unauthenticated("Invalid authorization format")

    token = authorization[7:].strip()
    verifier: TokenVerifier = request.app.state.token_verifier
    return verifier.verify(token)


def resolve_namespace(identity: TenantIdentity, requested: Optional[str] = None) -> str:
    """
    Namespace an operation may touch: the requested one, defaulting to the
    caller's own tenant.

    Raises:
        Forbidden: A non-admin asked for another tenant's namespace
    """
    namespace = requested or identity.tenant_id
    if namespace != identity.tenant_id and not identity.is_admin:
        raise Forbidden(f"Insufficient permissions for tenant: {namespace}")
    return namespace
