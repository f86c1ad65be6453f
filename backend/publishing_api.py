"""
Publishing API Endpoints
========================

Expose models outside the cluster behind an API key and rate limits.

Admins may pass ``?namespace=`` to act on another tenant's model.
``/validate-api-key`` is public: the gateway calls it with the consumer's key.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response
from pydantic import BaseModel, Field

from auth import TenantIdentity, get_identity, limiter, resolve_namespace
from config import settings
from dependencies import get_publisher
from publishing import PublishConfig, PublishingOrchestrator, RateLimiting

router = APIRouter(tags=["Publishing"])


# ==============================================================================
# Pydantic Models for Request/Response
# ==============================================================================

class RateLimitingModel(BaseModel):
    model_config = {"populate_by_name": True}

    requests_per_minute: int = Field(..., alias="requestsPerMinute")
    requests_per_hour: Optional[int] = Field(None, alias="requestsPerHour")
    tokens_per_hour: Optional[int] = Field(None, alias="tokensPerHour")


class PublishRequest(BaseModel):
    """Publish configuration for a model."""
    model_config = {"populate_by_name": True}

    tenant_id: str = Field("", alias="tenantId", description="Owning tenant, must match the namespace")
    public_hostname: str = Field("", alias="publicHostname", description="Bare hostname, defaults to the shared one")
    external_path: str = Field("", alias="externalPath", description="Path prefix, defaults to /models/{name}")
    rate_limiting: RateLimitingModel = Field(..., alias="rateLimiting")

    def to_config(self) -> PublishConfig:
        return PublishConfig(
            tenant_id=self.tenant_id,
            public_hostname=self.public_hostname,
            external_path=self.external_path,
            rate_limiting=RateLimiting(
                requests_per_minute=self.rate_limiting.requests_per_minute,
                requests_per_hour=self.rate_limiting.requests_per_hour,
                tokens_per_hour=self.rate_limiting.tokens_per_hour,
            ),
        )


def _publish_namespace(identity: TenantIdentity, namespace: Optional[str], body: Optional[PublishRequest] = None) -> str:
    # An admin publishing for a tenant names it either way
    if not namespace and body is not None and identity.is_admin:
        namespace = body.tenant_id or None
    return resolve_namespace(identity, namespace)


# ==============================================================================
# Endpoints
# ==============================================================================

@router.post("/models/{name}/publish", status_code=201)
@limiter.limit(settings.RATE_LIMIT_PER_MINUTE)
def publish_model(
    request: Request,
    name: str,
    body: PublishRequest,
    namespace: Optional[str] = Query(None),
    identity: TenantIdentity = Depends(get_identity),
    publisher: PublishingOrchestrator = Depends(get_publisher),
):
    """
    Publish a ready model.

    The response carries the API key. It is shown only once.
    """
    target = _publish_namespace(identity, namespace, body)
    return publisher.publish(identity, target, name, body.to_config()).to_dict()


@router.put("/models/{name}/publish")
@limiter.limit(settings.RATE_LIMIT_PER_MINUTE)
def update_published_model(
    request: Request,
    name: str,
    body: PublishRequest,
    namespace: Optional[str] = Query(None),
    identity: TenantIdentity = Depends(get_identity),
    publisher: PublishingOrchestrator = Depends(get_publisher),
):
    """Change the publish configuration. The API key is kept."""
    target = _publish_namespace(identity, namespace, body)
    return publisher.update_published(identity, target, name, body.to_config()).to_dict()


@router.delete("/models/{name}/publish")
@limiter.limit(settings.RATE_LIMIT_PER_MINUTE)
def unpublish_model(
    request: Request,
    name: str,
    namespace: Optional[str] = Query(None),
    identity: TenantIdentity = Depends(get_identity),
    publisher: PublishingOrchestrator = Depends(get_publisher),
):
    """Stop exposing a model externally."""
    target = _publish_namespace(identity, namespace)
    publisher.unpublish(target, name)
    return {"message": "Model unpublished successfully", "modelName": name, "namespace": target}


@router.get("/models/{name}/publish")
@limiter.limit(settings.RATE_LIMIT_PER_MINUTE)
def get_published_model(
    request: Request,
    name: str,
    namespace: Optional[str] = Query(None),
    identity: TenantIdentity = Depends(get_identity),
    publisher: PublishingOrchestrator = Depends(get_publisher),
):
    """Published-model details. The API key is never returned here."""
    target = _publish_namespace(identity, namespace)
    return publisher.get_published(target, name).to_dict()


@router.get("/published-models")
@limiter.limit(settings.RATE_LIMIT_PER_MINUTE)
def list_published_models(
    request: Request,
    namespace: Optional[str] = Query(None),
    identity: TenantIdentity = Depends(get_identity),
    publisher: PublishingOrchestrator = Depends(get_publisher),
):
    """List published models of the caller's tenant, or of all tenants for admins."""
    if identity.is_admin and not namespace:
        target = None
    else:
        target = resolve_namespace(identity, namespace)

    published = publisher.list_published(target)
    return {"publishedModels": [p.to_dict() for p in published], "total": len(published)}


@router.post("/models/{name}/publish/rotate-key")
@limiter.limit(settings.RATE_LIMIT_PER_MINUTE)
def rotate_api_key(
    request: Request,
    name: str,
    namespace: Optional[str] = Query(None),
    identity: TenantIdentity = Depends(get_identity),
    publisher: PublishingOrchestrator = Depends(get_publisher),
):
    """Issue a new API key. The previous key stops working immediately."""
    target = _publish_namespace(identity, namespace)
    return publisher.rotate_key(target, name)


@router.post("/validate-api-key")
@limiter.limit(settings.RATE_LIMIT_PER_MINUTE)
def validate_api_key(
    request: Request,
    response: Response,
    x_api_key: Optional[str] = Header(None),
    authorization: Optional[str] = Header(None),
    publisher: PublishingOrchestrator = Depends(get_publisher),
):
    """
    Gateway hook: check a consumer API key.

    The key is read from ``X-API-Key`` or, failing that, a Bearer
    Authorization header. On success the owning tenant and model are also
    returned as response headers for the upstream request.
    """
    api_key = x_api_key or ""
    if not api_key and authorization:
        api_key = authorization[7:].strip() if authorization.startswith("Bearer ") else authorization.strip()

    result = publisher.validate_api_key(api_key)
    response.headers["X-Tenant-ID"] = result["tenant"]
    response.headers["X-Model-Name"] = result["model"]
    response.headers["X-Model-Type"] = result["modelType"]
    return result
