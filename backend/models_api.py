"""
Model Lifecycle API Endpoints
=============================

CRUD over tenant models, prediction testing and predictor logs.

Every endpoint requires a bearer token. Non-admin callers are confined to
their own tenant namespace. Asking for another tenant's model is answered
with 403 rather than 404.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field, field_validator

from auth import TenantIdentity, get_identity, limiter, resolve_namespace
from config import settings
from dependencies import get_proxy, get_registry
from model_registry import ModelRegistry, ModelSpec, ModelType, ModelUpdate
from prediction_proxy import ConnectionSettings, DNSResolve, HeaderSetting, PredictionProxy

router = APIRouter(tags=["Models"])


# ==============================================================================
# Pydantic Models for Request/Response
# ==============================================================================

class CreateModelRequest(BaseModel):
    """Request to deploy a new model."""
    model_config = {"populate_by_name": True, "protected_namespaces": ()}

    name: str = Field(..., min_length=1, max_length=63, description="Model name, unique within the namespace")
    framework: str = Field(..., min_length=1, description="One of the supported frameworks")
    storage_uri: str = Field(..., alias="storageUri", min_length=1, description="Model artifact location")
    min_replicas: Optional[int] = Field(None, alias="minReplicas", ge=0)
    max_replicas: Optional[int] = Field(None, alias="maxReplicas", ge=0)
    scale_target: Optional[int] = Field(None, alias="scaleTarget", gt=0)
    scale_metric: Optional[str] = Field(None, alias="scaleMetric")
    model_type: ModelType = Field(ModelType.TRADITIONAL, alias="modelType",
                                  description="traditional or openai; fixed for the model's lifetime")
    namespace: Optional[str] = Field(None, description="Target namespace (admin only)")

    def to_spec(self) -> ModelSpec:
        return ModelSpec(
            name=self.name,
            framework=self.framework,
            storage_uri=self.storage_uri,
            min_replicas=self.min_replicas,
            max_replicas=self.max_replicas,
            scale_target=self.scale_target,
            scale_metric=self.scale_metric,
            model_type=self.model_type,
        )


class UpdateModelRequest(BaseModel):
    """Partial update. Omitted fields keep their current value."""
    model_config = {"populate_by_name": True}

    framework: Optional[str] = None
    storage_uri: Optional[str] = Field(None, alias="storageUri")
    min_replicas: Optional[int] = Field(None, alias="minReplicas", ge=0)
    max_replicas: Optional[int] = Field(None, alias="maxReplicas", ge=0)
    scale_target: Optional[int] = Field(None, alias="scaleTarget", gt=0)
    scale_metric: Optional[str] = Field(None, alias="scaleMetric")

    def to_update(self) -> ModelUpdate:
        return ModelUpdate(
            framework=self.framework,
            storage_uri=self.storage_uri,
            min_replicas=self.min_replicas,
            max_replicas=self.max_replicas,
            scale_target=self.scale_target,
            scale_metric=self.scale_metric,
        )


def _port_as_string(v):
    if v is None:
        return ""
    return str(v)


class HeaderModel(BaseModel):
    key: str = ""
    value: str = ""


class DNSResolveModel(BaseModel):
    host: str = ""
    port: str = ""
    address: str = ""

    @field_validator("port", mode="before")
    @classmethod
    def validate_port(cls, v):
        return _port_as_string(v)


class ConnectionSettingsModel(BaseModel):
    """Per-request transport overrides for the prediction proxy."""
    model_config = {"populate_by_name": True}

    use_custom: bool = Field(False, alias="useCustom")
    protocol: str = ""
    host: str = ""
    port: str = ""
    path: str = ""
    namespace: str = Field("", description="Namespace of the model (admin only)")
    headers: List[HeaderModel] = Field(default_factory=list)
    dns_resolve: List[DNSResolveModel] = Field(default_factory=list, alias="dnsResolve")

    @field_validator("port", mode="before")
    @classmethod
    def validate_port(cls, v):
        """Ports may be sent as numbers."""
        return _port_as_string(v)

    def to_settings(self) -> ConnectionSettings:
        return ConnectionSettings(
            use_custom=self.use_custom,
            protocol=self.protocol,
            host=self.host,
            port=self.port,
            path=self.path,
            namespace=self.namespace,
            headers=[HeaderSetting(h.key, h.value) for h in self.headers],
            dns_resolve=[DNSResolve(d.host, d.port, d.address) for d in self.dns_resolve],
        )


class PredictRequest(BaseModel):
    """Request to run a prediction against a model."""
    model_config = {"populate_by_name": True}

    input_data: Any = Field(..., alias="inputData", description="Payload forwarded to the model as JSON")
    connection_settings: Optional[ConnectionSettingsModel] = Field(None, alias="connectionSettings")


# ==============================================================================
# Endpoints
# ==============================================================================

@router.get("/tenant")
@limiter.limit(settings.RATE_LIMIT_PER_MINUTE)
def get_tenant_info(request: Request, identity: TenantIdentity = Depends(get_identity)):
    """Return the identity the caller's token resolves to."""
    return identity.to_dict()


@router.get("/frameworks")
@limiter.limit(settings.RATE_LIMIT_PER_MINUTE)
def list_frameworks(
    request: Request,
    identity: TenantIdentity = Depends(get_identity),
    registry: ModelRegistry = Depends(get_registry),
):
    """Enumerate the supported model frameworks."""
    return {"frameworks": registry.list_frameworks()}


@router.get("/models")
@limiter.limit(settings.RATE_LIMIT_PER_MINUTE)
def list_models(
    request: Request,
    namespace: Optional[str] = Query(None, description="Namespace filter (admin only)"),
    identity: TenantIdentity = Depends(get_identity),
    registry: ModelRegistry = Depends(get_registry),
):
    """
    List models in the caller's namespace.

    Admins see every namespace unless ``namespace`` narrows the listing.
    """
    if identity.is_admin and not namespace:
        target = None
    else:
        target = resolve_namespace(identity, namespace)

    models = registry.list_models(target)
    return {"models": [m.to_dict() for m in models], "total": len(models)}


@router.get("/models/{name}")
@limiter.limit(settings.RATE_LIMIT_PER_MINUTE)
def get_model(
    request: Request,
    name: str,
    namespace: Optional[str] = Query(None),
    identity: TenantIdentity = Depends(get_identity),
    registry: ModelRegistry = Depends(get_registry),
):
    """Get one model, including its readiness and external URL."""
    target = resolve_namespace(identity, namespace)
    return registry.get_model(target, name).to_dict()


@router.post("/models", status_code=201)
@limiter.limit(settings.RATE_LIMIT_PER_MINUTE)
def create_model(
    request: Request,
    body: CreateModelRequest,
    identity: TenantIdentity = Depends(get_identity),
    registry: ModelRegistry = Depends(get_registry),
):
    """Deploy a new model as a KServe InferenceService."""
    target = resolve_namespace(identity, body.namespace)
    descriptor = registry.create_model(target, body.to_spec())
    return {
        "message": "Model created successfully",
        "name": descriptor.name,
        "namespace": descriptor.namespace,
        "config": descriptor.config_dict(),
    }


@router.put("/models/{name}")
@limiter.limit(settings.RATE_LIMIT_PER_MINUTE)
def update_model(
    request: Request,
    name: str,
    body: UpdateModelRequest,
    namespace: Optional[str] = Query(None),
    identity: TenantIdentity = Depends(get_identity),
    registry: ModelRegistry = Depends(get_registry),
):
    """Update a model. Only the fields present in the body change."""
    target = resolve_namespace(identity, namespace)
    descriptor = registry.update_model(target, name, body.to_update())
    return {
        "message": "Model updated successfully",
        "name": descriptor.name,
        "namespace": descriptor.namespace,
        "config": descriptor.config_dict(),
    }


@router.delete("/models/{name}")
@limiter.limit(settings.RATE_LIMIT_PER_MINUTE)
def delete_model(
    request: Request,
    name: str,
    namespace: Optional[str] = Query(None),
    identity: TenantIdentity = Depends(get_identity),
    registry: ModelRegistry = Depends(get_registry),
):
    """Delete a model."""
    target = resolve_namespace(identity, namespace)
    registry.delete_model(target, name)
    return {"message": "Model deleted successfully", "name": name, "namespace": target}


@router.post("/models/{name}/predict")
@limiter.limit(settings.RATE_LIMIT_PER_MINUTE)
async def predict(
    request: Request,
    name: str,
    body: PredictRequest,
    identity: TenantIdentity = Depends(get_identity),
    proxy: PredictionProxy = Depends(get_proxy),
):
    """
    Send a prediction request to the model.

    With ``connectionSettings.useCustom`` the request goes to the given
    protocol/host/port/path instead of the model's own URL. Headers and
    DNS overrides apply in both cases.
    """
    connection = body.connection_settings.to_settings() if body.connection_settings else None
    target = resolve_namespace(identity, connection.namespace if connection else None)
    return await proxy.predict(target, name, body.input_data, connection)


@router.get("/models/{name}/logs")
@limiter.limit(settings.RATE_LIMIT_PER_MINUTE)
def get_model_logs(
    request: Request,
    name: str,
    lines: int = Query(100, ge=1, le=10000, description="Number of trailing log lines"),
    namespace: Optional[str] = Query(None),
    identity: TenantIdentity = Depends(get_identity),
    registry: ModelRegistry = Depends(get_registry),
) -> Dict[str, Any]:
    """Recent log lines of the model's predictor."""
    target = resolve_namespace(identity, namespace)
    return {"name": name, "namespace": target, "logs": registry.get_logs(target, name, lines)}
