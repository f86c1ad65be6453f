"""
Publishing Orchestrator
=======================

Exposes an internal model outside the cluster with API-key authentication
and rate limiting. A published model is the combination of three cluster
resources, found by naming convention:

- route   ``published-model-{ns}-{model}`` in the gateway namespace
          (HTTPRoute for traditional models, AIGatewayRoute for OpenAI-schema)
- policy  ``published-model-rate-limit-{ns}-{model}`` in the gateway namespace
- secret  ``published-model-apikey-{model}`` in the tenant namespace, which
          also carries the publish metadata

There is no other store. A model counts as published only while all three
exist.

OpenAI-schema models also need an AI Gateway backend chain, created ahead
of the route and removed with it:

- backend     ``published-model-backend-{ns}-{model}`` (FQDN of the KServe host)
- AI backend  ``published-model-backend-{ns}-{model}-ai`` (referenced by the route)
- grant       ``published-model-grant-{ns}-{model}`` in the ingress namespace

LIFECYCLE:
    Unpublished -> Publishing -> Published -> Unpublishing -> Unpublished
    Publishing  -> PublishFailed (rolled back)
    Published   -> Updating    -> Published
    Published   -> RotatingKey -> Published

Publish creates the backend chain (OpenAI only), then route, policy and
secret. If a step fails, the resources created so far are deleted in
reverse order. If that rollback cannot finish, PartialFailure names what
is left behind.

References:
- Envoy Gateway global rate limit: https://gateway.envoyproxy.io/docs/tasks/traffic/global-rate-limit/
- Envoy AI Gateway: https://aigateway.envoyproxy.io/docs/
"""

import hmac
import json
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Type

from auth import TenantIdentity
from config import Settings
from documentation import generate_documentation
from errors import (
    APIError,
    ClusterUnavailable,
    Conflict,
    NotFound,
    PartialFailure,
    Unauthenticated,
    ValidationError,
)
from logger import get_logger
from model_registry import ModelDescriptor, ModelRegistry, ModelType
from resource_client import ResourceClient
from resources import (
    AIGatewayRoute,
    AIServiceBackend,
    Backend,
    BackendTrafficPolicy,
    HTTPRoute,
    ReferenceGrant,
    Resource,
    Secret,
)

logger = get_logger(__name__)

PUBLISHED_LABEL_SELECTOR = "app=published-model"
API_KEY_LABEL_SELECTOR = "app=published-model,type=apikey"
KSERVE_PREDICT_PATH = "/v1/models/{name}:predict"


def generate_api_key() -> str:
    """256 bits from the OS CSPRNG, URL-safe base64 for header transport."""
    return secrets.token_urlsafe(32)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class RateLimiting:
    requests_per_minute: int
    requests_per_hour: Optional[int] = None
    tokens_per_hour: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requestsPerMinute": self.requests_per_minute,
            "requestsPerHour": self.requests_per_hour,
            "tokensPerHour": self.tokens_per_hour,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RateLimiting":
        return cls(
            requests_per_minute=int(data.get("requestsPerMinute") or 0),
            requests_per_hour=data.get("requestsPerHour"),
            tokens_per_hour=data.get("tokensPerHour"),
        )


@dataclass
class PublishConfig:
    tenant_id: str
    rate_limiting: RateLimiting
    public_hostname: str = ""
    external_path: str = ""


@dataclass
class PublishedModel:
    """Aggregate view over a published model's route, policy and secret."""
    model_name: str
    namespace: str
    tenant_id: str
    model_type: ModelType
    external_url: str
    public_hostname: str
    external_path: str
    rate_limiting: RateLimiting
    created_at: str
    updated_at: str
    status: str = "active"
    last_used: Optional[str] = None
    # Only set in the publish response
    api_key: Optional[str] = None
    documentation: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "modelName": self.model_name,
            "namespace": self.namespace,
            "tenantId": self.tenant_id,
            "modelType": self.model_type.value,
            "externalUrl": self.external_url,
            "publicHostname": self.public_hostname,
            "externalPath": self.external_path,
            "rateLimiting": self.rate_limiting.to_dict(),
            "status": self.status,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "documentation": self.documentation,
        }
        if self.last_used is not None:
            data["lastUsed"] = self.last_used
        if self.api_key is not None:
            data["apiKey"] = self.api_key
        return data

    def secret_data(self, api_key: str, key_id: str) -> Dict[str, str]:
        return {
            "apiKey": api_key,
            "keyId": key_id,
            "modelName": self.model_name,
            "namespace": self.namespace,
            "tenantId": self.tenant_id,
            "modelType": self.model_type.value,
            "publicHostname": self.public_hostname,
            "externalPath": self.external_path,
            "externalUrl": self.external_url,
            "rateLimiting": json.dumps(self.rate_limiting.to_dict()),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "isActive": "true",
            "permissions": "inference",
        }

    @classmethod
    def from_secret(cls, secret: Secret) -> "PublishedModel":
        data = secret.data
        try:
            model_type = ModelType(data.get("modelType", ModelType.TRADITIONAL.value))
        except ValueError:
            model_type = ModelType.TRADITIONAL
        try:
            rate_limiting = RateLimiting.from_dict(json.loads(data.get("rateLimiting") or "{}"))
        except ValueError:
            rate_limiting = RateLimiting(requests_per_minute=0)
        return cls(
            model_name=data.get("modelName", ""),
            namespace=data.get("namespace", secret.namespace),
            tenant_id=data.get("tenantId", ""),
            model_type=model_type,
            external_url=data.get("externalUrl", ""),
            public_hostname=data.get("publicHostname", ""),
            external_path=data.get("externalPath", ""),
            rate_limiting=rate_limiting,
            created_at=data.get("createdAt", ""),
            updated_at=data.get("updatedAt", ""),
            status="active" if data.get("isActive", "true") == "true" else "inactive",
            last_used=data.get("lastUsed"),
        )


class PublishingOrchestrator:
    """
    Publish, update, rotate and unpublish models.

    Args:
        resource_client: Cluster access
        registry: Used to check the model exists, is ready and its type
        settings: Gateway placement and defaults
    """

    def __init__(self, resource_client: ResourceClient, registry: ModelRegistry, settings: Settings):
        self.client = resource_client
        self.registry = registry
        self.gateway_namespace = settings.GATEWAY_NAMESPACE
        self.gateway_name = settings.GATEWAY_NAME
        self.default_hostname = settings.DEFAULT_PUBLIC_HOSTNAME
        self.ingress_name = settings.INGRESS_SERVICE_NAME
        self.ingress_namespace = settings.INGRESS_SERVICE_NAMESPACE
        self.ingress_port = settings.INGRESS_SERVICE_PORT

    # ------------------------------------------------------------------
    # Naming
    # ------------------------------------------------------------------

    @staticmethod
    def route_name(namespace: str, model_name: str) -> str:
        return f"published-model-{namespace}-{model_name}"

    @staticmethod
    def policy_name(namespace: str, model_name: str) -> str:
        return f"published-model-rate-limit-{namespace}-{model_name}"

    @staticmethod
    def secret_name(model_name: str) -> str:
        return f"published-model-apikey-{model_name}"

    @staticmethod
    def backend_name(namespace: str, model_name: str) -> str:
        return f"published-model-backend-{namespace}-{model_name}"

    @classmethod
    def ai_backend_name(cls, namespace: str, model_name: str) -> str:
        return cls.backend_name(namespace, model_name) + "-ai"

    @staticmethod
    def grant_name(namespace: str, model_name: str) -> str:
        return f"published-model-grant-{namespace}-{model_name}"

    @staticmethod
    def route_class(model_type: ModelType) -> Type[Resource]:
        return AIGatewayRoute if model_type == ModelType.OPENAI else HTTPRoute

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate_config(self, identity: TenantIdentity, namespace: str, config: PublishConfig) -> None:
        limits = config.rate_limiting
        if not config.tenant_id:
            raise ValidationError("tenantId is required")
        if not identity.is_admin and config.tenant_id != identity.tenant_id:
            raise ValidationError(
                f"tenantId {config.tenant_id} does not match caller tenant {identity.tenant_id}"
            )
        if config.tenant_id != namespace:
            raise ValidationError(f"tenantId {config.tenant_id} does not own namespace {namespace}")
        if not limits.requests_per_minute or limits.requests_per_minute <= 0:
            raise ValidationError("rateLimiting.requestsPerMinute must be greater than 0")
        if limits.requests_per_hour is not None:
            if limits.requests_per_hour <= 0:
                raise ValidationError("rateLimiting.requestsPerHour must be greater than 0")
            if limits.requests_per_minute > limits.requests_per_hour:
                raise ValidationError("rateLimiting.requestsPerMinute cannot exceed requestsPerHour")
        if limits.tokens_per_hour is not None and limits.tokens_per_hour <= 0:
            raise ValidationError("rateLimiting.tokensPerHour must be greater than 0")
        if config.public_hostname and ("://" in config.public_hostname or "/" in config.public_hostname):
            raise ValidationError("publicHostname must be a bare hostname without scheme or path")
        if config.external_path and not config.external_path.startswith("/"):
            raise ValidationError("externalPath must start with '/'")

    def _ready_model(self, namespace: str, name: str) -> ModelDescriptor:
        try:
            descriptor = self.registry.get_model(namespace, name)
        except NotFound:
            raise ValidationError(f"Model {name} not found in namespace {namespace}")
        if not descriptor.ready:
            raise ValidationError(f"Model {name} is not ready")
        return descriptor

    # ------------------------------------------------------------------
    # Desired state
    # ------------------------------------------------------------------

    def _record(self, descriptor: ModelDescriptor, config: PublishConfig, created_at: str) -> PublishedModel:
        hostname = config.public_hostname or self.default_hostname
        if config.external_path:
            path = config.external_path
        elif descriptor.model_type == ModelType.OPENAI:
            path = f"/v1/models/{descriptor.name}"
        else:
            path = f"/published/models/{descriptor.name}"
        return PublishedModel(
            model_name=descriptor.name,
            namespace=descriptor.namespace,
            tenant_id=config.tenant_id,
            model_type=descriptor.model_type,
            external_url=f"https://{hostname}{path}",
            public_hostname=hostname,
            external_path=path,
            rate_limiting=config.rate_limiting,
            created_at=created_at,
            updated_at=_now(),
        )

    @staticmethod
    def _kserve_host(descriptor: ModelDescriptor) -> str:
        if descriptor.external_url:
            return descriptor.external_url.split("://", 1)[-1].rstrip("/")
        return f"{descriptor.name}-predictor.{descriptor.namespace}.svc.cluster.local"

    def _build_route(self, descriptor: ModelDescriptor, record: PublishedModel) -> Resource:
        name = self.route_name(record.namespace, record.model_name)
        labels = {
            "app": "published-model",
            "model-name": record.model_name,
            "tenant": record.namespace,
            "hostname": record.public_hostname,
        }
        if record.model_type == ModelType.OPENAI:
            return AIGatewayRoute(
                name=name,
                namespace=self.gateway_namespace,
                labels={**labels, "type": ModelType.OPENAI.value},
                hostnames=[record.public_hostname],
                gateway_name=self.gateway_name,
                gateway_namespace=self.gateway_namespace,
                model_name=record.model_name,
                backend_name=self.ai_backend_name(record.namespace, record.model_name),
            )
        return HTTPRoute(
            name=name,
            namespace=self.gateway_namespace,
            labels=labels,
            hostnames=[record.public_hostname],
            parent_name=self.gateway_name,
            parent_namespace=self.gateway_namespace,
            path_prefix=record.external_path,
            rewrite_hostname=self._kserve_host(descriptor),
            rewrite_path=KSERVE_PREDICT_PATH.format(name=record.model_name),
            request_headers={
                "x-tenant": record.namespace,
                "x-model-name": record.model_name,
                "x-gateway": "published-model",
                "x-hostname": record.public_hostname,
            },
            backend_name=self.ingress_name,
            backend_namespace=self.ingress_namespace,
            backend_port=self.ingress_port,
        )

    def _build_ai_backends(self, descriptor: ModelDescriptor, record: PublishedModel) -> List[Resource]:
        """Backend, AIServiceBackend and ReferenceGrant behind an AIGatewayRoute."""
        labels = {
            "app": "published-model",
            "model-name": record.model_name,
            "tenant": record.namespace,
        }
        backend_name = self.backend_name(record.namespace, record.model_name)
        return [
            Backend(
                name=backend_name,
                namespace=self.gateway_namespace,
                labels=dict(labels),
                hostname=self._kserve_host(descriptor),
            ),
            AIServiceBackend(
                name=self.ai_backend_name(record.namespace, record.model_name),
                namespace=self.gateway_namespace,
                labels=dict(labels),
                backend_name=backend_name,
                backend_namespace=self.gateway_namespace,
            ),
            ReferenceGrant(
                name=self.grant_name(record.namespace, record.model_name),
                namespace=self.ingress_namespace,
                labels=dict(labels),
                from_namespace=self.gateway_namespace,
                service_name=self.ingress_name,
            ),
        ]

    def _build_policy(self, record: PublishedModel) -> BackendTrafficPolicy:
        limits = record.rate_limiting
        return BackendTrafficPolicy(
            name=self.policy_name(record.namespace, record.model_name),
            namespace=self.gateway_namespace,
            labels={
                "app": "published-model",
                "model-name": record.model_name,
                "tenant": record.namespace,
            },
            target_kind="HTTPRoute",
            target_name=self.route_name(record.namespace, record.model_name),
            target_namespace=self.gateway_namespace,
            requests_per_minute=limits.requests_per_minute,
            requests_per_hour=limits.requests_per_hour,
            # Token budgets only apply to OpenAI-schema traffic
            tokens_per_hour=limits.tokens_per_hour if record.model_type == ModelType.OPENAI else None,
        )

    def _build_secret(self, record: PublishedModel, api_key: str) -> Secret:
        return Secret(
            name=self.secret_name(record.model_name),
            namespace=record.namespace,
            labels={"app": "published-model", "type": "apikey", "model-name": record.model_name},
            data=record.secret_data(api_key, str(uuid.uuid4())),
        )

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def _delete_all(self, resources: List[Resource]) -> List[str]:
        """
        Delete ``resources`` in the given order. Absent resources count as
        deleted. Returns the references that could not be deleted.
        """
        remaining = []
        for resource in resources:
            try:
                self.client.delete(type(resource), resource.namespace, resource.name)
            except NotFound:
                logger.debug(f"{resource.ref} already absent")
            except APIError as e:
                logger.error(f"Failed to delete {resource.ref}: {e.message}")
                remaining.append(resource.ref)
        return remaining

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def publish(self, identity: TenantIdentity, namespace: str, name: str, config: PublishConfig) -> PublishedModel:
        """
        Publish a ready model.

        Returns:
            The published model including its API key. The key is not
            retrievable afterwards.

        Raises:
            ValidationError: Bad config, unknown or not-ready model. Nothing is created.
            Conflict: The model is already published
            PartialFailure: A step failed and rollback left resources behind
        """
        self._validate_config(identity, namespace, config)
        descriptor = self._ready_model(namespace, name)

        route_name = self.route_name(namespace, name)
        for route_cls in (HTTPRoute, AIGatewayRoute):
            if self.client.exists(route_cls, self.gateway_namespace, route_name):
                raise Conflict(f"Model {name} is already published")

        record = self._record(descriptor, config, created_at=_now())
        api_key = generate_api_key()
        steps: List[Resource] = []
        if record.model_type == ModelType.OPENAI:
            steps.extend(self._build_ai_backends(descriptor, record))
        steps.extend([
            self._build_route(descriptor, record),
            self._build_policy(record),
            self._build_secret(record, api_key),
        ])

        created: List[Resource] = []
        for resource in steps:
            try:
                created.append(self.client.create(resource))
            except Exception as e:
                logger.error(f"Publishing {namespace}/{name} failed at {resource.ref}, rolling back")
                undo = list(created)
                if isinstance(e, ClusterUnavailable):
                    # The create may have landed before the connection dropped
                    undo.append(resource)
                remaining = self._delete_all(list(reversed(undo)))
                if remaining:
                    message = e.message if isinstance(e, APIError) else str(e)
                    raise PartialFailure(
                        f"Publishing {name} failed and rollback did not complete",
                        resources=remaining,
                        details={"cause": message},
                    ) from e
                raise

        logger.info(f"Published model {namespace}/{name} as {record.external_url} (tenant {identity.tenant_id})")
        record.api_key = api_key
        record.documentation = generate_documentation(name, record.model_type, record.external_url, api_key)
        return record

    def _load(self, namespace: str, name: str) -> PublishedModel:
        try:
            secret = self.client.get(Secret, namespace, self.secret_name(name))
        except NotFound:
            raise NotFound(f"Model {name} is not published")

        record = PublishedModel.from_secret(secret)
        route_cls = self.route_class(record.model_type)
        if not (
            self.client.exists(route_cls, self.gateway_namespace, self.route_name(namespace, name))
            and self.client.exists(BackendTrafficPolicy, self.gateway_namespace, self.policy_name(namespace, name))
        ):
            raise NotFound(f"Model {name} is not published")
        return record

    def get_published(self, namespace: str, name: str) -> PublishedModel:
        """Published-model details. The API key is never included."""
        record = self._load(namespace, name)
        record.documentation = generate_documentation(name, record.model_type, record.external_url)
        return record

    def list_published(self, namespace: Optional[str]) -> List[PublishedModel]:
        """Published models in ``namespace``, or in every namespace when None."""
        route_names = {
            r.name
            for route_cls in (HTTPRoute, AIGatewayRoute)
            for r in self.client.list(route_cls, self.gateway_namespace, PUBLISHED_LABEL_SELECTOR)
        }
        policy_names = {
            p.name for p in self.client.list(BackendTrafficPolicy, self.gateway_namespace, PUBLISHED_LABEL_SELECTOR)
        }

        published = []
        for secret in self.client.list(Secret, namespace, API_KEY_LABEL_SELECTOR):
            record = PublishedModel.from_secret(secret)
            if (
                self.route_name(record.namespace, record.model_name) in route_names
                and self.policy_name(record.namespace, record.model_name) in policy_names
            ):
                record.documentation = generate_documentation(
                    record.model_name, record.model_type, record.external_url
                )
                published.append(record)
        return published

    def update_published(
        self, identity: TenantIdentity, namespace: str, name: str, config: PublishConfig
    ) -> PublishedModel:
        """
        Apply a new publish config in place. The route is replaced, never
        removed, and the API key is preserved.

        Raises:
            PartialFailure: A later update failed; ``resources`` lists the
                ones already carrying the new config
        """
        self._validate_config(identity, namespace, config)
        current = self._load(namespace, name)
        descriptor = self.registry.get_model(namespace, name)
        descriptor.model_type = current.model_type

        record = self._record(descriptor, config, created_at=current.created_at)
        route_cls = self.route_class(record.model_type)

        def new_route(existing: Resource) -> Resource:
            desired = self._build_route(descriptor, record)
            desired.extra = existing.extra
            return desired

        def new_policy(existing: BackendTrafficPolicy) -> BackendTrafficPolicy:
            desired = self._build_policy(record)
            desired.extra = existing.extra
            return desired

        def new_metadata(secret: Secret) -> Secret:
            data = record.secret_data(secret.data.get("apiKey", ""), secret.data.get("keyId", ""))
            secret.data = {**secret.data, **data}
            return secret

        updates = [
            (route_cls, self.gateway_namespace, self.route_name(namespace, name), new_route),
            (BackendTrafficPolicy, self.gateway_namespace, self.policy_name(namespace, name), new_policy),
            (Secret, namespace, self.secret_name(name), new_metadata),
        ]
        applied: List[str] = []
        for resource_cls, resource_ns, resource_name, mutate in updates:
            try:
                updated = self.client.update(resource_cls, resource_ns, resource_name, mutate)
            except APIError as e:
                if not applied:
                    raise
                logger.error(
                    f"Updating published model {namespace}/{name} stopped after {', '.join(applied)}: {e.message}"
                )
                raise PartialFailure(
                    f"Updating {name} failed after some resources were changed",
                    resources=applied,
                    details={"cause": e.message},
                ) from e
            applied.append(updated.ref)

        logger.info(f"Updated published model {namespace}/{name} (tenant {identity.tenant_id})")
        record.documentation = generate_documentation(name, record.model_type, record.external_url)
        return record

    def rotate_key(self, namespace: str, name: str) -> Dict[str, Any]:
        """
        Replace the API key. Route and policy are untouched and the old key
        stops validating as soon as the secret is written.
        """
        self._load(namespace, name)
        new_key = generate_api_key()
        updated_at = _now()

        def replace_key(secret: Secret) -> Secret:
            secret.data = {
                **secret.data,
                "apiKey": new_key,
                "keyId": str(uuid.uuid4()),
                "updatedAt": updated_at,
            }
            return secret

        self.client.update(Secret, namespace, self.secret_name(name), replace_key)
        logger.info(f"Rotated API key for published model {namespace}/{name}")
        return {
            "message": "API key rotated successfully",
            "newApiKey": new_key,
            "updatedAt": updated_at,
        }

    def unpublish(self, namespace: str, name: str) -> None:
        """
        Remove the route, policy, secret and any AI backend chain. Missing
        pieces are ignored so repeated calls converge.

        Raises:
            PartialFailure: Some resources could not be deleted
        """
        route_name = self.route_name(namespace, name)
        remaining = self._delete_all([
            HTTPRoute(name=route_name, namespace=self.gateway_namespace),
            AIGatewayRoute(name=route_name, namespace=self.gateway_namespace),
            BackendTrafficPolicy(name=self.policy_name(namespace, name), namespace=self.gateway_namespace),
            Secret(name=self.secret_name(name), namespace=namespace),
            AIServiceBackend(name=self.ai_backend_name(namespace, name), namespace=self.gateway_namespace),
            Backend(name=self.backend_name(namespace, name), namespace=self.gateway_namespace),
            ReferenceGrant(name=self.grant_name(namespace, name), namespace=self.ingress_namespace),
        ])
        if remaining:
            raise PartialFailure(f"Unpublishing {name} did not complete", resources=remaining)
        logger.info(f"Unpublished model {namespace}/{name}")

    def validate_api_key(self, api_key: str) -> Dict[str, Any]:
        """
        Look up the published model an API key belongs to. The key only
        counts while the model's route and policy exist too. A successful
        lookup stamps ``lastUsed`` on the secret.

        Raises:
            Unauthenticated: Empty or unknown key, or the model is not fully published
        """
        if not api_key:
            raise Unauthenticated("API key required")

        for secret in self.client.list(Secret, None, API_KEY_LABEL_SELECTOR):
            stored = secret.data.get("apiKey", "")
            if not stored or secret.data.get("isActive", "true") != "true":
                continue
            if not hmac.compare_digest(stored.encode("utf-8"), api_key.encode("utf-8")):
                continue

            record = PublishedModel.from_secret(secret)
            namespace = secret.namespace
            route_cls = self.route_class(record.model_type)
            if not (
                self.client.exists(route_cls, self.gateway_namespace, self.route_name(namespace, record.model_name))
                and self.client.exists(
                    BackendTrafficPolicy, self.gateway_namespace, self.policy_name(namespace, record.model_name)
                )
            ):
                logger.warning(f"API key for {namespace}/{record.model_name} matched an incomplete publication")
                break

            self._record_use(namespace, record.model_name)
            return {
                "valid": True,
                "tenant": record.tenant_id,
                "model": record.model_name,
                "modelType": record.model_type.value,
                "namespace": namespace,
            }
        raise Unauthenticated("Invalid API key")

    def _record_use(self, namespace: str, name: str) -> None:
        used_at = _now()

        def mark_used(secret: Secret) -> Secret:
            secret.data = {**secret.data, "lastUsed": used_at}
            return secret

        try:
            self.client.update(Secret, namespace, self.secret_name(name), mark_used)
        except APIError as e:
            # The key is valid either way
            logger.warning(f"Could not record API key use for {namespace}/{name}: {e.message}")
