"""
Typed cluster resources.

Each class models one resource family the control plane writes. Fields cover
every key this service reads or writes. Spec keys it never inspects are
carried through ``extra`` so that replace calls do not drop them.

References:
- KServe InferenceService: https://kserve.github.io/website/latest/reference/api/
- Gateway API HTTPRoute: https://gateway-api.sigs.k8s.io/reference/spec/#httproute
- Envoy AI Gateway AIGatewayRoute: https://aigateway.envoyproxy.io/docs/api/
- Envoy Gateway BackendTrafficPolicy: https://gateway.envoyproxy.io/docs/api/extension_types/
"""
import base64
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional

API_KEY_HEADER = "x-api-key"
MODEL_TYPE_HEADER = "x-model-type"
AI_MODEL_HEADER = "x-ai-eg-model"
GATEWAY_API_GROUP = "gateway.networking.k8s.io"


@dataclass(frozen=True)
class ResourceKind:
    """Addressing information for one resource family."""
    api_version: str
    kind: str
    plural: str
    # Name used by CoreV1Api methods, e.g. read_namespaced_secret
    core_name: Optional[str] = None

    @property
    def core(self) -> bool:
        return self.core_name is not None

    @property
    def group(self) -> str:
        return self.api_version.rpartition("/")[0]

    @property
    def version(self) -> str:
        return self.api_version.rpartition("/")[2]


def _metadata(body: Dict[str, Any]) -> Dict[str, Any]:
    meta = body.get("metadata") or {}
    return {
        "name": meta.get("name", ""),
        "namespace": meta.get("namespace", ""),
        "labels": dict(meta.get("labels") or {}),
        "annotations": dict(meta.get("annotations") or {}),
        "resource_version": meta.get("resourceVersion"),
        "uid": meta.get("uid"),
        "created_at": meta.get("creationTimestamp"),
    }


@dataclass
class Resource:
    KIND: ClassVar[ResourceKind]

    name: str
    namespace: str
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    resource_version: Optional[str] = None
    uid: Optional[str] = None
    created_at: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def ref(self) -> str:
        """Human-readable reference used in logs and PartialFailure listings."""
        return f"{self.KIND.kind}/{self.namespace}/{self.name}"

    def _k8s_metadata(self) -> Dict[str, Any]:
        meta: Dict[str, Any] = {"name": self.name, "namespace": self.namespace}
        if self.labels:
            meta["labels"] = dict(self.labels)
        if self.annotations:
            meta["annotations"] = dict(self.annotations)
        if self.resource_version:
            meta["resourceVersion"] = self.resource_version
        return meta

    def _envelope(self, spec: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "apiVersion": self.KIND.api_version,
            "kind": self.KIND.kind,
            "metadata": self._k8s_metadata(),
            "spec": {**self.extra, **spec},
        }

    def to_k8s(self) -> Dict[str, Any]:
        raise NotImplementedError

    @classmethod
    def from_k8s(cls, body: Dict[str, Any]) -> "Resource":
        raise NotImplementedError


@dataclass
class InferenceService(Resource):
    """KServe model-serving resource with a single framework predictor."""

    KIND: ClassVar[ResourceKind] = ResourceKind(
        "serving.kserve.io/v1beta1", "InferenceService", "inferenceservices"
    )

    framework: str = ""
    storage_uri: str = ""
    min_replicas: int = 1
    max_replicas: int = 3
    scale_target: int = 60
    scale_metric: str = "concurrency"
    # Keys of the framework block other than storageUri
    framework_options: Dict[str, Any] = field(default_factory=dict)
    # Predictor keys outside the ones modelled above
    predictor_extra: Dict[str, Any] = field(default_factory=dict)
    # Read-only status projections
    ready: bool = False
    url: str = ""

    def to_k8s(self) -> Dict[str, Any]:
        predictor = dict(self.predictor_extra)
        predictor.update({
            "minReplicas": self.min_replicas,
            "maxReplicas": self.max_replicas,
            "scaleTarget": self.scale_target,
            "scaleMetric": self.scale_metric,
            self.framework: {**self.framework_options, "storageUri": self.storage_uri},
        })
        return self._envelope({"predictor": predictor})

    @classmethod
    def from_k8s(cls, body: Dict[str, Any]) -> "InferenceService":
        spec = dict(body.get("spec") or {})
        predictor = dict(spec.pop("predictor", None) or {})

        framework, storage_uri, options = "", "", {}
        # The framework block is the predictor entry holding the storage URI
        for key, value in list(predictor.items()):
            if isinstance(value, dict) and "storageUri" in value:
                framework = key
                options = {k: v for k, v in value.items() if k != "storageUri"}
                storage_uri = value.get("storageUri") or ""
                del predictor[key]
                break

        status = body.get("status") or {}
        ready = any(
            cond.get("type") == "Ready" and cond.get("status") == "True"
            for cond in status.get("conditions") or []
        )

        return cls(
            **_metadata(body),
            extra=spec,
            framework=framework,
            storage_uri=storage_uri,
            min_replicas=int(predictor.pop("minReplicas", 1)),
            max_replicas=int(predictor.pop("maxReplicas", 3)),
            scale_target=int(predictor.pop("scaleTarget", 60)),
            scale_metric=predictor.pop("scaleMetric", "concurrency"),
            framework_options=options,
            predictor_extra=predictor,
            ready=ready,
            url=status.get("url") or "",
        )


@dataclass
class HTTPRoute(Resource):
    """Gateway API route exposing a traditional model behind an API key."""

    KIND: ClassVar[ResourceKind] = ResourceKind(
        "gateway.networking.k8s.io/v1", "HTTPRoute", "httproutes"
    )

    hostnames: List[str] = field(default_factory=list)
    parent_name: str = ""
    parent_namespace: str = ""
    path_prefix: str = "/"
    rewrite_hostname: str = ""
    rewrite_path: str = ""
    request_headers: Dict[str, str] = field(default_factory=dict)
    backend_name: str = ""
    backend_namespace: str = ""
    backend_port: int = 80

    def to_k8s(self) -> Dict[str, Any]:
        rule = {
            "matches": [{
                "path": {"type": "PathPrefix", "value": self.path_prefix},
                "headers": [{"name": API_KEY_HEADER, "type": "RegularExpression", "value": ".*"}],
            }],
            "filters": [
                {
                    "type": "URLRewrite",
                    "urlRewrite": {
                        "hostname": self.rewrite_hostname,
                        "path": {"type": "ReplaceFullPath", "replaceFullPath": self.rewrite_path},
                    },
                },
                {
                    "type": "RequestHeaderModifier",
                    "requestHeaderModifier": {
                        "set": [{"name": k, "value": v} for k, v in self.request_headers.items()],
                    },
                },
            ],
            "backendRefs": [{
                "name": self.backend_name,
                "namespace": self.backend_namespace,
                "port": self.backend_port,
            }],
        }
        return self._envelope({
            "hostnames": list(self.hostnames),
            "parentRefs": [{"name": self.parent_name, "namespace": self.parent_namespace}],
            "rules": [rule],
        })

    @classmethod
    def from_k8s(cls, body: Dict[str, Any]) -> "HTTPRoute":
        spec = dict(body.get("spec") or {})
        hostnames = spec.pop("hostnames", None) or []
        parents = spec.pop("parentRefs", None) or [{}]
        rules = spec.pop("rules", None) or [{}]
        rule = rules[0]

        match = (rule.get("matches") or [{}])[0]
        path_prefix = (match.get("path") or {}).get("value", "/")

        rewrite_hostname, rewrite_path, headers = "", "", {}
        for f in rule.get("filters") or []:
            if f.get("type") == "URLRewrite":
                rewrite = f.get("urlRewrite") or {}
                rewrite_hostname = rewrite.get("hostname", "")
                rewrite_path = (rewrite.get("path") or {}).get("replaceFullPath", "")
            elif f.get("type") == "RequestHeaderModifier":
                for h in (f.get("requestHeaderModifier") or {}).get("set") or []:
                    headers[h["name"]] = h["value"]

        backend = (rule.get("backendRefs") or [{}])[0]
        return cls(
            **_metadata(body),
            extra=spec,
            hostnames=list(hostnames),
            parent_name=parents[0].get("name", ""),
            parent_namespace=parents[0].get("namespace", ""),
            path_prefix=path_prefix,
            rewrite_hostname=rewrite_hostname,
            rewrite_path=rewrite_path,
            request_headers=headers,
            backend_name=backend.get("name", ""),
            backend_namespace=backend.get("namespace", ""),
            backend_port=int(backend.get("port", 80)),
        )


@dataclass
class AIGatewayRoute(Resource):
    """Envoy AI Gateway route for OpenAI-schema models."""

    KIND: ClassVar[ResourceKind] = ResourceKind(
        "aigateway.envoyproxy.io/v1alpha1", "AIGatewayRoute", "aigatewayroutes"
    )
    LLM_COSTS: ClassVar[Dict[str, str]] = {
        "InputToken": "llm_input_token",
        "OutputToken": "llm_output_token",
        "TotalToken": "llm_total_token",
    }

    hostnames: List[str] = field(default_factory=list)
    gateway_name: str = ""
    gateway_namespace: str = ""
    model_name: str = ""
    backend_name: str = ""
    backend_weight: int = 100
    schema_name: str = "OpenAI"

    def to_k8s(self) -> Dict[str, Any]:
        return self._envelope({
            "schema": {"name": self.schema_name},
            "targetRefs": [{
                "name": self.gateway_name,
                "namespace": self.gateway_namespace,
                "kind": "Gateway",
                "group": GATEWAY_API_GROUP,
            }],
            "hostnames": list(self.hostnames),
            "rules": [{
                "matches": [{
                    "headers": [{"type": "Exact", "name": AI_MODEL_HEADER, "value": self.model_name}],
                }],
                "backendRefs": [{"name": self.backend_name, "weight": self.backend_weight}],
            }],
            "llmRequestCosts": [
                {"metadataKey": key, "type": cost} for cost, key in self.LLM_COSTS.items()
            ],
        })

    @classmethod
    def from_k8s(cls, body: Dict[str, Any]) -> "AIGatewayRoute":
        spec = dict(body.get("spec") or {})
        schema = spec.pop("schema", None) or {}
        targets = spec.pop("targetRefs", None) or [{}]
        hostnames = spec.pop("hostnames", None) or []
        rules = spec.pop("rules", None) or [{}]
        spec.pop("llmRequestCosts", None)

        rule = rules[0]
        model_name = ""
        for match in rule.get("matches") or []:
            for header in match.get("headers") or []:
                if header.get("name") == AI_MODEL_HEADER:
                    model_name = header.get("value", "")
        backend = (rule.get("backendRefs") or [{}])[0]

        return cls(
            **_metadata(body),
            extra=spec,
            hostnames=list(hostnames),
            gateway_name=targets[0].get("name", ""),
            gateway_namespace=targets[0].get("namespace", ""),
            model_name=model_name,
            backend_name=backend.get("name", ""),
            backend_weight=int(backend.get("weight", 100)),
            schema_name=schema.get("name", "OpenAI"),
        )


@dataclass
class BackendTrafficPolicy(Resource):
    """Envoy Gateway global rate limit attached to a published route."""

    KIND: ClassVar[ResourceKind] = ResourceKind(
        "gateway.envoyproxy.io/v1alpha1", "BackendTrafficPolicy", "backendtrafficpolicies"
    )

    target_kind: str = "HTTPRoute"
    target_name: str = ""
    target_namespace: str = ""
    requests_per_minute: int = 0
    requests_per_hour: Optional[int] = None
    tokens_per_hour: Optional[int] = None

    def _rules(self) -> List[Dict[str, Any]]:
        api_key_selector = [{
            "headers": [{"name": API_KEY_HEADER, "type": "RegularExpression", "value": ".*"}],
        }]
        rules = [{
            "clientSelectors": api_key_selector,
            "limit": {"requests": self.requests_per_minute, "unit": "Minute"},
        }]
        if self.requests_per_hour:
            rules.append({
                "clientSelectors": api_key_selector,
                "limit": {"requests": self.requests_per_hour, "unit": "Hour"},
            })
        if self.tokens_per_hour:
            rules.append({
                "clientSelectors": [{
                    "headers": [{"name": MODEL_TYPE_HEADER, "type": "Exact", "value": "openai"}],
                }],
                "limit": {"requests": self.tokens_per_hour, "unit": "Hour"},
            })
        return rules

    def to_k8s(self) -> Dict[str, Any]:
        return self._envelope({
            "targetRefs": [{
                "group": GATEWAY_API_GROUP,
                "kind": self.target_kind,
                "name": self.target_name,
                "namespace": self.target_namespace,
            }],
            "rateLimit": {"type": "Global", "global": {"rules": self._rules()}},
        })

    @classmethod
    def from_k8s(cls, body: Dict[str, Any]) -> "BackendTrafficPolicy":
        spec = dict(body.get("spec") or {})
        target = (spec.pop("targetRefs", None) or [{}])[0]
        rate_limit = spec.pop("rateLimit", None) or {}

        rpm, rph, tph = 0, None, None
        for rule in (rate_limit.get("global") or {}).get("rules") or []:
            limit = rule.get("limit") or {}
            header_names = {
                h.get("name")
                for selector in rule.get("clientSelectors") or []
                for h in selector.get("headers") or []
            }
            if MODEL_TYPE_HEADER in header_names:
                tph = limit.get("requests")
            elif limit.get("unit") == "Minute":
                rpm = limit.get("requests", 0)
            elif limit.get("unit") == "Hour":
                rph = limit.get("requests")

        return cls(
            **_metadata(body),
            extra=spec,
            target_kind=target.get("kind", "HTTPRoute"),
            target_name=target.get("name", ""),
            target_namespace=target.get("namespace", ""),
            requests_per_minute=rpm,
            requests_per_hour=rph,
            tokens_per_hour=tph,
        )


@dataclass
class Secret(Resource):
    """Opaque core/v1 Secret. ``data`` holds decoded strings."""

    KIND: ClassVar[ResourceKind] = ResourceKind("v1", "Secret", "secrets", core_name="secret")

    data: Dict[str, str] = field(default_factory=dict)
    type: str = "Opaque"

    def to_k8s(self) -> Dict[str, Any]:
        return {
            "apiVersion": self.KIND.api_version,
            "kind": self.KIND.kind,
            "metadata": self._k8s_metadata(),
            "type": self.type,
            "data": {
                key: base64.b64encode(value.encode("utf-8")).decode("ascii")
                for key, value in self.data.items()
            },
        }

    @classmethod
    def from_k8s(cls, body: Dict[str, Any]) -> "Secret":
        data = {
            key: base64.b64decode(value).decode("utf-8")
            for key, value in (body.get("data") or {}).items()
        }
        data.update(body.get("stringData") or {})
        return cls(**_metadata(body), data=data, type=body.get("type") or "Opaque")


@dataclass
class Backend(Resource):
    """Envoy Gateway backend resolving a model's KServe hostname by FQDN."""

    KIND: ClassVar[ResourceKind] = ResourceKind(
        "gateway.envoyproxy.io/v1alpha1", "Backend", "backends"
    )

    hostname: str = ""
    port: int = 80

    def to_k8s(self) -> Dict[str, Any]:
        return self._envelope({
            "endpoints": [{"fqdn": {"hostname": self.hostname, "port": self.port}}],
        })

    @classmethod
    def from_k8s(cls, body: Dict[str, Any]) -> "Backend":
        spec = dict(body.get("spec") or {})
        endpoint = (spec.pop("endpoints", None) or [{}])[0]
        fqdn = endpoint.get("fqdn") or {}
        return cls(
            **_metadata(body),
            extra=spec,
            hostname=fqdn.get("hostname", ""),
            port=int(fqdn.get("port", 80)),
        )


@dataclass
class AIServiceBackend(Resource):
    """AI Gateway backend that speaks the OpenAI schema through a Backend."""

    KIND: ClassVar[ResourceKind] = ResourceKind(
        "aigateway.envoyproxy.io/v1alpha1", "AIServiceBackend", "aiservicebackends"
    )

    backend_name: str = ""
    backend_namespace: str = ""
    schema_name: str = "OpenAI"
    request_timeout: str = "60s"

    def to_k8s(self) -> Dict[str, Any]:
        return self._envelope({
            "schema": {"name": self.schema_name},
            "backendRef": {
                "name": self.backend_name,
                "namespace": self.backend_namespace,
                "kind": "Backend",
                "group": "gateway.envoyproxy.io",
            },
            "timeouts": {"request": self.request_timeout},
        })

    @classmethod
    def from_k8s(cls, body: Dict[str, Any]) -> "AIServiceBackend":
        spec = dict(body.get("spec") or {})
        schema = spec.pop("schema", None) or {}
        ref = spec.pop("backendRef", None) or {}
        timeouts = spec.pop("timeouts", None) or {}
        return cls(
            **_metadata(body),
            extra=spec,
            backend_name=ref.get("name", ""),
            backend_namespace=ref.get("namespace", ""),
            schema_name=schema.get("name", "OpenAI"),
            request_timeout=timeouts.get("request", "60s"),
        )


@dataclass
class ReferenceGrant(Resource):
    """Lets AIServiceBackends in the gateway namespace reach the ingress Service."""

    KIND: ClassVar[ResourceKind] = ResourceKind(
        "gateway.networking.k8s.io/v1beta1", "ReferenceGrant", "referencegrants"
    )

    from_namespace: str = ""
    service_name: str = ""

    def to_k8s(self) -> Dict[str, Any]:
        return self._envelope({
            "from": [{
                "group": "aigateway.envoyproxy.io",
                "kind": "AIServiceBackend",
                "namespace": self.from_namespace,
            }],
            "to": [{"group": "", "kind": "Service", "name": self.service_name}],
        })

    @classmethod
    def from_k8s(cls, body: Dict[str, Any]) -> "ReferenceGrant":
        spec = dict(body.get("spec") or {})
        source = (spec.pop("from", None) or [{}])[0]
        target = (spec.pop("to", None) or [{}])[0]
        return cls(
            **_metadata(body),
            extra=spec,
            from_namespace=source.get("namespace", ""),
            service_name=target.get("name", ""),
        )
