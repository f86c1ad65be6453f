"""
Model Registry Adapter
======================

Translates between the API's model descriptors and KServe InferenceService
resources. Readiness and the external URL are projections of the resource
status and are never accepted on input.

References:
- KServe InferenceService: https://kserve.github.io/website/latest/modelserving/v1beta1/serving_runtime/
- KServe autoscaling: https://kserve.github.io/website/latest/modelserving/autoscaling/autoscaling/
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from config import Settings
from errors import ValidationError
from logger import get_logger
from resource_client import ResourceClient
from resources import InferenceService

logger = get_logger(__name__)

MODEL_TYPE_ANNOTATION = "inference.management/model-type"
PREDICTOR_POD_SELECTOR = "serving.kserve.io/inferenceservice={name}"
DNS_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


class ModelType(str, Enum):
    """Interface a model exposes. Fixed at creation time."""
    TRADITIONAL = "traditional"
    OPENAI = "openai"


@dataclass
class ModelSpec:
    """Input for creating a model. Unset scaling fields take configured defaults."""
    name: str
    framework: str
    storage_uri: str
    min_replicas: Optional[int] = None
    max_replicas: Optional[int] = None
    scale_target: Optional[int] = None
    scale_metric: Optional[str] = None
    model_type: ModelType = ModelType.TRADITIONAL


@dataclass
class ModelUpdate:
    """Partial update. Fields left as None keep their current value."""
    framework: Optional[str] = None
    storage_uri: Optional[str] = None
    min_replicas: Optional[int] = None
    max_replicas: Optional[int] = None
    scale_target: Optional[int] = None
    scale_metric: Optional[str] = None


@dataclass
class ModelDescriptor:
    """One deployed inference model as seen by API clients."""
    name: str
    namespace: str
    framework: str
    storage_uri: str
    min_replicas: int
    max_replicas: int
    scale_target: int
    scale_metric: str
    model_type: ModelType
    ready: bool = False
    external_url: str = ""
    created_at: Optional[str] = None

    @classmethod
    def from_resource(cls, isvc: InferenceService) -> "ModelDescriptor":
        raw_type = isvc.annotations.get(MODEL_TYPE_ANNOTATION, ModelType.TRADITIONAL.value)
        try:
            model_type = ModelType(raw_type)
        except ValueError:
            model_type = ModelType.TRADITIONAL
        return cls(
            name=isvc.name,
            namespace=isvc.namespace,
            framework=isvc.framework,
            storage_uri=isvc.storage_uri,
            min_replicas=isvc.min_replicas,
            max_replicas=isvc.max_replicas,
            scale_target=isvc.scale_target,
            scale_metric=isvc.scale_metric,
            model_type=model_type,
            ready=isvc.ready,
            external_url=isvc.url,
            created_at=isvc.created_at,
        )

    def config_dict(self) -> Dict[str, Any]:
        return {
            "framework": self.framework,
            "storageUri": self.storage_uri,
            "minReplicas": self.min_replicas,
            "maxReplicas": self.max_replicas,
            "scaleTarget": self.scale_target,
            "scaleMetric": self.scale_metric,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "namespace": self.namespace,
            **self.config_dict(),
            "modelType": self.model_type.value,
            "ready": self.ready,
            "status": "Ready" if self.ready else "Not Ready",
            "url": self.external_url,
            "createdAt": self.created_at,
        }


class ModelRegistry:
    """
    Model lifecycle operations on top of the Resource Client.

    Args:
        resource_client: Cluster access
        settings: Supplies the supported frameworks and scaling defaults
    """

    def __init__(self, resource_client: ResourceClient, settings: Settings):
        self.client = resource_client
        self.frameworks: Dict[str, str] = dict(settings.SUPPORTED_FRAMEWORKS)
        self.default_min_replicas = settings.DEFAULT_MIN_REPLICAS
        self.default_max_replicas = settings.DEFAULT_MAX_REPLICAS
        self.default_scale_target = settings.DEFAULT_SCALE_TARGET
        self.default_scale_metric = settings.DEFAULT_SCALE_METRIC

    def list_frameworks(self) -> List[Dict[str, str]]:
        return [{"name": name, "description": desc} for name, desc in self.frameworks.items()]

    def _validate(
        self,
        framework: str,
        storage_uri: str,
        min_replicas: int,
        max_replicas: int,
        scale_target: int,
    ) -> None:
        if not framework:
            raise ValidationError("framework is required")
        if framework not in self.frameworks:
            raise ValidationError(
                f"Unsupported framework: {framework}",
                details={"supported": sorted(self.frameworks)},
            )
        if not storage_uri:
            raise ValidationError("storageUri is required")
        if min_replicas < 0 or max_replicas < 0:
            raise ValidationError("minReplicas and maxReplicas must be non-negative")
        if min_replicas > max_replicas:
            raise ValidationError(
                f"minReplicas ({min_replicas}) must not exceed maxReplicas ({max_replicas})"
            )
        if scale_target <= 0:
            raise ValidationError("scaleTarget must be positive")

    def list_models(self, namespace: Optional[str]) -> List[ModelDescriptor]:
        """List models in ``namespace``, or in every namespace when None."""
        return [
            ModelDescriptor.from_resource(isvc)
            for isvc in self.client.list(InferenceService, namespace)
        ]

    def get_model(self, namespace: str, name: str) -> ModelDescriptor:
        return ModelDescriptor.from_resource(self.client.get(InferenceService, namespace, name))

    def create_model(self, namespace: str, spec: ModelSpec) -> ModelDescriptor:
        """
        Validate ``spec`` and create its InferenceService.

        Raises:
            ValidationError: Bad input. Nothing is sent to the cluster.
            AlreadyExists: A model with this name exists in the namespace.
        """
        if not spec.name:
            raise ValidationError("name is required")
        if len(spec.name) > 63 or not DNS_LABEL.match(spec.name):
            raise ValidationError(
                "name must be a lowercase RFC 1123 label (a-z, 0-9, '-', at most 63 characters)"
            )

        isvc = InferenceService(
            name=spec.name,
            namespace=namespace,
            annotations={MODEL_TYPE_ANNOTATION: spec.model_type.value},
            framework=spec.framework,
            storage_uri=spec.storage_uri,
            min_replicas=self.default_min_replicas if spec.min_replicas is None else spec.min_replicas,
            max_replicas=self.default_max_replicas if spec.max_replicas is None else spec.max_replicas,
            scale_target=self.default_scale_target if spec.scale_target is None else spec.scale_target,
            scale_metric=spec.scale_metric or self.default_scale_metric,
        )
        self._validate(isvc.framework, isvc.storage_uri, isvc.min_replicas,
                       isvc.max_replicas, isvc.scale_target)

        created = self.client.create(isvc)
        logger.info(f"Created model {namespace}/{spec.name} ({spec.framework}, {spec.model_type.value})")
        return ModelDescriptor.from_resource(created)

    def update_model(self, namespace: str, name: str, changes: ModelUpdate) -> ModelDescriptor:
        """
        Merge ``changes`` into the current model and write it back.

        The merged result is validated before anything is written. A
        concurrent writer causes a re-fetch and re-merge, never an overwrite.
        """
        def apply(isvc: InferenceService) -> InferenceService:
            if changes.framework and changes.framework != isvc.framework:
                isvc.framework = changes.framework
                isvc.framework_options = {}
            if changes.storage_uri:
                isvc.storage_uri = changes.storage_uri
            if changes.min_replicas is not None:
                isvc.min_replicas = changes.min_replicas
            if changes.max_replicas is not None:
                isvc.max_replicas = changes.max_replicas
            if changes.scale_target is not None:
                isvc.scale_target = changes.scale_target
            if changes.scale_metric:
                isvc.scale_metric = changes.scale_metric
            self._validate(isvc.framework, isvc.storage_uri, isvc.min_replicas,
                           isvc.max_replicas, isvc.scale_target)
            return isvc

        updated = self.client.update(InferenceService, namespace, name, apply)
        logger.info(f"Updated model {namespace}/{name}")
        return ModelDescriptor.from_resource(updated)

    def delete_model(self, namespace: str, name: str) -> None:
        self.client.delete(InferenceService, namespace, name)
        logger.info(f"Deleted model {namespace}/{name}")

    def get_logs(self, namespace: str, name: str, lines: int = 100) -> List[str]:
        """Recent log lines of the model's predictor pod."""
        return self.client.read_pod_logs(
            namespace, PREDICTOR_POD_SELECTOR.format(name=name), lines
        )
