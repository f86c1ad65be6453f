"""
Resource Client
===============

The control plane's only point of contact with the cluster API. Wraps the
``kubernetes`` client's CustomObjectsApi and CoreV1Api behind typed CRUD
operations on the classes in ``resources``.

Error contract (each call raises one of these or returns the resource):
- NotFound            -> 404 from the cluster
- AlreadyExists       -> 409 on create
- Conflict            -> 409 on replace (stale resourceVersion)
- Invalid             -> 400/422, the cluster rejected the body
- ClusterUnavailable  -> 429/5xx or a transport failure

Only ClusterUnavailable is retried here, a bounded number of times with
exponential backoff. Stale-resourceVersion conflicts are handled by
``update``, which re-fetches and reapplies the caller's mutation.

A create whose reply is lost may still have been stored. Every create
carries a fresh token annotation, so a 409 on the retry is recognised as
our own write and returned as a success.

References:
- kubernetes-client/python: https://github.com/kubernetes-client/python
- Optimistic concurrency: https://kubernetes.io/docs/reference/using-api/api-concepts/#resource-versions
"""

import json
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError as TransportError

from config import Settings
from errors import (
    AlreadyExists,
    APIError,
    ClusterError,
    ClusterUnavailable,
    Conflict,
    Invalid,
    NotFound,
)
from logger import get_logger
from resources import Resource

logger = get_logger(__name__)

R = TypeVar("R", bound=Resource)

CREATE_TOKEN_ANNOTATION = "inference.management/create-token"


def _api_message(e: ApiException) -> str:
    """Extract the cluster's human-readable message from an ApiException."""
    try:
        body = json.loads(e.body) if e.body else {}
    except (TypeError, ValueError):
        return e.reason or str(e.status)
    return body.get("message") or e.reason or str(e.status)


class ResourceClient:
    """
    Typed CRUD over the cluster resource families used by the control plane.

    Args:
        custom_api: kubernetes CustomObjectsApi (or a compatible double)
        core_api: kubernetes CoreV1Api (or a compatible double)
        retry_attempts: Total attempts for calls failing with ClusterUnavailable
        retry_backoff: Initial backoff in seconds, doubled after each attempt
        conflict_attempts: Re-fetch/reapply rounds for ``update``
        sleep: Sleep function, replaceable in tests
    """

    def __init__(
        self,
        custom_api: Any,
        core_api: Any,
        retry_attempts: int = 3,
        retry_backoff: float = 0.5,
        conflict_attempts: int = 3,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._custom = custom_api
        self._core = core_api
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff = retry_backoff
        self.conflict_attempts = max(1, conflict_attempts)
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings) -> "ResourceClient":
        """Build a client from in-cluster credentials, falling back to kubeconfig."""
        try:
            config.load_incluster_config()
            logger.info("Using in-cluster Kubernetes configuration")
        except config.ConfigException:
            config.load_kube_config(config_file=settings.KUBECONFIG_PATH)
            logger.info("Using kubeconfig Kubernetes configuration")

        return cls(
            client.CustomObjectsApi(),
            client.CoreV1Api(),
            retry_attempts=settings.CLUSTER_RETRY_ATTEMPTS,
            retry_backoff=settings.CLUSTER_RETRY_BACKOFF,
            conflict_attempts=settings.CONFLICT_RETRY_ATTEMPTS,
        )

    # ------------------------------------------------------------------
    # Error translation and retry
    # ------------------------------------------------------------------

    @staticmethod
    def _translate(e: ApiException, action: str, target: str) -> APIError:
        message = _api_message(e)
        status = e.status or 0

        if status == 404:
            return NotFound(f"{target} not found")
        if status == 409:
            if action == "create":
                return AlreadyExists(f"{target} already exists")
            return Conflict(f"{target} was modified concurrently: {message}")
        if status in (400, 422):
            return Invalid(f"Cluster rejected {target}: {message}")
        if status == 0 or status == 429 or status >= 500:
            return ClusterUnavailable(f"Cluster API unavailable while trying to {action} {target}: {message}")
        return ClusterError(f"Failed to {action} {target}: {message}", details={"status": status})

    def _call(
        self,
        action: str,
        target: str,
        fn: Callable[..., Any],
        recover: Optional[Callable[[APIError], Any]] = None,
        **kwargs,
    ) -> Any:
        """
        Run ``fn`` with retries on unavailability.

        ``recover`` is consulted when a definitive error follows an
        unavailable attempt, i.e. when an earlier attempt may have been
        applied. It returns a result or re-raises.
        """
        unavailable_seen = False
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return fn(**kwargs)
            except ApiException as e:
                error = self._translate(e, action, target)
                cause: Exception = e
            except TransportError as e:
                error = ClusterUnavailable(f"Cluster API unreachable while trying to {action} {target}: {e}")
                cause = e

            if not isinstance(error, ClusterUnavailable):
                if unavailable_seen and recover is not None:
                    return recover(error)
                raise error from cause
            if attempt == self.retry_attempts:
                raise error from cause

            unavailable_seen = True

            delay = self.retry_backoff * (2 ** (attempt - 1))
            logger.warning(
                f"Cluster unavailable on {action} {target} "
                f"(attempt {attempt}/{self.retry_attempts}), retrying in {delay:.2f}s"
            )
            self._sleep(delay)

    def _to_dict(self, obj: Any) -> Dict[str, Any]:
        # CoreV1Api returns model objects; custom objects are already dicts
        if isinstance(obj, dict):
            return obj
        return self._core.api_client.sanitize_for_serialization(obj)

    @staticmethod
    def _target(resource_cls: Type[Resource], namespace: Optional[str], name: Optional[str] = None) -> str:
        parts = [resource_cls.KIND.kind, namespace or "*"]
        if name:
            parts.append(name)
        return "/".join(parts)

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def _read(self, resource_cls: Type[Resource], namespace: str, name: str) -> Dict[str, Any]:
        kind = resource_cls.KIND
        target = self._target(resource_cls, namespace, name)
        if kind.core:
            fn = getattr(self._core, f"read_namespaced_{kind.core_name}")
            body = self._call("get", target, fn, name=name, namespace=namespace)
        else:
            body = self._call(
                "get", target, self._custom.get_namespaced_custom_object,
                group=kind.group, version=kind.version, namespace=namespace,
                plural=kind.plural, name=name,
            )
        return self._to_dict(body)

    def get(self, resource_cls: Type[R], namespace: str, name: str) -> R:
        """Fetch one resource or raise NotFound."""
        return resource_cls.from_k8s(self._read(resource_cls, namespace, name))

    def exists(self, resource_cls: Type[Resource], namespace: str, name: str) -> bool:
        try:
            self.get(resource_cls, namespace, name)
        except NotFound:
            return False
        return True

    def list(
        self,
        resource_cls: Type[R],
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> List[R]:
        """
        List resources in one namespace, or across all namespaces when
        ``namespace`` is None.
        """
        kind = resource_cls.KIND
        target = self._target(resource_cls, namespace)
        kwargs: Dict[str, Any] = {}
        if label_selector:
            kwargs["label_selector"] = label_selector

        if kind.core:
            if namespace:
                fn = getattr(self._core, f"list_namespaced_{kind.core_name}")
                kwargs["namespace"] = namespace
            else:
                fn = getattr(self._core, f"list_{kind.core_name}_for_all_namespaces")
            body = self._call("list", target, fn, **kwargs)
        elif namespace:
            body = self._call(
                "list", target, self._custom.list_namespaced_custom_object,
                group=kind.group, version=kind.version, namespace=namespace,
                plural=kind.plural, **kwargs,
            )
        else:
            body = self._call(
                "list", target, self._custom.list_cluster_custom_object,
                group=kind.group, version=kind.version, plural=kind.plural, **kwargs,
            )

        items = self._to_dict(body).get("items") or []
        return [resource_cls.from_k8s(self._to_dict(item)) for item in items]

    def create(self, resource: R) -> R:
        """Create a resource. Raises AlreadyExists if the name is taken."""
        kind = resource.KIND
        target = resource.ref
        token = uuid.uuid4().hex
        manifest = resource.to_k8s()
        manifest["metadata"].setdefault("annotations", {})[CREATE_TOKEN_ANNOTATION] = token

        def recover(error: APIError) -> Dict[str, Any]:
            if not isinstance(error, AlreadyExists):
                raise error
            existing = self._read(type(resource), resource.namespace, resource.name)
            annotations = (existing.get("metadata") or {}).get("annotations") or {}
            if annotations.get(CREATE_TOKEN_ANNOTATION) != token:
                raise error
            logger.warning(f"Create of {target} was applied before the connection dropped")
            return existing

        if kind.core:
            fn = getattr(self._core, f"create_namespaced_{kind.core_name}")
            body = self._call("create", target, fn, recover=recover, namespace=resource.namespace, body=manifest)
        else:
            body = self._call(
                "create", target, self._custom.create_namespaced_custom_object, recover=recover,
                group=kind.group, version=kind.version, namespace=resource.namespace,
                plural=kind.plural, body=manifest,
            )
        logger.info(f"Created {target}")
        return type(resource).from_k8s(self._to_dict(body))

    def replace(self, resource: R) -> R:
        """
        Replace a resource. When ``resource.resource_version`` is set the
        cluster rejects stale writes with Conflict.
        """
        kind = resource.KIND
        target = resource.ref
        if kind.core:
            fn = getattr(self._core, f"replace_namespaced_{kind.core_name}")
            body = self._call(
                "replace", target, fn,
                name=resource.name, namespace=resource.namespace, body=resource.to_k8s(),
            )
        else:
            body = self._call(
                "replace", target, self._custom.replace_namespaced_custom_object,
                group=kind.group, version=kind.version, namespace=resource.namespace,
                plural=kind.plural, name=resource.name, body=resource.to_k8s(),
            )
        logger.info(f"Replaced {target}")
        return type(resource).from_k8s(self._to_dict(body))

    def update(
        self,
        resource_cls: Type[R],
        namespace: str,
        name: str,
        mutate: Callable[[R], R],
    ) -> R:
        """
        Read-modify-write with optimistic concurrency.

        ``mutate`` receives the current resource and returns the desired one.
        It may raise to abort before anything is written. On a stale
        resourceVersion the resource is re-fetched and ``mutate`` reapplied.
        """
        for attempt in range(1, self.conflict_attempts + 1):
            current = self.get(resource_cls, namespace, name)
            version = current.resource_version
            desired = mutate(current)
            desired.resource_version = version
            try:
                return self.replace(desired)
            except Conflict:
                if attempt == self.conflict_attempts:
                    raise
                logger.info(
                    f"resourceVersion conflict on {desired.ref} "
                    f"(attempt {attempt}/{self.conflict_attempts}), re-fetching"
                )

    def delete(self, resource_cls: Type[Resource], namespace: str, name: str) -> None:
        """Delete a resource. NotFound is raised, not swallowed."""
        kind = resource_cls.KIND
        target = self._target(resource_cls, namespace, name)
        if kind.core:
            fn = getattr(self._core, f"delete_namespaced_{kind.core_name}")
            self._call("delete", target, fn, name=name, namespace=namespace)
        else:
            self._call(
                "delete", target, self._custom.delete_namespaced_custom_object,
                group=kind.group, version=kind.version, namespace=namespace,
                plural=kind.plural, name=name,
            )
        logger.info(f"Deleted {target}")

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    def read_pod_logs(self, namespace: str, label_selector: str, lines: int) -> List[str]:
        """
        Return the last ``lines`` non-empty log lines of the first pod
        matching ``label_selector``.
        """
        target = f"Pod/{namespace}/{label_selector}"
        pods = self._to_dict(self._call(
            "list", target, self._core.list_namespaced_pod,
            namespace=namespace, label_selector=label_selector,
        ))
        items = pods.get("items") or []
        if not items:
            raise NotFound(f"No pods found for {label_selector} in {namespace}")

        pod_name = items[0]["metadata"]["name"]
        text = self._call(
            "read logs of", f"Pod/{namespace}/{pod_name}", self._core.read_namespaced_pod_log,
            name=pod_name, namespace=namespace, tail_lines=lines,
        )
        return [line for line in (text or "").splitlines() if line.strip()]
