"""
Shared fixtures: an in-memory cluster and signed tenant tokens.

The fake implements the subset of ``CustomObjectsApi``/``CoreV1Api`` the
ResourceClient calls, keyed by plural. It raises real ``ApiException``s, so
the production error translation and retry code runs unchanged.
"""
import copy
import sys
import time
import uuid
from pathlib import Path
from unittest.mock import Mock

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from kubernetes.client.rest import ApiException

sys.path.insert(0, str(Path(__file__).parent))

from config import settings

# Override settings for testing, before any module builds the limiter
settings.RATE_LIMIT_ENABLED = False
settings.RATE_LIMIT_PER_MINUTE = "10000/minute"
settings.ALLOWED_ORIGINS = ["*"]

from auth import TokenVerifier
from model_registry import ModelRegistry
from publishing import PublishingOrchestrator
from resource_client import ResourceClient


def _matches(labels, selector):
    if not selector:
        return True
    for term in selector.split(","):
        key, _, value = term.partition("=")
        if labels.get(key.strip()) != value.strip():
            return False
    return True


class FakeCluster:
    """In-memory object store shared by the two fake API objects."""

    def __init__(self):
        self.objects = {}
        self.pods = {}
        self.pod_logs = {}
        self.failures = {}
        self.lost_replies = {}
        self.calls = []
        self._version = 0
        self.custom = FakeCustomObjectsApi(self)
        self.core = FakeCoreV1Api(self)

    # Failure injection

    def fail(self, verb, plural, status=500, times=None):
        """Make ``verb`` on ``plural`` raise ``status``; ``times=None`` means always."""
        self.failures[(verb, plural)] = [status, times]

    def _check_failure(self, verb, plural):
        self.calls.append((verb, plural))
        entry = self.failures.get((verb, plural))
        if not entry:
            return
        status, times = entry
        if times is not None:
            if times <= 0:
                return
            entry[1] = times - 1
        raise ApiException(status=status, reason="Injected failure")

    def lose_reply(self, plural, status=503, times=1):
        """Apply the next ``times`` creates of ``plural``, then fail them with ``status``."""
        self.lost_replies[plural] = [status, times]

    # Store

    def _next_version(self):
        self._version += 1
        return str(self._version)

    def create(self, plural, namespace, body):
        self._check_failure("create", plural)
        name = body["metadata"]["name"]
        key = (plural, namespace, name)
        if key in self.objects:
            raise ApiException(status=409, reason="AlreadyExists")
        stored = copy.deepcopy(body)
        meta = stored["metadata"]
        meta["namespace"] = namespace
        meta["uid"] = str(uuid.uuid4())
        meta["resourceVersion"] = self._next_version()
        meta["creationTimestamp"] = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
        self.objects[key] = stored
        lost = self.lost_replies.get(plural)
        if lost and lost[1] > 0:
            lost[1] -= 1
            raise ApiException(status=lost[0], reason="Reply lost")
        return copy.deepcopy(stored)

    def read(self, plural, namespace, name):
        self._check_failure("get", plural)
        try:
            return copy.deepcopy(self.objects[(plural, namespace, name)])
        except KeyError:
            raise ApiException(status=404, reason="NotFound")

    def replace(self, plural, namespace, name, body):
        self._check_failure("replace", plural)
        key = (plural, namespace, name)
        if key not in self.objects:
            raise ApiException(status=404, reason="NotFound")
        current = self.objects[key]
        requested = body["metadata"].get("resourceVersion")
        if requested and requested != current["metadata"]["resourceVersion"]:
            raise ApiException(status=409, reason="Conflict")
        stored = copy.deepcopy(body)
        meta = stored["metadata"]
        meta["namespace"] = namespace
        meta["uid"] = current["metadata"]["uid"]
        meta["creationTimestamp"] = current["metadata"]["creationTimestamp"]
        meta["resourceVersion"] = self._next_version()
        if "status" in current:
            stored["status"] = current["status"]
        self.objects[key] = stored
        return copy.deepcopy(stored)

    def delete(self, plural, namespace, name):
        self._check_failure("delete", plural)
        try:
            del self.objects[(plural, namespace, name)]
        except KeyError:
            raise ApiException(status=404, reason="NotFound")
        return {"status": "Success"}

    def list(self, plural, namespace=None, label_selector=None):
        self._check_failure("list", plural)
        items = [
            copy.deepcopy(obj)
            for (p, ns, _), obj in sorted(self.objects.items())
            if p == plural
            and (namespace is None or ns == namespace)
            and _matches(obj["metadata"].get("labels") or {}, label_selector)
        ]
        return {"items": items}

    # Helpers for tests

    def get_object(self, plural, namespace, name):
        return self.objects.get((plural, namespace, name))

    def set_ready(self, namespace, name, url=None, ready=True):
        obj = self.objects[("inferenceservices", namespace, name)]
        obj["status"] = {
            "url": url if url is not None else f"http://{name}.{namespace}.example.com",
            "conditions": [{"type": "Ready", "status": "True" if ready else "False"}],
        }

    def add_pod(self, namespace, name, labels, logs=""):
        self.pods.setdefault(namespace, []).append({"metadata": {"name": name, "labels": labels}})
        self.pod_logs[(namespace, name)] = logs


class FakeCustomObjectsApi:

    def __init__(self, cluster):
        self.cluster = cluster

    def get_namespaced_custom_object(self, group, version, namespace, plural, name):
        return self.cluster.read(plural, namespace, name)

    def list_namespaced_custom_object(self, group, version, namespace, plural, label_selector=None):
        return self.cluster.list(plural, namespace, label_selector)

    def list_cluster_custom_object(self, group, version, plural, label_selector=None):
        return self.cluster.list(plural, None, label_selector)

    def create_namespaced_custom_object(self, group, version, namespace, plural, body):
        return self.cluster.create(plural, namespace, body)

    def replace_namespaced_custom_object(self, group, version, namespace, plural, name, body):
        return self.cluster.replace(plural, namespace, name, body)

    def delete_namespaced_custom_object(self, group, version, namespace, plural, name):
        return self.cluster.delete(plural, namespace, name)


class FakeCoreV1Api:

    def __init__(self, cluster):
        self.cluster = cluster
        self.api_client = Mock()

    def read_namespaced_secret(self, name, namespace):
        return self.cluster.read("secrets", namespace, name)

    def list_namespaced_secret(self, namespace, label_selector=None):
        return self.cluster.list("secrets", namespace, label_selector)

    def list_secret_for_all_namespaces(self, label_selector=None):
        return self.cluster.list("secrets", None, label_selector)

    def create_namespaced_secret(self, namespace, body):
        return self.cluster.create("secrets", namespace, body)

    def replace_namespaced_secret(self, name, namespace, body):
        return self.cluster.replace("secrets", namespace, name, body)

    def delete_namespaced_secret(self, name, namespace):
        return self.cluster.delete("secrets", namespace, name)

    def list_namespaced_pod(self, namespace, label_selector=None):
        self.cluster._check_failure("list", "pods")
        pods = [
            copy.deepcopy(p) for p in self.cluster.pods.get(namespace, [])
            if _matches(p["metadata"]["labels"], label_selector)
        ]
        return {"items": pods}

    def read_namespaced_pod_log(self, name, namespace, tail_lines=None):
        self.cluster._check_failure("get", "pods/log")
        text = self.cluster.pod_logs.get((namespace, name))
        if text is None:
            raise ApiException(status=404, reason="NotFound")
        lines = text.splitlines()
        if tail_lines is not None:
            lines = lines[-tail_lines:]
        return "\n".join(lines)


# ==============================================================================
# Fixtures
# ==============================================================================

@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def resource_client(cluster):
    return ResourceClient(cluster.custom, cluster.core, sleep=lambda s: None)


@pytest.fixture
def registry(resource_client):
    return ModelRegistry(resource_client, settings)


@pytest.fixture
def publisher(resource_client, registry):
    return PublishingOrchestrator(resource_client, registry, settings)


@pytest.fixture
def ready_model(cluster, registry):
    """Create ``tenant-a/sklearn-iris`` and mark it ready."""
    from model_registry import ModelSpec

    def _make(name="sklearn-iris", namespace="tenant-a", model_type=None, url=None):
        spec = ModelSpec(name=name, framework="sklearn", storage_uri="gs://models/iris")
        if model_type is not None:
            spec.model_type = model_type
        registry.create_model(namespace, spec)
        cluster.set_ready(namespace, name, url=url)
        return registry.get_model(namespace, name)

    return _make


@pytest.fixture(scope="session")
def signing_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def token_verifier(signing_key):
    jwks_client = Mock()
    jwks_client.get_signing_key_from_jwt.return_value = Mock(key=signing_key.public_key())
    return TokenVerifier(
        jwks_url="http://jwks.test/.well-known/jwks.json",
        algorithms=["RS256"],
        admin_tenants=["admin"],
        jwks_client=jwks_client,
    )


@pytest.fixture
def make_token(signing_key):
    """Build a signed bearer token for a tenant."""

    def _make(tenant="tenant-a", subject="user-1", expires_in=3600, **claims):
        payload = {"sub": subject, "exp": int(time.time()) + expires_in, **claims}
        if tenant is not None:
            payload["tenant"] = tenant
        return jwt.encode(payload, signing_key, algorithm="RS256")

    return _make
