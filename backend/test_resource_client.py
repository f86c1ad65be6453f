"""
Tests for the cluster Resource Client: CRUD, error translation, retries and
optimistic-concurrency updates.
"""
import pytest
from kubernetes.client.rest import ApiException
from unittest.mock import Mock
from urllib3.exceptions import MaxRetryError

from errors import AlreadyExists, ClusterError, ClusterUnavailable, Conflict, Invalid, NotFound
from resource_client import ResourceClient
from resources import BackendTrafficPolicy, HTTPRoute, InferenceService, Secret


def _isvc(name="iris", namespace="tenant-a"):
    return InferenceService(
        name=name,
        namespace=namespace,
        framework="sklearn",
        storage_uri="gs://models/iris",
    )


class TestCrud:
    """Basic operations against the in-memory cluster."""

    def test_create_then_get(self, resource_client):
        """Created resources come back with server-assigned metadata."""
        created = resource_client.create(_isvc())

        assert created.uid
        assert created.resource_version
        fetched = resource_client.get(InferenceService, "tenant-a", "iris")
        assert fetched.framework == "sklearn"
        assert fetched.storage_uri == "gs://models/iris"

    def test_get_missing_raises_not_found(self, resource_client):
        """A 404 becomes NotFound."""
        with pytest.raises(NotFound):
            resource_client.get(InferenceService, "tenant-a", "missing")

    def test_exists(self, resource_client):
        """exists() reports presence without raising."""
        assert resource_client.exists(InferenceService, "tenant-a", "iris") is False
        resource_client.create(_isvc())
        assert resource_client.exists(InferenceService, "tenant-a", "iris") is True

    def test_create_duplicate_raises_already_exists(self, resource_client):
        """A 409 on create becomes AlreadyExists."""
        resource_client.create(_isvc())
        with pytest.raises(AlreadyExists):
            resource_client.create(_isvc())

    def test_list_namespaced_and_cluster_wide(self, resource_client):
        """Listing without a namespace spans every namespace."""
        resource_client.create(_isvc("a", "tenant-a"))
        resource_client.create(_isvc("b", "tenant-b"))

        assert [m.name for m in resource_client.list(InferenceService, "tenant-a")] == ["a"]
        assert sorted(m.name for m in resource_client.list(InferenceService)) == ["a", "b"]

    def test_list_with_label_selector(self, resource_client):
        """Label selectors filter core resources too."""
        resource_client.create(Secret(name="s1", namespace="tenant-a", labels={"app": "published-model"}))
        resource_client.create(Secret(name="s2", namespace="tenant-b", labels={"app": "other"}))

        found = resource_client.list(Secret, None, "app=published-model")
        assert [s.name for s in found] == ["s1"]

    def test_secret_data_round_trips_base64(self, resource_client, cluster):
        """Secret data is base64 on the wire and plain text in the model."""
        resource_client.create(Secret(name="s1", namespace="tenant-a", data={"apiKey": "abc"}))

        stored = cluster.get_object("secrets", "tenant-a", "s1")
        assert stored["data"]["apiKey"] == "YWJj"
        assert resource_client.get(Secret, "tenant-a", "s1").data == {"apiKey": "abc"}

    def test_delete(self, resource_client):
        """Deleted resources are gone; deleting again is NotFound."""
        resource_client.create(_isvc())
        resource_client.delete(InferenceService, "tenant-a", "iris")

        assert resource_client.exists(InferenceService, "tenant-a", "iris") is False
        with pytest.raises(NotFound):
            resource_client.delete(InferenceService, "tenant-a", "iris")

    def test_replace_keeps_unknown_spec_keys(self, resource_client, cluster):
        """Keys this service does not model survive a replace."""
        route = HTTPRoute(name="r", namespace="gw", hostnames=["a.example.com"])
        resource_client.create(route)
        cluster.objects[("httproutes", "gw", "r")]["spec"]["timeouts"] = {"request": "10s"}

        current = resource_client.get(HTTPRoute, "gw", "r")
        current.hostnames = ["b.example.com"]
        resource_client.replace(current)

        stored = cluster.get_object("httproutes", "gw", "r")
        assert stored["spec"]["hostnames"] == ["b.example.com"]
        assert stored["spec"]["timeouts"] == {"request": "10s"}


class TestErrorTranslation:
    """Cluster status codes map onto the error taxonomy."""

    @pytest.mark.parametrize("status,expected", [
        (400, Invalid),
        (422, Invalid),
        (403, ClusterError),
        (429, ClusterUnavailable),
        (503, ClusterUnavailable),
    ])
    def test_status_mapping(self, resource_client, cluster, status, expected):
        """Each status becomes the matching error type."""
        cluster.fail("get", "inferenceservices", status=status)
        with pytest.raises(expected):
            resource_client.get(InferenceService, "tenant-a", "iris")

    def test_conflict_on_replace(self, resource_client):
        """A stale resourceVersion on replace is a Conflict."""
        created = resource_client.create(_isvc())
        resource_client.replace(created)

        with pytest.raises(Conflict):
            resource_client.replace(created)


class TestRetry:
    """Only unavailability is retried."""

    def test_retries_then_succeeds(self, cluster):
        """Transient 503s are retried with exponential backoff."""
        sleeps = []
        client = ResourceClient(cluster.custom, cluster.core, retry_attempts=3,
                                retry_backoff=0.5, sleep=sleeps.append)
        client.create(_isvc())
        cluster.fail("get", "inferenceservices", status=503, times=2)

        assert client.get(InferenceService, "tenant-a", "iris").name == "iris"
        assert sleeps == [0.5, 1.0]

    def test_gives_up_after_attempts(self, cluster):
        """A persistent outage surfaces as ClusterUnavailable."""
        client = ResourceClient(cluster.custom, cluster.core, retry_attempts=2, sleep=lambda s: None)
        cluster.fail("list", "inferenceservices", status=500)

        with pytest.raises(ClusterUnavailable):
            client.list(InferenceService, "tenant-a")
        assert cluster.calls.count(("list", "inferenceservices")) == 2

    def test_create_applied_before_lost_reply(self, cluster):
        """A create stored before its reply was lost counts as created."""
        client = ResourceClient(cluster.custom, cluster.core, retry_attempts=3, sleep=lambda s: None)
        cluster.lose_reply("inferenceservices")

        created = client.create(_isvc())

        assert created.uid == cluster.get_object("inferenceservices", "tenant-a", "iris")["metadata"]["uid"]
        assert cluster.calls.count(("create", "inferenceservices")) == 2

    def test_retry_conflict_with_foreign_object(self, cluster):
        """A name taken by someone else's object stays AlreadyExists after a retry."""
        client = ResourceClient(cluster.custom, cluster.core, retry_attempts=3, sleep=lambda s: None)
        client.create(_isvc())
        cluster.fail("create", "inferenceservices", status=503, times=1)

        with pytest.raises(AlreadyExists):
            client.create(_isvc())

    def test_not_found_is_not_retried(self, cluster):
        """Definitive answers are returned immediately."""
        client = ResourceClient(cluster.custom, cluster.core, retry_attempts=3, sleep=lambda s: None)
        with pytest.raises(NotFound):
            client.get(InferenceService, "tenant-a", "missing")
        assert cluster.calls.count(("get", "inferenceservices")) == 1

    def test_transport_error_is_unavailable(self):
        """Connection failures below the API layer are retried as unavailability."""
        custom = Mock()
        custom.get_namespaced_custom_object.side_effect = MaxRetryError(None, "/apis", "refused")
        client = ResourceClient(custom, Mock(), retry_attempts=2, sleep=lambda s: None)

        with pytest.raises(ClusterUnavailable):
            client.get(BackendTrafficPolicy, "gw", "p")
        assert custom.get_namespaced_custom_object.call_count == 2

    def test_api_exception_message_from_body(self):
        """The cluster's message is carried into the error."""
        error = ApiException(status=422, reason="Unprocessable Entity")
        error.body = '{"message": "spec.predictor: Required value"}'
        custom = Mock()
        custom.create_namespaced_custom_object.side_effect = error
        client = ResourceClient(custom, Mock(), sleep=lambda s: None)

        with pytest.raises(Invalid) as exc_info:
            client.create(_isvc())
        assert "spec.predictor: Required value" in exc_info.value.message


class TestUpdate:
    """Read-modify-write with conflict retry."""

    def test_update_applies_mutation(self, resource_client):
        """The mutation result is written back."""
        resource_client.create(_isvc())

        def scale(isvc):
            isvc.max_replicas = 7
            return isvc

        updated = resource_client.update(InferenceService, "tenant-a", "iris", scale)
        assert updated.max_replicas == 7

    def test_update_refetches_on_conflict(self, resource_client, cluster):
        """A concurrent write triggers a re-fetch and the mutation is reapplied."""
        resource_client.create(_isvc())
        seen = []

        def mutate(isvc):
            seen.append(isvc.resource_version)
            if len(seen) == 1:
                # Another writer sneaks in between our read and write
                other = resource_client.get(InferenceService, "tenant-a", "iris")
                other.min_replicas = 2
                resource_client.replace(other)
            isvc.max_replicas = 5
            return isvc

        updated = resource_client.update(InferenceService, "tenant-a", "iris", mutate)

        assert len(seen) == 2
        assert updated.max_replicas == 5
        assert updated.min_replicas == 2

    def test_update_gives_up_after_conflict_attempts(self, cluster):
        """Persistent conflicts surface as Conflict."""
        client = ResourceClient(cluster.custom, cluster.core, conflict_attempts=2, sleep=lambda s: None)
        client.create(_isvc())
        cluster.fail("replace", "inferenceservices", status=409)

        with pytest.raises(Conflict):
            client.update(InferenceService, "tenant-a", "iris", lambda isvc: isvc)
        assert cluster.calls.count(("replace", "inferenceservices")) == 2


class TestPodLogs:
    """Predictor log retrieval."""

    def test_reads_tail_of_first_pod(self, resource_client, cluster):
        """The last N non-empty lines are returned."""
        cluster.add_pod("tenant-a", "iris-predictor-0", {"app": "iris"}, logs="one\ntwo\n\nthree\nfour")

        lines = resource_client.read_pod_logs("tenant-a", "app=iris", 4)
        assert lines == ["two", "three", "four"]

    def test_no_pods_is_not_found(self, resource_client):
        """A model without pods has no logs."""
        with pytest.raises(NotFound):
            resource_client.read_pod_logs("tenant-a", "app=iris", 10)
