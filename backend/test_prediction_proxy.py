"""
Tests for the prediction proxy. Outbound calls go to an httpx.MockTransport.
"""
import asyncio
import json
import time

import httpx
import pytest

from errors import BackendError, ModelNotReady, NotFound, ProxyError, ValidationError
from prediction_proxy import (
    ConnectionSettings,
    DNSResolve,
    HeaderSetting,
    PredictionProxy,
    build_headers,
    parse_dns_overrides,
)


class Recorder:
    """Stub dialer that records requests and answers with a canned response."""

    def __init__(self, status_code=200, body=None, text=None, error=None):
        self.requests = []
        self.status_code = status_code
        self.body = body if body is not None else {"predictions": [1]}
        self.text = text
        self.error = error

    def __call__(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if self.text is not None:
            return httpx.Response(self.status_code, text=self.text)
        return httpx.Response(self.status_code, json=self.body)


class TrickleStream(httpx.AsyncByteStream):
    """Response body that arrives one byte at a time."""

    def __init__(self, body, delay):
        self.body = body
        self.delay = delay

    async def __aiter__(self):
        for byte in self.body:
            await asyncio.sleep(self.delay)
            yield bytes([byte])


class TrickleTransport(httpx.AsyncBaseTransport):

    def __init__(self, body, delay):
        self.body = body
        self.delay = delay

    async def handle_async_request(self, request):
        return httpx.Response(
            200,
            headers={"Content-Type": "application/json"},
            stream=TrickleStream(self.body, self.delay),
        )


def _proxy(registry, recorder):
    return PredictionProxy(registry, timeout=5.0, transport=httpx.MockTransport(recorder))


def _run(coro):
    return asyncio.run(coro)


class TestDefaultTarget:
    """Predictions against the model's own URL."""

    def test_posts_input_to_predict_path(self, registry, ready_model):
        """The payload is POSTed as JSON to the model's predict path."""
        ready_model(url="http://sklearn-iris.tenant-a.example.com")
        recorder = Recorder(body={"predictions": [0, 1]})

        result = _run(_proxy(registry, recorder).predict(
            "tenant-a", "sklearn-iris", {"instances": [[5.1, 3.5, 1.4, 0.2]]}
        ))

        assert result == {"predictions": [0, 1]}
        request = recorder.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "http://sklearn-iris.tenant-a.example.com/v1/models/sklearn-iris:predict"
        assert json.loads(request.content) == {"instances": [[5.1, 3.5, 1.4, 0.2]]}
        assert request.headers["content-type"] == "application/json"

    def test_not_ready_model(self, registry, ready_model, cluster):
        """A model that is not ready is rejected before dialing."""
        ready_model()
        cluster.set_ready("tenant-a", "sklearn-iris", ready=False)
        recorder = Recorder()

        with pytest.raises(ModelNotReady):
            _run(_proxy(registry, recorder).predict("tenant-a", "sklearn-iris", {}))
        assert recorder.requests == []

    def test_unknown_model(self, registry):
        """Unknown models are NotFound."""
        with pytest.raises(NotFound):
            _run(_proxy(registry, Recorder()).predict("tenant-a", "missing", {}))


class TestCustomTarget:
    """Per-request connection overrides."""

    def test_custom_url_and_host_header(self, registry):
        """Custom protocol/host/port/path replace the model URL; Host is passed through."""
        recorder = Recorder()
        settings = ConnectionSettings(
            use_custom=True,
            protocol="http",
            host="localhost",
            port="8080",
            path="/v1/models/iris:predict",
            headers=[HeaderSetting("Host", "iris.tenant-a.example.com"), HeaderSetting("X-Trace", "1")],
        )

        _run(_proxy(registry, recorder).predict("tenant-a", "iris", {"x": 1}, settings))

        request = recorder.requests[0]
        assert str(request.url) == "http://localhost:8080/v1/models/iris:predict"
        assert request.headers["host"] == "iris.tenant-a.example.com"
        assert request.headers["x-trace"] == "1"

    def test_custom_defaults(self):
        """Protocol defaults to http and the path to the predict path."""
        url = PredictionProxy.custom_url("iris", ConnectionSettings(use_custom=True, host="gw.local"))
        assert url == "http://gw.local/v1/models/iris:predict"

    def test_custom_requires_host(self, registry):
        """A custom target needs a host."""
        with pytest.raises(ValidationError):
            _run(_proxy(registry, Recorder()).predict(
                "tenant-a", "iris", {}, ConnectionSettings(use_custom=True)
            ))

    def test_dns_override_dials_address_keeps_host(self, registry):
        """DNS overrides change the dialed address but not the Host header."""
        recorder = Recorder()
        settings = ConnectionSettings(
            use_custom=True,
            host="iris.tenant-a.example.com",
            port="8080",
            dns_resolve=[DNSResolve("iris.tenant-a.example.com", "8080", "10.0.0.7")],
        )

        _run(_proxy(registry, recorder).predict("tenant-a", "iris", {}, settings))

        request = recorder.requests[0]
        assert request.url.host == "10.0.0.7"
        assert request.url.port == 8080
        assert request.headers["host"] == "iris.tenant-a.example.com:8080"


class TestOutcomes:
    """Response and failure mapping."""

    def _custom(self):
        return ConnectionSettings(use_custom=True, host="model.local")

    def test_non_json_body_is_wrapped(self, registry):
        """Non-JSON success bodies are returned raw."""
        recorder = Recorder(text="OK")
        result = _run(_proxy(registry, recorder).predict("tenant-a", "iris", {}, self._custom()))
        assert result == {"raw_response": "OK", "status_code": 200}

    def test_error_status_is_backend_error(self, registry):
        """Non-2xx answers keep their status and body."""
        recorder = Recorder(status_code=500, text="model crashed")

        with pytest.raises(BackendError) as exc_info:
            _run(_proxy(registry, recorder).predict("tenant-a", "iris", {}, self._custom()))

        assert exc_info.value.status_code == 502
        assert exc_info.value.details["statusCode"] == 500
        assert "model crashed" in exc_info.value.details["body"]

    def test_connection_error_is_proxy_error(self, registry):
        """Transport failures become ProxyError."""
        recorder = Recorder(error=httpx.ConnectError("connection refused"))
        with pytest.raises(ProxyError):
            _run(_proxy(registry, recorder).predict("tenant-a", "iris", {}, self._custom()))

    def test_timeout_is_proxy_error(self, registry):
        """Timeouts become ProxyError."""
        recorder = Recorder(error=httpx.ReadTimeout("timed out"))
        with pytest.raises(ProxyError) as exc_info:
            _run(_proxy(registry, recorder).predict("tenant-a", "iris", {}, self._custom()))
        assert "timed out" in exc_info.value.message

    def test_slow_body_hits_overall_deadline(self, registry):
        """A body trickling in under the per-read timeout still ends at the deadline."""
        proxy = PredictionProxy(registry, timeout=0.3, transport=TrickleTransport(b'{"a": 1}', delay=0.1))

        started = time.monotonic()
        with pytest.raises(ProxyError) as exc_info:
            _run(proxy.predict("tenant-a", "iris", {}, self._custom()))

        assert "timed out" in exc_info.value.message
        assert time.monotonic() - started < 0.8


class TestHelpers:
    """Header and DNS override parsing."""

    def test_build_headers_skips_empty(self):
        """Entries with an empty key or value are ignored."""
        headers = build_headers(ConnectionSettings(headers=[
            HeaderSetting("", "x"), HeaderSetting("X-Empty", ""), HeaderSetting("X-Ok", "yes"),
        ]))
        assert headers == {"Content-Type": "application/json", "X-Ok": "yes"}

    def test_parse_dns_overrides(self):
        """Incomplete entries are skipped; hosts are case-insensitive."""
        overrides = parse_dns_overrides([
            DNSResolve("API.Example.com", "443", "10.0.0.1"),
            DNSResolve("skip.example.com", "", "10.0.0.2"),
        ])
        assert overrides == {("api.example.com", 443): "10.0.0.1"}

    def test_parse_dns_overrides_bad_port(self):
        """A non-numeric port is a validation error."""
        with pytest.raises(ValidationError):
            parse_dns_overrides([DNSResolve("a.example.com", "https", "10.0.0.1")])
