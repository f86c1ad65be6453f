"""
Prediction Proxy
================

Forwards ad-hoc prediction requests to a model's inference endpoint.

Per-request transport overrides:
- custom target (protocol/host/port/path) instead of the model's own URL
- extra headers, where a ``Host`` header sets the virtual host
- DNS overrides (like ``curl --resolve``): connections to ``host:port``
  go to a literal address without consulting name resolution

Outcomes:
- 2xx JSON          -> parsed body
- 2xx non-JSON      -> {"raw_response": <text>, "status_code": <n>}
- non-2xx           -> BackendError (status + raw body)
- transport failure -> ProxyError

References:
- KServe V1 protocol: https://kserve.github.io/website/latest/modelserving/data_plane/v1_protocol/
- HTTPX transports: https://www.python-httpx.org/advanced/transports/
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import httpx
from starlette.concurrency import run_in_threadpool

from errors import BackendError, ModelNotReady, ProxyError, ValidationError
from logger import get_logger
from model_registry import ModelRegistry

logger = get_logger(__name__)

PREDICT_PATH = "/v1/models/{name}:predict"
DEFAULT_PORTS = {"http": 80, "https": 443}


@dataclass
class HeaderSetting:
    key: str
    value: str


@dataclass
class DNSResolve:
    host: str
    port: str
    address: str


@dataclass
class ConnectionSettings:
    """Transport overrides for a single prediction request."""
    use_custom: bool = False
    protocol: str = ""
    host: str = ""
    port: str = ""
    path: str = ""
    namespace: str = ""
    headers: List[HeaderSetting] = field(default_factory=list)
    dns_resolve: List[DNSResolve] = field(default_factory=list)


class DNSOverrideTransport(httpx.AsyncBaseTransport):
    """
    Transport that dials a fixed address for selected ``(host, port)`` pairs.

    The request keeps its original Host header, and for HTTPS its original
    TLS server name, so virtual hosting and certificate checks see the
    hostname the caller asked for.
    """

    def __init__(
        self,
        overrides: Dict[Tuple[str, int], str],
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.overrides = {(host.lower(), port): address for (host, port), address in overrides.items()}
        self._transport = transport or httpx.AsyncHTTPTransport()

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        url = request.url
        port = url.port or DEFAULT_PORTS.get(url.scheme, 80)
        address = self.overrides.get((url.host.lower(), port))
        if address:
            logger.debug(f"Resolving {url.host}:{port} to {address}:{port}")
            if url.scheme == "https":
                request.extensions["sni_hostname"] = url.host
            request.url = url.copy_with(host=address, port=port)
        return await self._transport.handle_async_request(request)

    async def aclose(self) -> None:
        await self._transport.aclose()


def parse_dns_overrides(entries: List[DNSResolve]) -> Dict[Tuple[str, int], str]:
    """Turn DNS override entries into a lookup table, skipping incomplete ones."""
    overrides: Dict[Tuple[str, int], str] = {}
    for entry in entries:
        if not entry.host or not entry.port or not entry.address:
            continue
        try:
            port = int(entry.port)
        except ValueError:
            raise ValidationError(f"Invalid port in dnsResolve entry: {entry.port}")
        overrides[(entry.host.lower(), port)] = entry.address
    return overrides


def build_headers(settings: Optional[ConnectionSettings]) -> Dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if settings is None:
        return headers
    for header in settings.headers:
        if not header.key or not header.value:
            continue
        if header.key.lower() == "host":
            headers["Host"] = header.value
        else:
            headers[header.key] = header.value
    return headers


class PredictionProxy:
    """
    Executes prediction requests on behalf of API clients.

    Args:
        registry: Used to look up the model's external URL
        timeout: Deadline in seconds for the whole outbound call, connect plus transfer
        transport: Optional base transport (tests pass a stub dialer here)
    """

    def __init__(
        self,
        registry: ModelRegistry,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.registry = registry
        self.timeout = timeout
        self._transport = transport

    @staticmethod
    def custom_url(name: str, settings: ConnectionSettings) -> str:
        if not settings.host:
            raise ValidationError("connectionSettings.host is required when useCustom is set")
        protocol = settings.protocol or "http"
        path = settings.path or PREDICT_PATH.format(name=name)
        if not path.startswith("/"):
            path = "/" + path
        port = f":{settings.port}" if settings.port else ""
        return f"{protocol}://{settings.host}{port}{path}"

    async def resolve_url(self, namespace: str, name: str, settings: Optional[ConnectionSettings]) -> str:
        if settings is not None and settings.use_custom:
            return self.custom_url(name, settings)

        descriptor = await run_in_threadpool(self.registry.get_model, namespace, name)
        if not descriptor.ready or not descriptor.external_url:
            raise ModelNotReady(f"Model {name} is not ready")
        return descriptor.external_url.rstrip("/") + PREDICT_PATH.format(name=name)

    async def predict(
        self,
        namespace: str,
        name: str,
        input_data: Any,
        settings: Optional[ConnectionSettings] = None,
    ) -> Any:
        """
        Send ``input_data`` to the model and return its response.

        Raises:
            ModelNotReady: The model has no routable URL yet
            BackendError: The model server answered non-2xx
            ProxyError: The model server could not be reached
        """
        url = await self.resolve_url(namespace, name, settings)
        headers = build_headers(settings)
        overrides = parse_dns_overrides(settings.dns_resolve) if settings else {}

        transport = self._transport
        if overrides:
            transport = DNSOverrideTransport(overrides, self._transport)

        logger.info(f"Proxying prediction for {namespace}/{name} to {url}")
        start_time = time.time()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=transport) as client:
                # httpx times each phase separately; the deadline bounds the whole exchange
                response = await asyncio.wait_for(
                    client.post(url, json=input_data, headers=headers), self.timeout
                )
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            raise ProxyError(f"Model endpoint timed out after {self.timeout:g}s", details={"url": url}) from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise ProxyError(f"Failed to reach model endpoint: {e}", details={"url": url}) from e

        latency_ms = (time.time() - start_time) * 1000
        logger.info(f"Model {namespace}/{name} answered {response.status_code} in {latency_ms:.1f}ms")

        if not response.is_success:
            raise BackendError(response.status_code, response.text)

        try:
            return response.json()
        except ValueError:
            return {"raw_response": response.text, "status_code": response.status_code}
