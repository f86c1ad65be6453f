"""
Inference Management API

A FastAPI backend that provides:
1. Model lifecycle over KServe InferenceServices, scoped per tenant namespace
2. A prediction proxy with per-request connection overrides
3. Publishing of models through the gateway with API keys and rate limits

References:
- KServe InferenceService: https://kserve.github.io/website/latest/reference/api/
- Gateway API HTTPRoute: https://gateway-api.sigs.k8s.io/api-types/httproute/
- Envoy AI Gateway: https://aigateway.envoyproxy.io/docs/
"""

from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from auth import RequestIdMiddleware, SecurityHeadersMiddleware, TokenVerifier, limiter
from config import Settings, settings
from errors import register_exception_handlers
from logger import setup_logging
from model_registry import ModelRegistry
from models_api import router as models_router
from prediction_proxy import PredictionProxy
from publishing import PublishingOrchestrator
from publishing_api import router as publishing_router
from resource_client import ResourceClient

# Initialize logging
logger = setup_logging(settings.LOG_LEVEL)

# Initialize FastAPI app
app = FastAPI(
    title=settings.API_TITLE,
    version=settings.API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    description="""
    Inference Management API

    This API provides:
    - Model deployment, update and deletion per tenant
    - Prediction testing with custom connection settings
    - Predictor logs
    - Model publishing with API keys and rate limiting
    """
)

# Add rate limit exception handler
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
register_exception_handlers(app)

# Add security middlewares
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestIdMiddleware)

# CORS configuration with restricted origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(models_router, prefix=settings.API_PREFIX)
app.include_router(publishing_router, prefix=settings.API_PREFIX)


def configure_services(
    app: FastAPI,
    resource_client: ResourceClient,
    token_verifier: TokenVerifier,
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> None:
    """Wire the components onto ``app.state``."""
    registry = ModelRegistry(resource_client, settings)
    app.state.resource_client = resource_client
    app.state.token_verifier = token_verifier
    app.state.registry = registry
    app.state.proxy = PredictionProxy(registry, timeout=settings.PREDICT_TIMEOUT, transport=transport)
    app.state.publisher = PublishingOrchestrator(resource_client, registry, settings)


@app.on_event("startup")
async def startup_event():
    """Connect to the cluster and token server unless already configured."""
    logger.info("Starting Inference Management API...")
    logger.info(f"API Version: {settings.API_VERSION}")
    logger.info(f"JWKS URL: {settings.JWKS_URL}")
    logger.info(f"Gateway: {settings.GATEWAY_NAMESPACE}/{settings.GATEWAY_NAME}")
    logger.info(f"Allowed Origins: {settings.ALLOWED_ORIGINS}")

    if getattr(app.state, "registry", None) is not None:
        return

    configure_services(
        app,
        ResourceClient.from_settings(settings),
        TokenVerifier.from_settings(settings),
        settings,
    )
    logger.info("✓ Cluster client configured")


# =============================================================================
# Health Endpoints
# =============================================================================

@app.get("/health")
@limiter.limit(settings.RATE_LIMIT_PER_MINUTE)
def health(request: Request):
    """Liveness check."""
    return {"status": "healthy", "version": settings.API_VERSION}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_level=settings.LOG_LEVEL.lower()
    )
