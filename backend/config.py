"""
Configuration management for the Inference Management API.
Handles environment variables and application settings.

References:
- KServe InferenceService: https://kserve.github.io/website/latest/reference/api/
- Envoy Gateway rate limiting: https://gateway.envoyproxy.io/docs/tasks/traffic/global-rate-limit/
"""
from typing import Dict, List, Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Configuration
    API_TITLE: str = "Inference Management API"
    API_VERSION: str = "1.0.0"
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8082
    API_PREFIX: str = "/api"

    # Security
    ALLOWED_ORIGINS: List[str] = ["http://localhost:3000"]  # Frontend URLs

    # Token verification
    # The token server only has to expose a JWKS document.
    JWKS_URL: str = "http://jwt-server.default.svc.cluster.local:8080/.well-known/jwks.json"
    JWT_ALGORITHMS: List[str] = ["RS256"]
    JWT_AUDIENCE: str = ""  # Leave empty to skip audience verification
    JWT_ISSUER: str = ""  # Leave empty to skip issuer verification
    ADMIN_TENANTS: List[str] = ["admin"]

    # Cluster access
    KUBECONFIG_PATH: Optional[str] = None  # In-cluster config is tried first
    CLUSTER_RETRY_ATTEMPTS: int = 3
    CLUSTER_RETRY_BACKOFF: float = 0.5
    CONFLICT_RETRY_ATTEMPTS: int = 3

    # Model defaults
    DEFAULT_MIN_REPLICAS: int = 1
    DEFAULT_MAX_REPLICAS: int = 3
    DEFAULT_SCALE_TARGET: int = 60
    DEFAULT_SCALE_METRIC: str = "concurrency"
    SUPPORTED_FRAMEWORKS: Dict[str, str] = {
        "sklearn": "Scikit-learn models",
        "tensorflow": "TensorFlow models",
        "pytorch": "PyTorch models",
        "onnx": "ONNX models",
        "xgboost": "XGBoost models",
    }

    # Request Timeouts (seconds)
    PREDICT_TIMEOUT: float = 30.0

    # Gateway publishing
    GATEWAY_NAMESPACE: str = "envoy-gateway-system"
    GATEWAY_NAME: str = "ai-inference-gateway"
    DEFAULT_PUBLIC_HOSTNAME: str = "api.router.inference-in-a-box"
    INGRESS_SERVICE_NAME: str = "istio-ingressgateway"
    INGRESS_SERVICE_NAMESPACE: str = "istio-system"
    INGRESS_SERVICE_PORT: int = 80

    # Rate Limiting
    RATE_LIMIT_PER_MINUTE: str = "60/minute"
    RATE_LIMIT_ENABLED: bool = True

    # Logging
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True


# Built once at startup and handed to each component
settings = Settings()
