"""
FastAPI dependencies for the components assembled in ``main``.
"""
from fastapi import Request

from model_registry import ModelRegistry
from prediction_proxy import PredictionProxy
from publishing import PublishingOrchestrator


def get_registry(request: Request) -> ModelRegistry:
    """Get the ModelRegistry built at startup."""
    return request.app.state.registry


def get_proxy(request: Request) -> PredictionProxy:
    """Get the PredictionProxy built at startup."""
    return request.app.state.proxy


def get_publisher(request: Request) -> PublishingOrchestrator:
    """Get the PublishingOrchestrator built at startup."""
    return request.app.state.publisher
