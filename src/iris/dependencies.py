from fastapi import Request

from iris.services.metrics import VisionMetrics
from iris.services.vision import VisionService


def get_vision_service(request: Request) -> VisionService:
    """Retrieve the VisionService singleton from app state."""
    return request.app.state.vision


def get_metrics(request: Request) -> VisionMetrics:
    """Retrieve the process-wide VisionMetrics from app state."""
    return request.app.state.metrics
