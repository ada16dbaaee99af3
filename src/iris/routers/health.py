from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, Response

from iris.dependencies import get_metrics, get_vision_service
from iris.schemas.api import HealthResponse
from iris.services.metrics import METRICS_CONTENT_TYPE, VisionMetrics
from iris.services.vision import VisionService

router = APIRouter(prefix="/api/v1", tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health(vision: VisionService = Depends(get_vision_service)):
    """Endpoint probe, cache size, breaker state and metrics. 503 when unhealthy."""
    report = HealthResponse(**await vision.health_check())
    if not report.healthy:
        return JSONResponse(status_code=503, content=report.model_dump(mode="json"))
    return report


@router.get("/metrics")
async def metrics(recorder: VisionMetrics = Depends(get_metrics)) -> Response:
    """Prometheus scrape endpoint."""
    return Response(content=recorder.render(), media_type=METRICS_CONTENT_TYPE)


@router.get("/metrics/summary")
async def metrics_summary(recorder: VisionMetrics = Depends(get_metrics)) -> dict:
    return recorder.snapshot()
