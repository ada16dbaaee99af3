import logging
from contextlib import asynccontextmanager

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from iris.config import settings
from iris.exceptions import IrisError, http_status
from iris.routers import health, vision
from iris.services.cache import VisionCache
from iris.services.circuit_breaker import CircuitBreaker
from iris.services.media_library import ManifestImageSource
from iris.services.metrics import VisionMetrics
from iris.services.moderation import (
    ContentSafetyClassifier,
    LayeredClassifier,
    LLMModerationClassifier,
    ModerationGate,
)
from iris.services.retry import RetryPolicy
from iris.services.video import VideoStrategy
from iris.services.vision import VisionService
from iris.services.vision_client import VisionClient

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the shared pipeline components on startup, close HTTP clients on shutdown."""
    logger.info("Starting Iris service ...")

    vision_client = VisionClient(settings)
    moderation_client = VisionClient(
        settings, deployment=settings.resolved_moderation_deployment
    )
    primary = None
    if settings.content_safety_endpoint and settings.content_safety_key:
        primary = ContentSafetyClassifier(
            settings.content_safety_endpoint, settings.content_safety_key
        )
    classifier = LayeredClassifier(
        backup=LLMModerationClassifier(moderation_client, settings.moderation_max_tokens),
        primary=primary,
    )
    try:
        app.state.metrics = VisionMetrics()
        app.state.vision = VisionService(
            client=vision_client,
            image_source=ManifestImageSource(settings.media_library_dir),
            gate=ModerationGate(classifier, settings),
            cache=VisionCache(max_entries=settings.cache_max_entries),
            breaker=CircuitBreaker(
                "vision",
                failure_threshold=settings.breaker_failure_threshold,
                recovery_timeout=settings.breaker_recovery_timeout,
            ),
            retry=RetryPolicy(
                max_attempts=settings.retry_max_attempts,
                base_delay=settings.retry_base_delay,
                max_delay=settings.retry_max_delay,
                jitter=settings.retry_jitter,
                allow_degradation=settings.retry_allow_degradation,
            ),
            metrics=app.state.metrics,
            video=VideoStrategy(
                two_pass_threshold=settings.video_two_pass_threshold,
                uncertainty_threshold=settings.video_uncertainty_threshold,
                pass1_target_frames=settings.video_pass1_target_frames,
                pass1_max_tokens=settings.video_pass1_max_tokens,
                pass2_max_tokens=settings.video_pass2_max_tokens,
            ),
            settings=settings,
        )
        if not settings.moderation_enabled:
            logger.warning("Content moderation disabled by configuration")

        logger.info("Iris service ready.")
        yield
    finally:
        logger.info("Shutting down Iris service ...")
        await vision_client.close()
        await classifier.close()


app = FastAPI(
    title="Iris",
    description="Resilient vision analysis service",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(vision.router)
app.include_router(health.router)


@app.exception_handler(IrisError)
async def iris_error_handler(request: Request, exc: IrisError):
    return JSONResponse(status_code=http_status(exc), content={"detail": exc.to_dict()})
