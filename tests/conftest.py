import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from iris.config import Settings
from iris.schemas.moderation import ModerationResult
from iris.schemas.vision import ImageData, StructuredDescription, VideoAnalysis
from iris.services.cache import VisionCache
from iris.services.circuit_breaker import CircuitBreaker
from iris.services.metrics import VisionMetrics
from iris.services.moderation import ModerationGate
from iris.services.retry import RetryPolicy
from iris.services.video import VideoStrategy
from iris.services.vision import VisionService
from iris.services.vision_client import CallParameters, VisionClient, VisionResponse


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def description_json(**sections) -> dict:
    """A complete image description payload; keyword args replace whole sections."""
    data = StructuredDescription().model_dump(mode="json")
    data["metadata"].update(confidence="high", content_type="photograph")
    data["accessibility"].update(
        alt_text="Red bicycle leaning against a brick wall",
        long_description="A red bicycle leans against a weathered brick wall in daylight.",
    )
    data["content"].update(
        primary_subjects=["bicycle"], scene_description="A quiet street corner"
    )
    data.update(sections)
    return data


def video_json(**fields) -> dict:
    data = VideoAnalysis().model_dump(mode="json")
    data["accessibility"].update(alt_text="Person walking a dog in a park")
    data.update(fields)
    return data


def vision_response(payload: dict | str) -> VisionResponse:
    content = payload if isinstance(payload, str) else json.dumps(payload)
    return VisionResponse(content=content, model="gpt-4o", finish_reason="stop")


@pytest.fixture
def settings() -> Settings:
    return Settings(
        vision_endpoint="https://vision.test",
        vision_api_key="test-key",
        moderation_enabled=True,
        moderation_strict_mode=False,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mock_client() -> MagicMock:
    client = MagicMock(spec=VisionClient)
    client.deployment = "gpt-4o"
    client.api_version = "2024-10-21"
    client.default_parameters.side_effect = lambda **kw: CallParameters(
        max_tokens=kw.get("max_tokens") or 1500, temperature=0.1, timeout=30.0
    )
    client.complete = AsyncMock(return_value=vision_response(description_json()))
    client.probe = AsyncMock(
        return_value={"healthy": True, "latency_ms": 12.0, "error": None}
    )
    return client


@pytest.fixture
def mock_image_source() -> MagicMock:
    source = MagicMock()
    source.load.side_effect = lambda image_id: ImageData(
        id=image_id, data=b"\x89PNG-fake", mime_type="image/png"
    )
    return source


@pytest.fixture
def mock_classifier() -> MagicMock:
    classifier = MagicMock()
    classifier.classify = AsyncMock(return_value=ModerationResult(safe=True))
    return classifier


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def vision_service(
    settings: Settings,
    mock_client: MagicMock,
    mock_image_source: MagicMock,
    mock_classifier: MagicMock,
    clock: FakeClock,
    sleeps: list[float],
) -> VisionService:
    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    return VisionService(
        client=mock_client,
        image_source=mock_image_source,
        gate=ModerationGate(mock_classifier, settings),
        cache=VisionCache(max_entries=100, clock=clock),
        breaker=CircuitBreaker("vision", failure_threshold=5, recovery_timeout=60.0, clock=clock),
        retry=RetryPolicy(max_attempts=3, base_delay=1.0, sleep=record_sleep),
        metrics=VisionMetrics(),
        video=VideoStrategy(),
        settings=settings,
    )


@pytest.fixture
def mock_vision() -> MagicMock:
    """Create a mocked VisionService for router tests."""
    return MagicMock(spec=VisionService)


@pytest.fixture
def test_app(mock_vision: MagicMock):
    """Create a test FastAPI app with mocked dependencies."""
    from fastapi import FastAPI
    from iris.routers.health import router as health_router
    from iris.routers.vision import router as vision_router

    app = FastAPI()
    app.state.vision = mock_vision
    app.state.metrics = VisionMetrics()
    app.include_router(vision_router)
    app.include_router(health_router)
    return app


@pytest.fixture
def client(test_app) -> TestClient:
    return TestClient(test_app)
