"""Vision analysis pipeline.

cache -> load -> moderation gate -> prompt -> breaker(retry(remote call))
-> validate / salvage -> post-process -> cache.

Nothing is cached unless the pipeline runs to completion, so a cancelled
request leaves no trace in the cache.
"""

import asyncio
import hashlib
import logging
import time
from collections.abc import Awaitable, Sequence
from typing import Any, TypeVar

from iris.config import Settings
from iris.exceptions import (
    TRANSIENT_KINDS,
    Err,
    ErrorKind,
    IrisError,
    Result,
    VisionValidationError,
    wrap_unexpected,
)
from iris.schemas.vision import (
    AnalysisOptions,
    ImageData,
    StructuredDescription,
    VideoAnalysis,
    VideoFrame,
    VideoOptions,
)
from iris.services.cache import VisionCache, build_cache_key
from iris.services.circuit_breaker import CircuitBreaker
from iris.services.fallback import create_fallback
from iris.services.media_library import ImageSource
from iris.services.metrics import VisionMetrics
from iris.services.moderation import (
    ModerationGate,
    ModerationOutcome,
    blocked_description,
    merge_moderation,
)
from iris.services.prompts import (
    build_image_messages,
    build_video_messages,
    image_response_schema,
    video_response_schema,
)
from iris.services.retry import RetryPolicy
from iris.services.validator import validate_response
from iris.services.video import VideoPass, VideoStrategy
from iris.services.vision_client import CallParameters, VisionClient
from iris.utils.text import screen_description

logger = logging.getLogger(__name__)

D = TypeVar("D", bound=StructuredDescription)

UNMODERATED_NOTE = "Content moderation unavailable; analysis ran unmoderated"


class VisionService:
    """Public entry point: ``analyze_images``, ``analyze_video_frames``, ``health_check``."""

    def __init__(
        self,
        *,
        client: VisionClient,
        image_source: ImageSource,
        gate: ModerationGate,
        cache: VisionCache,
        breaker: CircuitBreaker,
        retry: RetryPolicy,
        metrics: VisionMetrics,
        video: VideoStrategy,
        settings: Settings,
    ) -> None:
        self._client = client
        self._image_source = image_source
        self._gate = gate
        self._cache = cache
        self._breaker = breaker
        self._retry = retry
        self._metrics = metrics
        self._video = video
        self._settings = settings

    # ---- public operations ---- #

    async def analyze_images(
        self,
        image_ids: Sequence[str],
        options: AnalysisOptions | None = None,
    ) -> StructuredDescription:
        """Analyze 1..N library images as one request.

        Raises:
            VisionValidationError: bad id list, unknown id, unparseable response
            ModerationError: moderation unavailable under minor / strict policy
            ContentFilteredError: content inappropriate for the target age
            IrisError: remote failure with no fallback (breaker open, exhausted
                retries with degradation disabled, ...)
        """
        options = options or AnalysisOptions()
        return await self._measured(
            "Image analysis", self._analyze_images(image_ids, options)
        )

    async def analyze_video_frames(
        self,
        video_id: str,
        frames: Sequence[VideoFrame],
        options: VideoOptions | None = None,
    ) -> VideoAnalysis:
        """Analyze ordered keyframes of one video, single- or two-pass."""
        options = options or VideoOptions()
        return await self._measured(
            "Video analysis", self._analyze_video(video_id, frames, options)
        )

    async def health_check(self) -> dict[str, Any]:
        probe = await self._client.probe()
        healthy = bool(probe["healthy"]) and not self._breaker.is_open
        return {
            "healthy": healthy,
            "details": {
                "endpoint": probe,
                "cache_size": self._cache.size(),
                "breaker": self._breaker.status(),
                "metrics": self._metrics.snapshot(),
            },
        }

    # ---- pipelines ---- #

    async def _analyze_images(
        self, image_ids: Sequence[str], options: AnalysisOptions
    ) -> tuple[StructuredDescription, ErrorKind | None]:
        ids = self._validate_image_ids(image_ids)
        key = self._cache_key("image", ids, options)
        cached = self._cache_lookup(key, options)
        if cached is not None:
            return cached, None

        images = await asyncio.to_thread(self._load_images, ids)
        moderation = await self._gate.screen(images, options)
        if moderation.blocked:
            blocked = blocked_description(moderation.result, StructuredDescription)
            self._store(key, blocked, self._settings.cache_blocked_ttl_seconds)
            return blocked, None

        result = await self._guarded_call(
            build_image_messages(images, options),
            StructuredDescription,
            image_response_schema(),
            self._client.default_parameters(),
        )
        if isinstance(result, Err):
            return self._degrade(key, result, ids, StructuredDescription), result.kind

        description = result.value
        self._post_process(description, moderation)
        self._store(key, description, self._settings.cache_ttl_seconds)
        return description, None

    async def _analyze_video(
        self, video_id: str, frames: Sequence[VideoFrame], options: VideoOptions
    ) -> tuple[VideoAnalysis, ErrorKind | None]:
        frames = self._validate_frames(video_id, frames)
        key = self._cache_key("video", [video_id, frame_fingerprint(frames)], options)
        cached = self._cache_lookup(key, options)
        if cached is not None:
            return cached, None

        sample = self._video.first_pass_frames(frames, options)
        moderation = await self._gate.screen(
            [f.as_image(video_id) for f in sample], options
        )
        if moderation.blocked:
            blocked = blocked_description(moderation.result, VideoAnalysis)
            self._store(key, blocked, self._settings.cache_blocked_ttl_seconds)
            return blocked, None

        async def run_pass(spec: VideoPass) -> Result[VideoAnalysis]:
            messages = build_video_messages(
                video_id,
                spec.frames,
                spec.options,
                stage=spec.stage,
                detail=spec.detail,
                segments=spec.segments,
            )
            return await self._guarded_call(
                messages,
                VideoAnalysis,
                video_response_schema(),
                self._client.default_parameters(max_tokens=spec.max_tokens),
            )

        screenings = [moderation]

        async def screen_frames(extra: tuple[VideoFrame, ...]) -> bool:
            screening = await self._gate.screen(
                [f.as_image(video_id) for f in extra], options
            )
            screenings.append(screening)
            return not screening.blocked

        outcome = await self._video.analyze(frames, options, run_pass, screen_frames)
        if isinstance(outcome, Err):
            return self._degrade(key, outcome, [video_id], VideoAnalysis), outcome.kind

        run = outcome.value
        if run.pass2_blocked:
            blocked = blocked_description(screenings[-1].result, VideoAnalysis)
            self._store(key, blocked, self._settings.cache_blocked_ttl_seconds)
            return blocked, None

        analysis = run.merged
        logger.info(
            "Video %s analyzed (%s): pass1=%d frames, pass2=%d frames",
            video_id,
            run.mode,
            run.pass1_frames,
            run.pass2_frames,
        )
        if not analysis.duration_seconds and options.duration:
            analysis.duration_seconds = options.duration
        self._post_process(analysis, *screenings)
        self._store(key, analysis, self._settings.cache_ttl_seconds)
        return analysis, None

    # ---- stages ---- #

    async def _guarded_call(
        self,
        messages: list[dict[str, Any]],
        model_cls: type[D],
        schema: dict[str, Any],
        params: CallParameters,
    ) -> Result[D]:
        async def attempt(p: CallParameters) -> D:
            response = await self._client.complete(messages, p, schema=schema)
            description, salvaged = validate_response(response.content, model_cls)
            if salvaged:
                logger.info("Salvaged partial %s from %s", model_cls.__name__, response.model)
            return description

        return await self._breaker.call(self._retry.run, attempt, params)

    def _degrade(
        self,
        key: str,
        outcome: Err,
        identifiers: Sequence[str],
        model_cls: type[D],
    ) -> D:
        """Serve a fallback for exhausted transient failures; re-raise anything else."""
        if outcome.kind not in TRANSIENT_KINDS or outcome.fallback is None:
            raise outcome.error
        logger.warning(
            "Serving %s fallback after %s: %s",
            outcome.fallback.value,
            outcome.kind.value,
            outcome.error.message,
        )
        fallback = create_fallback(outcome.fallback, outcome.error, identifiers, model_cls)
        self._store(key, fallback, self._settings.cache_fallback_ttl_seconds)
        return fallback

    def _post_process(
        self, description: StructuredDescription, *screenings: ModerationOutcome
    ) -> None:
        for screening in screenings:
            if screening.result is not None:
                merge_moderation(description, screening.result)
        if any(s.failed_open for s in screenings):
            description.metadata.processing_notes.append(UNMODERATED_NOTE)
        description.metadata.processing_notes.extend(screen_description(description))

    def _load_images(self, ids: Sequence[str]) -> list[ImageData]:
        return [self._image_source.load(image_id) for image_id in ids]

    # ---- validation ---- #

    def _validate_image_ids(self, image_ids: Sequence[str]) -> tuple[str, ...]:
        if isinstance(image_ids, str):
            raise VisionValidationError("image_ids must be a list of identifiers")
        limit = self._settings.max_images_per_request
        if not 1 <= len(image_ids) <= limit:
            raise VisionValidationError(f"Between 1 and {limit} image ids are required")
        ids = tuple(image_ids)
        if any(not isinstance(i, str) or not i.strip() for i in ids):
            raise VisionValidationError("Image ids must be non-empty strings")
        return ids

    def _validate_frames(
        self, video_id: str, frames: Sequence[VideoFrame]
    ) -> tuple[VideoFrame, ...]:
        if not video_id or not video_id.strip():
            raise VisionValidationError("video_id is required")
        limit = self._settings.video_max_frames
        if not 1 <= len(frames) <= limit:
            raise VisionValidationError(f"Between 1 and {limit} frames are required")
        timestamps = [f.timestamp for f in frames]
        if timestamps != sorted(timestamps):
            raise VisionValidationError("Frames must be ordered by timestamp")
        return tuple(frames)

    # ---- cache ---- #

    def _cache_key(
        self, kind: str, identifiers: Sequence[str], options: AnalysisOptions
    ) -> str:
        return build_cache_key(
            kind,
            identifiers,
            options,
            deployment=self._client.deployment,
            api_version=self._client.api_version,
            schema_version=self._settings.schema_version,
        )

    def _cache_lookup(self, key: str, options: AnalysisOptions) -> Any | None:
        if not self._settings.cache_enabled or options.force_refresh:
            return None
        cached = self._cache.get(key)
        if cached is None:
            self._metrics.record_cache_miss()
            return None
        self._metrics.record_cache_hit()
        logger.info("Cache hit for %s", key[:24])
        return cached

    def _store(self, key: str, value: StructuredDescription, ttl: float) -> None:
        if self._settings.cache_enabled:
            self._cache.set(key, value, ttl)

    # ---- metrics ---- #

    async def _measured(
        self, context: str, pipeline: Awaitable[tuple[D, ErrorKind | None]]
    ) -> D:
        start = time.perf_counter()
        try:
            result, failure = await pipeline
        except IrisError as e:
            self._record(start, e.kind)
            raise
        except Exception as e:
            error = wrap_unexpected(e, context)
            logger.exception("%s failed unexpectedly", context)
            self._record(start, error.kind)
            raise error from e
        self._record(start, failure)
        return result

    def _record(self, start: float, kind: ErrorKind | None) -> None:
        latency_ms = (time.perf_counter() - start) * 1000
        self._metrics.record_request(kind is None, latency_ms, kind)


def frame_fingerprint(frames: Sequence[VideoFrame]) -> str:
    digest = hashlib.sha256()
    for frame in frames:
        digest.update(f"{frame.timestamp:.3f}:{frame.mime_type}:".encode())
        digest.update(hashlib.sha256(frame.data).digest())
    return digest.hexdigest()
