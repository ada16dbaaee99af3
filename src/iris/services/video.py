"""Two-pass video analysis.

Pass 1 looks at a sparse, low-detail sample of the keyframes. Pass 2 only runs
when pass 1 is uncertain (or the caller asked for comprehensive detail) and
re-analyzes just the frames inside the first two reported scene segments.
Frames pass 2 adds beyond the pass-1 sample go through ``screen`` first, so
no frame reaches the model unmoderated.
"""

import dataclasses
import logging
import math
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Literal

from iris.exceptions import TRANSIENT_KINDS, Err, ErrorKind, Ok, Result
from iris.schemas.vision import SceneSegment, VideoAnalysis, VideoFrame, VideoOptions
from iris.services.prompts import ImageDetail, VideoStage, detail_for

logger = logging.getLogger(__name__)

TWO_PASS_NOTE = "Two-pass analysis completed"
PASS1_PURPOSE = "brief overview"
PASS2_PURPOSE = "detailed segment analysis"
PASS2_SEGMENT_LIMIT = 2

# pass 2 failing on these kinds still leaves a usable pass 1 result
_DEGRADABLE_KINDS = TRANSIENT_KINDS | {ErrorKind.BREAKER_OPEN}


@dataclass(frozen=True)
class VideoPass:
    stage: VideoStage
    frames: tuple[VideoFrame, ...]
    options: VideoOptions
    detail: ImageDetail
    max_tokens: int | None = None
    segments: tuple[SceneSegment, ...] = ()


@dataclass(frozen=True)
class VideoRun:
    mode: Literal["single", "two_pass"]
    pass1: VideoAnalysis
    merged: VideoAnalysis
    pass1_frames: int
    pass2: VideoAnalysis | None = None
    pass2_frames: int = 0
    # moderation blocked the frames pass 2 would have added
    pass2_blocked: bool = False


PassRunner = Callable[[VideoPass], Awaitable[Result[VideoAnalysis]]]
# returns False when the frames must not be sent
FrameScreen = Callable[[tuple[VideoFrame, ...]], Awaitable[bool]]


class VideoStrategy:
    def __init__(
        self,
        *,
        two_pass_threshold: int = 10,
        uncertainty_threshold: int = 3,
        pass1_target_frames: int = 8,
        pass1_max_tokens: int = 800,
        pass2_max_tokens: int = 1200,
    ) -> None:
        self._two_pass_threshold = two_pass_threshold
        self._uncertainty_threshold = uncertainty_threshold
        self._pass1_target_frames = pass1_target_frames
        self._pass1_max_tokens = pass1_max_tokens
        self._pass2_max_tokens = pass2_max_tokens

    def use_two_pass(self, frame_count: int, options: VideoOptions) -> bool:
        if options.video_mode == "single":
            return False
        if options.video_mode == "two_pass":
            return True
        return frame_count > self._two_pass_threshold

    def sample(self, frames: Sequence[VideoFrame]) -> tuple[VideoFrame, ...]:
        """Uniform subsample with stride ceil(n / target)."""
        if not frames:
            return ()
        stride = max(1, math.ceil(len(frames) / self._pass1_target_frames))
        return tuple(frames[::stride])

    def first_pass_frames(
        self, frames: Sequence[VideoFrame], options: VideoOptions
    ) -> tuple[VideoFrame, ...]:
        """Frames the first (or only) pass will send; moderation screens these."""
        if self.use_two_pass(len(frames), options):
            return self.sample(frames)
        return tuple(frames)

    async def analyze(
        self,
        frames: Sequence[VideoFrame],
        options: VideoOptions,
        run_pass: PassRunner,
        screen: FrameScreen | None = None,
    ) -> Result[VideoRun]:
        if not self.use_two_pass(len(frames), options):
            outcome = await run_pass(
                VideoPass(
                    stage="single",
                    frames=tuple(frames),
                    options=options,
                    detail=detail_for(options),
                )
            )
            if isinstance(outcome, Err):
                return outcome
            return Ok(
                VideoRun(
                    mode="single",
                    pass1=outcome.value,
                    merged=outcome.value,
                    pass1_frames=len(frames),
                )
            )

        sparse = self.sample(frames)
        logger.info("Video pass 1: %d of %d frames", len(sparse), len(frames))
        first = await run_pass(
            VideoPass(
                stage="overview",
                frames=sparse,
                options=options.model_copy(
                    update={"purpose": PASS1_PURPOSE, "detail": "brief"}
                ),
                detail="low",
                max_tokens=self._pass1_max_tokens,
            )
        )
        if isinstance(first, Err):
            return first
        pass1 = first.value

        single = VideoRun(
            mode="two_pass", pass1=pass1, merged=pass1, pass1_frames=len(sparse)
        )
        if not self.needs_second_pass(pass1, options):
            return Ok(single)

        segments = tuple(pass1.scene_segments[:PASS2_SEGMENT_LIMIT])
        detail_frames = frames_in_segments(frames, segments)
        if not segments or not detail_frames:
            logger.info("Video pass 2 skipped: no frames inside reported segments")
            return Ok(single)

        sampled = set(sparse)
        unscreened = tuple(f for f in detail_frames if f not in sampled)
        if screen is not None and unscreened and not await screen(unscreened):
            logger.warning(
                "Video pass 2 withheld: moderation blocked %d segment frames", len(unscreened)
            )
            return Ok(dataclasses.replace(single, pass2_blocked=True))

        logger.info(
            "Video pass 2: %d frames across %d segments", len(detail_frames), len(segments)
        )
        second = await run_pass(
            VideoPass(
                stage="segments",
                frames=detail_frames,
                options=options.model_copy(
                    update={"purpose": PASS2_PURPOSE, "detail": "detailed"}
                ),
                detail="high",
                max_tokens=self._pass2_max_tokens,
                segments=segments,
            )
        )
        if isinstance(second, Err):
            if second.kind not in _DEGRADABLE_KINDS:
                return second
            logger.warning("Video pass 2 failed, keeping pass 1: %s", second.error.message)
            pass1.metadata.processing_notes.append(
                f"Detailed second pass unavailable: {second.kind.value}"
            )
            return Ok(single)

        return Ok(
            VideoRun(
                mode="two_pass",
                pass1=pass1,
                pass2=second.value,
                merged=merge_passes(pass1, second.value),
                pass1_frames=len(sparse),
                pass2_frames=len(detail_frames),
            )
        )

    def needs_second_pass(self, pass1: VideoAnalysis, options: VideoOptions) -> bool:
        return (
            len(pass1.uncertainty_notes) > self._uncertainty_threshold
            or options.detail == "comprehensive"
        )


def frames_in_segments(
    frames: Sequence[VideoFrame], segments: Sequence[SceneSegment]
) -> tuple[VideoFrame, ...]:
    return tuple(
        f
        for f in frames
        if any(s.start_time <= f.timestamp <= s.end_time for s in segments)
    )


def merge_passes(pass1: VideoAnalysis, pass2: VideoAnalysis) -> VideoAnalysis:
    """Pass 1 verbatim, plus pass 2's segments and its (more current) uncertainty notes."""
    merged = pass1.model_copy(deep=True)
    merged.scene_segments = [
        *merged.scene_segments,
        *(s.model_copy() for s in pass2.scene_segments),
    ]
    merged.uncertainty_notes = list(pass2.uncertainty_notes)
    merged.metadata.processing_notes.append(TWO_PASS_NOTE)
    return merged
