import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from iris.exceptions import (
    ContentFilteredError,
    ErrorKind,
    FallbackStrategy,
    ImageNotFoundError,
    IrisError,
    ModerationError,
    RemoteCallError,
    VisionValidationError,
)
from iris.schemas.moderation import ModerationFlags, ModerationResult
from iris.schemas.vision import (
    AnalysisOptions,
    StructuredDescription,
    VideoAnalysis,
    VideoFrame,
    VideoOptions,
)
from iris.services.fallback import FALLBACK_NOTE_PREFIX
from iris.services.validator import SALVAGE_NOTE
from iris.services.video import TWO_PASS_NOTE
from iris.services.vision import UNMODERATED_NOTE, VisionService

from conftest import description_json, video_json, vision_response


def _network_error() -> RemoteCallError:
    return RemoteCallError(
        "Vision API failed: 503",
        ErrorKind.NETWORK,
        retryable=True,
        fallback=FallbackStrategy.GENERIC_DESCRIPTION,
        status_code=503,
    )


class TestAnalyzeImages:
    @pytest.mark.asyncio
    async def test_returns_validated_description(self, vision_service: VisionService, mock_client):
        result = await vision_service.analyze_images(["img-1"])

        assert isinstance(result, StructuredDescription)
        assert result.accessibility.alt_text == "Red bicycle leaning against a brick wall"
        mock_client.complete.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_identical_request_served_from_cache(self, vision_service: VisionService, mock_client):
        options = AnalysisOptions(detail="standard")
        first = await vision_service.analyze_images(["img-1", "img-2"], options)
        second = await vision_service.analyze_images(["img-1", "img-2"], options)

        assert second == first
        assert mock_client.complete.await_count == 1
        snapshot = vision_service._metrics.snapshot()
        assert snapshot["cache_hits"] == 1
        assert snapshot["cache_misses"] == 1

    @pytest.mark.asyncio
    async def test_cache_expires(self, vision_service: VisionService, mock_client, clock):
        await vision_service.analyze_images(["img-1"])
        clock.advance(3601)
        await vision_service.analyze_images(["img-1"])
        assert mock_client.complete.await_count == 2

    @pytest.mark.asyncio
    async def test_force_refresh_bypasses_cache(self, vision_service: VisionService, mock_client):
        await vision_service.analyze_images(["img-1"])
        await vision_service.analyze_images(["img-1"], AnalysisOptions(force_refresh=True))
        assert mock_client.complete.await_count == 2

    @pytest.mark.asyncio
    async def test_cached_value_cannot_be_mutated_by_caller(self, vision_service: VisionService):
        first = await vision_service.analyze_images(["img-1"])
        first.accessibility.alt_text = "tampered"
        second = await vision_service.analyze_images(["img-1"])
        assert second.accessibility.alt_text != "tampered"

    @pytest.mark.parametrize("ids", [[], [f"img-{i}" for i in range(11)], ["img-1", " "]])
    @pytest.mark.asyncio
    async def test_invalid_id_list_rejected(self, vision_service: VisionService, mock_client, ids):
        with pytest.raises(VisionValidationError):
            await vision_service.analyze_images(ids)
        mock_client.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_image(self, vision_service: VisionService, mock_image_source):
        mock_image_source.load.side_effect = ImageNotFoundError("missing")
        with pytest.raises(ImageNotFoundError):
            await vision_service.analyze_images(["missing"])

    @pytest.mark.asyncio
    async def test_partial_response_is_salvaged(self, vision_service: VisionService, mock_client):
        mock_client.complete.return_value = vision_response({"accessibility": {"alt_text": "A kite"}})
        result = await vision_service.analyze_images(["img-1"])

        assert result.accessibility.alt_text == "A kite"
        assert SALVAGE_NOTE in result.metadata.processing_notes

    @pytest.mark.asyncio
    async def test_unparseable_response_raises_without_retry(
        self, vision_service: VisionService, mock_client
    ):
        mock_client.complete.return_value = vision_response("I cannot help with that")
        with pytest.raises(VisionValidationError):
            await vision_service.analyze_images(["img-1"])
        assert mock_client.complete.await_count == 1

    @pytest.mark.asyncio
    async def test_pii_in_output_is_redacted(self, vision_service: VisionService, mock_client):
        data = description_json()
        data["content"]["text_content"] = ["Email me: someone@example.com"]
        mock_client.complete.return_value = vision_response(data)

        result = await vision_service.analyze_images(["img-1"])

        assert result.content.text_content == ["Email me: [EMAIL_REDACTED]"]
        assert result.safety_flags.pii_detected is True
        assert "PII detected and redacted: email" in result.metadata.processing_notes


class TestModerationInPipeline:
    @pytest.mark.asyncio
    async def test_moderation_flags_merged_into_result(
        self, vision_service: VisionService, mock_classifier
    ):
        mock_classifier.classify.return_value = ModerationResult(
            safe=True, severity="low", flags=ModerationFlags(violence=True), recommended_action="warn",
            description="cartoon violence",
        )
        result = await vision_service.analyze_images(["img-1"])

        assert result.safety_flags.violence is True
        assert result.metadata.sensitive_content is True
        assert result.metadata.processing_notes[0] == "Content advisory: cartoon violence"

    @pytest.mark.asyncio
    async def test_blocked_content_short_circuits_and_is_cached(
        self, vision_service: VisionService, mock_client, mock_classifier, clock
    ):
        mock_classifier.classify.return_value = ModerationResult(
            safe=False, severity="critical", recommended_action="block", description="gore"
        )
        first = await vision_service.analyze_images(["img-1"])
        second = await vision_service.analyze_images(["img-1"])

        assert first.content.primary_subjects == ["blocked_content"]
        assert second == first
        mock_client.complete.assert_not_awaited()
        assert mock_classifier.classify.await_count == 1

        clock.advance(301)
        await vision_service.analyze_images(["img-1"])
        assert mock_classifier.classify.await_count == 2

    @pytest.mark.asyncio
    async def test_minor_fail_closed_never_calls_vision(
        self, vision_service: VisionService, mock_client, mock_classifier
    ):
        mock_classifier.classify.side_effect = RemoteCallError(
            "moderation down", ErrorKind.NETWORK, retryable=True
        )
        with pytest.raises(ModerationError):
            await vision_service.analyze_images(["img-1"], AnalysisOptions(target_age=12))
        mock_client.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_adult_fail_open_is_noted(
        self, vision_service: VisionService, mock_client, mock_classifier
    ):
        mock_classifier.classify.side_effect = RemoteCallError(
            "moderation down", ErrorKind.NETWORK, retryable=True
        )
        result = await vision_service.analyze_images(["img-1"], AnalysisOptions(target_age=30))

        assert UNMODERATED_NOTE in result.metadata.processing_notes
        mock_client.complete.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_content_filtered_for_age(self, vision_service: VisionService, mock_classifier):
        mock_classifier.classify.return_value = ModerationResult(
            safe=True, severity="low", recommended_action="warn"
        )
        with pytest.raises(ContentFilteredError):
            await vision_service.analyze_images(["img-1"], AnalysisOptions(target_age=9))


class TestRemoteFailures:
    @pytest.mark.asyncio
    async def test_exhausted_transient_failures_yield_fallback(
        self, vision_service: VisionService, mock_client, sleeps, clock
    ):
        mock_client.complete.side_effect = _network_error()
        result = await vision_service.analyze_images(["img-1", "img-2"])

        assert mock_client.complete.await_count == 3
        assert len(sleeps) == 2
        assert result.accessibility.alt_text == "Images from user library"
        assert result.metadata.processing_notes[0].startswith(FALLBACK_NOTE_PREFIX)
        snapshot = vision_service._metrics.snapshot()
        assert snapshot["failed_requests"] == 1
        assert snapshot["error_counts"] == {"network": 1}

        # fallback cached with the short TTL
        mock_client.complete.side_effect = None
        await vision_service.analyze_images(["img-1", "img-2"])
        assert mock_client.complete.await_count == 3
        clock.advance(301)
        await vision_service.analyze_images(["img-1", "img-2"])
        assert mock_client.complete.await_count == 4

    @pytest.mark.asyncio
    async def test_open_breaker_rejects_without_remote_call(
        self, vision_service: VisionService, mock_client
    ):
        mock_client.complete.side_effect = _network_error()
        # each request spends 3 attempts but counts as one breaker failure
        for i in range(5):
            await vision_service.analyze_images([f"img-{i}"])
        calls = mock_client.complete.await_count

        with pytest.raises(IrisError) as exc_info:
            await vision_service.analyze_images(["img-new"])
        assert exc_info.value.kind == ErrorKind.BREAKER_OPEN
        assert mock_client.complete.await_count == calls

    @pytest.mark.asyncio
    async def test_unexpected_error_wrapped_once(self, vision_service: VisionService, mock_client):
        mock_client.complete.side_effect = KeyError("choices")
        with pytest.raises(IrisError) as exc_info:
            await vision_service.analyze_images(["img-1"])

        assert exc_info.value.kind == ErrorKind.NETWORK
        assert exc_info.value.retryable is True
        assert isinstance(exc_info.value.__cause__, KeyError)

    @pytest.mark.asyncio
    async def test_cancelled_request_caches_nothing(
        self, vision_service: VisionService, mock_client
    ):
        started = asyncio.Event()

        async def hang(*args, **kwargs):
            started.set()
            await asyncio.Event().wait()

        mock_client.complete.side_effect = hang
        task = asyncio.create_task(vision_service.analyze_images(["img-1"]))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert vision_service._cache.size() == 0


class TestAnalyzeVideoFrames:
    @staticmethod
    def _frames(n: int) -> list[VideoFrame]:
        return [VideoFrame(timestamp=float(i), data=b"jpeg") for i in range(n)]

    @pytest.mark.asyncio
    async def test_two_pass_end_to_end(self, vision_service: VisionService, mock_client, mock_classifier):
        pass1 = video_json(
            uncertainty_notes=["a", "b", "c", "d"],
            scene_segments=[
                {"start_time": 0, "end_time": 3, "summary": "intro"},
                {"start_time": 12, "end_time": 14, "summary": "turn"},
            ],
        )
        pass2 = video_json(
            uncertainty_notes=["resolved mostly"],
            scene_segments=[{"start_time": 1, "end_time": 2, "summary": "dog jumps"}],
        )
        mock_client.complete.side_effect = [vision_response(pass1), vision_response(pass2)]

        result = await vision_service.analyze_video_frames(
            "vid-1", self._frames(20), VideoOptions(duration=20.0)
        )

        assert isinstance(result, VideoAnalysis)
        assert len(result.scene_segments) == 3
        assert result.uncertainty_notes == ["resolved mostly"]
        assert TWO_PASS_NOTE in result.metadata.processing_notes
        assert result.duration_seconds == 20.0

        # the pass-1 sample first, then only the segment frames it skipped
        first_screen, second_screen = mock_classifier.classify.await_args_list
        assert len(first_screen.args[0]) == 7
        assert [i.id for i in second_screen.args[0]] == [
            "vid-1@1.000",
            "vid-1@2.000",
            "vid-1@13.000",
            "vid-1@14.000",
        ]

        first_call, second_call = mock_client.complete.await_args_list
        assert first_call.args[1].max_tokens == 800
        assert second_call.args[1].max_tokens == 1200
        detail_images = [p for p in second_call.args[0][-1]["content"] if p["type"] == "image_url"]
        assert len(detail_images) == 7  # frames 0-3 and 12-14

    @staticmethod
    def _frames_with_unsafe_at(n: int, unsafe_index: int) -> list[VideoFrame]:
        return [
            VideoFrame(timestamp=float(i), data=b"unsafe" if i == unsafe_index else b"jpeg")
            for i in range(n)
        ]

    @staticmethod
    def _uncertain_pass1() -> dict:
        return video_json(
            uncertainty_notes=["a", "b", "c", "d"],
            scene_segments=[{"start_time": 0, "end_time": 3, "summary": "intro"}],
        )

    @pytest.mark.asyncio
    async def test_unsafe_segment_frame_blocks_detail_pass(
        self, vision_service: VisionService, mock_client, mock_classifier
    ):
        async def classify(images, target_age):
            if any(image.data == b"unsafe" for image in images):
                return ModerationResult(
                    safe=False,
                    severity="critical",
                    flags=ModerationFlags(violence=True),
                    recommended_action="block",
                    description="graphic violence",
                )
            return ModerationResult(safe=True)

        mock_classifier.classify.side_effect = classify
        mock_client.complete.return_value = vision_response(self._uncertain_pass1())
        # stride 3 samples frame 0 and 3; frame 1 only enters through the segment
        frames = self._frames_with_unsafe_at(20, 1)
        options = VideoOptions(target_age=10)

        result = await vision_service.analyze_video_frames("vid-1", frames, options)

        assert result.content.primary_subjects == ["blocked_content"]
        assert result.safety_flags.violence is True
        assert result.metadata.sensitive_content is True
        mock_client.complete.assert_awaited_once()
        sent = [p for p in mock_client.complete.await_args.args[0][-1]["content"] if p["type"] == "image_url"]
        assert len(sent) == 7

        again = await vision_service.analyze_video_frames("vid-1", frames, options)
        assert again == result
        mock_client.complete.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_segment_frame_filtered_for_age(
        self, vision_service: VisionService, mock_client, mock_classifier
    ):
        async def classify(images, target_age):
            if any(image.data == b"unsafe" for image in images):
                return ModerationResult(safe=True, severity="low", recommended_action="warn")
            return ModerationResult(safe=True)

        mock_classifier.classify.side_effect = classify
        mock_client.complete.return_value = vision_response(self._uncertain_pass1())

        with pytest.raises(ContentFilteredError):
            await vision_service.analyze_video_frames(
                "vid-1", self._frames_with_unsafe_at(20, 2), VideoOptions(target_age=10)
            )
        mock_client.complete.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_video_cached(self, vision_service: VisionService, mock_client):
        mock_client.complete.return_value = vision_response(video_json())
        frames = self._frames(5)
        await vision_service.analyze_video_frames("vid-1", frames)
        await vision_service.analyze_video_frames("vid-1", frames)
        assert mock_client.complete.await_count == 1

    @pytest.mark.asyncio
    async def test_unordered_frames_rejected(self, vision_service: VisionService):
        frames = [VideoFrame(timestamp=2.0, data=b"a"), VideoFrame(timestamp=1.0, data=b"b")]
        with pytest.raises(VisionValidationError):
            await vision_service.analyze_video_frames("vid-1", frames)

    @pytest.mark.asyncio
    async def test_video_fallback(self, vision_service: VisionService, mock_client):
        mock_client.complete.side_effect = _network_error()
        result = await vision_service.analyze_video_frames("vid-1", self._frames(3))

        assert isinstance(result, VideoAnalysis)
        assert result.accessibility.alt_text == "Image from user library"


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_healthy(self, vision_service: VisionService):
        report = await vision_service.health_check()
        assert report["healthy"] is True
        assert report["details"]["breaker"]["state"] == "closed"
        assert report["details"]["cache_size"] == 0
        assert "success_rate" in report["details"]["metrics"]

    @pytest.mark.asyncio
    async def test_unhealthy_when_probe_fails(self, vision_service: VisionService, mock_client):
        mock_client.probe.return_value = {"healthy": False, "latency_ms": 5000.0, "error": "HTTP 503"}
        assert (await vision_service.health_check())["healthy"] is False

    @pytest.mark.asyncio
    async def test_unhealthy_when_breaker_open(self, vision_service: VisionService, mock_client):
        mock_client.complete.side_effect = _network_error()
        for i in range(5):
            await vision_service.analyze_images([f"img-{i}"])
        report = await vision_service.health_check()
        assert report["healthy"] is False
        assert report["details"]["breaker"]["state"] == "open"
