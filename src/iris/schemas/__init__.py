"""Iris schemas."""

from iris.schemas.moderation import ModerationFlags, ModerationResult
from iris.schemas.vision import (
    AnalysisOptions,
    AnalysisRequest,
    ImageData,
    SafetyFlags,
    SceneSegment,
    StructuredDescription,
    VideoAnalysis,
    VideoFrame,
    VideoOptions,
)

__all__ = [
    "AnalysisOptions",
    "AnalysisRequest",
    "ImageData",
    "ModerationFlags",
    "ModerationResult",
    "SafetyFlags",
    "SceneSegment",
    "StructuredDescription",
    "VideoAnalysis",
    "VideoFrame",
    "VideoOptions",
]
