"""Structured output schemas for vision analysis.

Every field carries the documented default used when a partially-invalid model
response is salvaged, so a complete instance can always be rebuilt.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class VisionMetadata(BaseModel):
    language: str = "en"
    confidence: Literal["high", "medium", "low"] = "low"
    content_type: Literal[
        "photograph", "illustration", "screenshot", "diagram", "artwork", "other"
    ] = "other"
    sensitive_content: bool = False
    processing_notes: list[str] = Field(default_factory=list)


class ColorAccessibility(BaseModel):
    relies_on_color: bool = False
    color_blind_safe: bool = True


class Accessibility(BaseModel):
    alt_text: str = "Image description unavailable"
    long_description: str = "Detailed description could not be generated."
    reading_level: int = Field(default=8, ge=1, le=20)
    color_accessibility: ColorAccessibility = Field(default_factory=ColorAccessibility)


class VisualElements(BaseModel):
    composition: str = "unavailable"
    lighting: str = "unavailable"
    colors: list[str] = Field(default_factory=list)
    style: str = "unavailable"
    mood: str = "unavailable"


class Content(BaseModel):
    primary_subjects: list[str] = Field(default_factory=lambda: ["unknown"])
    scene_description: str = "Description unavailable"
    visual_elements: VisualElements = Field(default_factory=VisualElements)
    text_content: list[str] = Field(default_factory=list)
    spatial_layout: str = "unavailable"


class TechnicalParameters(BaseModel):
    aspect_ratio: str = "unknown"
    recommended_model: str = "gpt-image-1"
    complexity_score: float = Field(default=5, ge=0, le=10)


class GenerationGuidance(BaseModel):
    suggested_prompt: str = "Manual prompt required"
    style_keywords: list[str] = Field(default_factory=list)
    technical_parameters: TechnicalParameters = Field(
        default_factory=TechnicalParameters
    )


class SafetyFlags(BaseModel):
    violence: bool = False
    adult_content: bool = False
    pii_detected: bool = False
    medical_content: bool = False
    weapons: bool = False
    substances: bool = False

    def any(self) -> bool:
        return any(self.model_dump().values())


class StructuredDescription(BaseModel):
    metadata: VisionMetadata = Field(default_factory=VisionMetadata)
    accessibility: Accessibility = Field(default_factory=Accessibility)
    content: Content = Field(default_factory=Content)
    generation_guidance: GenerationGuidance = Field(default_factory=GenerationGuidance)
    safety_flags: SafetyFlags = Field(default_factory=SafetyFlags)
    uncertainty_notes: list[str] = Field(default_factory=list)


class VideoKeyframe(BaseModel):
    timestamp: float
    summary: str = ""


class SceneSegment(BaseModel):
    start_time: float
    end_time: float
    summary: str = ""


class TemporalAnalysis(BaseModel):
    continuity: str = "unknown"
    pace: str = "unknown"
    camera_movement: str = "unknown"


class VideoAnalysis(StructuredDescription):
    duration_seconds: float = 0.0
    keyframes: list[VideoKeyframe] = Field(default_factory=list)
    scene_segments: list[SceneSegment] = Field(default_factory=list)
    actions: list[str] = Field(default_factory=list)
    temporal_analysis: TemporalAnalysis = Field(default_factory=TemporalAnalysis)


# ------------------------------------------------------------------ #
#  Requests
# ------------------------------------------------------------------ #

Audience = Literal["general", "technical", "child", "academic"]
DetailLevel = Literal["brief", "standard", "detailed", "comprehensive"]
Tone = Literal["formal", "casual", "technical", "creative"]


class AnalysisOptions(BaseModel):
    """Caller options for one analysis request. Immutable once constructed."""

    model_config = ConfigDict(frozen=True)

    purpose: str | None = None
    audience: Audience | None = None
    language: str | None = Field(default=None, pattern=r"^[a-z]{2}$")
    detail: DetailLevel | None = None
    tone: Tone | None = None
    focus: tuple[str, ...] = ()
    specific_questions: str | None = None
    moderation_enabled: bool = True
    target_age: int | None = Field(default=None, ge=0, le=150)
    force_refresh: bool = False


class VideoOptions(AnalysisOptions):
    video_mode: Literal["auto", "single", "two_pass"] = "auto"
    duration: float | None = Field(default=None, ge=0)
    width: int | None = Field(default=None, gt=0)
    height: int | None = Field(default=None, gt=0)


class AnalysisRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    image_ids: tuple[str, ...]
    options: AnalysisOptions = Field(default_factory=AnalysisOptions)


class ImageData(BaseModel):
    """Raw image bytes handed to the moderation classifier and the vision call."""

    model_config = ConfigDict(frozen=True)

    id: str
    data: bytes
    mime_type: str = "image/png"


class VideoFrame(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: float = Field(ge=0)
    data: bytes
    mime_type: str = "image/jpeg"

    def as_image(self, video_id: str) -> ImageData:
        return ImageData(
            id=f"{video_id}@{self.timestamp:.3f}",
            data=self.data,
            mime_type=self.mime_type,
        )
