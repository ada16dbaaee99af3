from typing import Any

from pydantic import Base64Bytes, BaseModel, Field

from iris.schemas.vision import AnalysisOptions, VideoFrame, VideoOptions


class DescribeRequest(BaseModel):
    image_ids: list[str]
    options: AnalysisOptions = Field(default_factory=AnalysisOptions)


class VideoFrameIn(BaseModel):
    timestamp: float = Field(ge=0)
    data: Base64Bytes
    mime_type: str = "image/jpeg"

    def to_frame(self) -> VideoFrame:
        return VideoFrame(timestamp=self.timestamp, data=self.data, mime_type=self.mime_type)


class VideoRequest(BaseModel):
    video_id: str
    frames: list[VideoFrameIn]
    options: VideoOptions = Field(default_factory=VideoOptions)


class HealthResponse(BaseModel):
    healthy: bool
    details: dict[str, Any] = Field(default_factory=dict)
