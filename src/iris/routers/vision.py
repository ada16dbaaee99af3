from fastapi import APIRouter, Depends, HTTPException

from iris.dependencies import get_vision_service
from iris.exceptions import IrisError, http_status
from iris.schemas.api import DescribeRequest, VideoRequest
from iris.schemas.vision import StructuredDescription, VideoAnalysis
from iris.services.vision import VisionService

router = APIRouter(prefix="/api/v1/vision", tags=["vision"])


@router.post("/describe", response_model=StructuredDescription)
async def describe_images(
    body: DescribeRequest,
    vision: VisionService = Depends(get_vision_service),
) -> StructuredDescription:
    """Describe one or more media-library images as a single structured result."""
    try:
        return await vision.analyze_images(body.image_ids, body.options)
    except IrisError as e:
        raise HTTPException(status_code=http_status(e), detail=e.to_dict())


@router.post("/video", response_model=VideoAnalysis)
async def analyze_video(
    body: VideoRequest,
    vision: VisionService = Depends(get_vision_service),
) -> VideoAnalysis:
    """Analyze base64-encoded keyframes of a video, single- or two-pass."""
    frames = [f.to_frame() for f in body.frames]
    try:
        return await vision.analyze_video_frames(body.video_id, frames, body.options)
    except IrisError as e:
        raise HTTPException(status_code=http_status(e), detail=e.to_dict())
