"""Degraded, schema-valid descriptions served when the remote call cannot succeed."""

from collections.abc import Sequence
from typing import Any, TypeVar

from iris.exceptions import FallbackStrategy, IrisError
from iris.schemas.vision import StructuredDescription

D = TypeVar("D", bound=StructuredDescription)

FALLBACK_NOTE_PREFIX = "Fallback response due to: "


def create_fallback(
    strategy: FallbackStrategy | None,
    error: IrisError,
    identifiers: Sequence[str],
    model_cls: type[D] = StructuredDescription,
) -> D:
    data: dict[str, Any] = {
        "metadata": {"processing_notes": [f"{FALLBACK_NOTE_PREFIX}{error.message}"]},
        "accessibility": {
            "alt_text": "Image analysis unavailable",
            "long_description": "Unable to provide detailed description due to technical issues.",
        },
        "content": {"scene_description": "Analysis unavailable"},
        "generation_guidance": {
            "suggested_prompt": "Image analysis failed - manual prompt required"
        },
        "uncertainty_notes": ["Complete analysis unavailable due to service error"],
    }

    if strategy == FallbackStrategy.GENERIC_DESCRIPTION:
        n = len(identifiers)
        plural = "s" if n > 1 else ""
        data["accessibility"]["alt_text"] = f"Image{plural} from user library"
        data["accessibility"]["long_description"] = (
            f"This contains {n} user-generated image{plural} from the media library. "
            "Detailed analysis is not available at this time."
        )
        data["content"]["scene_description"] = (
            f"User library image{plural} - content analysis unavailable"
        )
    elif strategy == FallbackStrategy.REDUCE_DETAIL:
        data["metadata"]["processing_notes"].append(
            "Reduced detail analysis due to service constraints"
        )
        data["accessibility"]["alt_text"] = "Image content - full analysis unavailable"

    return model_cls.model_validate(data)
