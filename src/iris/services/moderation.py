"""Content moderation gate.

Runs before any paid inference call. Classifier availability is never a
policy bypass for minors: if the classifier fails and the audience is under
18, the request is blocked.
"""

import asyncio
import base64
import logging
import typing
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol, TypeVar

import httpx

from iris.config import Settings
from iris.exceptions import (
    ContentFilteredError,
    ErrorKind,
    FallbackStrategy,
    ModerationError,
    RemoteCallError,
)
from iris.schemas.moderation import (
    ModerationAction,
    ModerationFlags,
    ModerationResult,
    Severity,
)
from iris.schemas.vision import AnalysisOptions, ImageData, StructuredDescription
from iris.services.prompts import build_moderation_messages
from iris.services.validator import coalesce
from iris.services.vision_client import VisionClient
from iris.utils.llm_parse import parse_json_object

logger = logging.getLogger(__name__)

D = TypeVar("D", bound=StructuredDescription)

_SEVERITIES = typing.get_args(Severity)
_ACTIONS = typing.get_args(ModerationAction)

CHILD_AGE = 13
ADULT_AGE = 18


class ModerationClassifier(Protocol):
    async def classify(
        self, images: Sequence[ImageData], target_age: int | None
    ) -> ModerationResult: ...


# ------------------------------------------------------------------ #
#  Classifiers
# ------------------------------------------------------------------ #


class LLMModerationClassifier:
    """Moderation via a chat-completions deployment.

    Fields the model leaves out are filled with the cautious value
    (unsafe, medium severity, warn) rather than the permissive one.
    """

    def __init__(self, client: VisionClient, max_tokens: int = 300) -> None:
        self._client = client
        self._max_tokens = max_tokens

    async def classify(
        self, images: Sequence[ImageData], target_age: int | None
    ) -> ModerationResult:
        params = self._client.default_parameters(
            max_tokens=self._max_tokens, temperature=0.0
        )
        response = await self._client.complete(
            build_moderation_messages(images, target_age), params
        )
        return cautious_result(parse_json_object(response.content))

    async def close(self) -> None:
        await self._client.close()


def cautious_result(data: dict) -> ModerationResult:
    severity = data.get("severity")
    action = data.get("recommended_action")
    return ModerationResult(
        safe=data.get("safe") is True,
        severity=severity if severity in _SEVERITIES else "medium",
        flags=coalesce(ModerationFlags, data.get("flags")),
        recommended_action=action if action in _ACTIONS else "warn",
        description=str(data.get("description") or ""),
    )


class ContentSafetyClassifier:
    """Dedicated content-safety endpoint (image:analyze).

    Each image is analyzed separately; the worst severity per category wins.
    """

    API_VERSION = "2023-10-01"
    CATEGORIES = ("Hate", "SelfHarm", "Sexual", "Violence")

    def __init__(
        self,
        endpoint: str,
        key: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = (
            f"{endpoint.rstrip('/')}/contentsafety/image:analyze"
            f"?api-version={self.API_VERSION}"
        )
        self._client = httpx.AsyncClient(
            headers={"Ocp-Apim-Subscription-Key": key},
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def classify(
        self, images: Sequence[ImageData], target_age: int | None
    ) -> ModerationResult:
        worst: dict[str, int] = {}
        for image in images:
            for category, level in (await self._analyze(image)).items():
                worst[category] = max(worst.get(category, 0), level)
        return result_from_severities(worst)

    async def _analyze(self, image: ImageData) -> dict[str, int]:
        payload = {
            "image": {"content": base64.b64encode(image.data).decode("ascii")},
            "categories": list(self.CATEGORIES),
        }
        try:
            response = await self._client.post(self._url, json=payload)
        except httpx.HTTPError as e:
            raise RemoteCallError(
                f"Content safety call failed: {e}", ErrorKind.NETWORK, retryable=True
            ) from e
        if response.status_code >= 400:
            raise RemoteCallError(
                f"Content safety unavailable: {response.status_code}",
                ErrorKind.NETWORK,
                retryable=True,
                status_code=response.status_code,
            )
        analysis = response.json().get("categoriesAnalysis") or []
        return {c["category"]: int(c.get("severity") or 0) for c in analysis}

    async def close(self) -> None:
        await self._client.aclose()


def severity_label(level: int) -> Severity:
    if level >= 6:
        return "critical"
    if level >= 4:
        return "high"
    if level >= 2:
        return "medium"
    if level >= 1:
        return "low"
    return "none"


def result_from_severities(levels: dict[str, int]) -> ModerationResult:
    top = max(levels.values(), default=0)
    if top >= 4:
        action: ModerationAction = "block"
    elif top >= 2:
        action = "warn"
    else:
        action = "allow"
    return ModerationResult(
        safe=top <= 2,
        severity=severity_label(top),
        flags=ModerationFlags(
            violence=levels.get("Violence", 0) > 2,
            adult_content=levels.get("Sexual", 0) > 2,
            hate_speech=levels.get("Hate", 0) > 2,
            self_harm=levels.get("SelfHarm", 0) > 2,
        ),
        recommended_action=action,
        description=", ".join(f"{k}: {v}" for k, v in sorted(levels.items())),
    )


class LayeredClassifier:
    """Primary classifier with an LLM backup.

    - primary missing or failing: the backup decides
    - minors: a "safe" primary verdict is double-checked by the backup and
      the more conservative answer wins
    - children: any flag or non-none severity is escalated to block
    """

    def __init__(
        self,
        backup: ModerationClassifier,
        primary: ModerationClassifier | None = None,
    ) -> None:
        self._primary = primary
        self._backup = backup

    async def classify(
        self, images: Sequence[ImageData], target_age: int | None
    ) -> ModerationResult:
        result = await self._classify(images, target_age)
        if target_age is not None and target_age < CHILD_AGE:
            if result.flags.any() or result.severity != "none":
                result = result.model_copy(
                    update={"safe": False, "recommended_action": "block"}
                )
        return result

    async def _classify(
        self, images: Sequence[ImageData], target_age: int | None
    ) -> ModerationResult:
        if self._primary is not None:
            try:
                primary = await self._primary.classify(images, target_age)
            except Exception as e:
                logger.warning("Primary moderation failed, using backup: %s", e)
            else:
                if target_age is not None and target_age < ADULT_AGE and primary.safe:
                    backup = await self._backup.classify(images, target_age)
                    if not backup.safe:
                        return backup
                return primary
        return await self._backup.classify(images, target_age)

    async def close(self) -> None:
        for classifier in (self._primary, self._backup):
            close = getattr(classifier, "close", None)
            if close is not None:
                await close()


# ------------------------------------------------------------------ #
#  Gate
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class ModerationOutcome:
    result: ModerationResult | None
    ran: bool
    failed_open: bool = False

    @property
    def blocked(self) -> bool:
        return self.result is not None and self.result.recommended_action == "block"


class ModerationGate:
    def __init__(self, classifier: ModerationClassifier, settings: Settings) -> None:
        self._classifier = classifier
        self._enabled = settings.moderation_enabled
        self._may_fail_open = settings.moderation_may_fail_open

    async def screen(
        self, images: Sequence[ImageData], options: AnalysisOptions
    ) -> ModerationOutcome:
        """Classify ``images`` and enforce the age / strictness policy.

        Raises:
            ModerationError: classifier unavailable and policy forbids
                continuing (minor audience, or strict mode)
            ContentFilteredError: content inappropriate for ``target_age``
        """
        if not (self._enabled and options.moderation_enabled):
            return ModerationOutcome(result=None, ran=False)

        age = options.target_age
        try:
            result = await self._classifier.classify(images, age)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if age is not None and age < ADULT_AGE:
                logger.error("Moderation unavailable for age %d audience, blocking: %s", age, e)
                raise ModerationError(
                    "Content moderation unavailable; request blocked for under-18 audience"
                ) from e
            if not self._may_fail_open:
                logger.error("Moderation unavailable in strict mode, blocking: %s", e)
                raise ModerationError(
                    "Content moderation unavailable; request blocked in strict mode"
                ) from e
            logger.warning(
                "Moderation unavailable, continuing unmoderated for this request: %s", e
            )
            return ModerationOutcome(result=None, ran=False, failed_open=True)

        outcome = ModerationOutcome(result=result, ran=True)
        if outcome.blocked:
            logger.warning(
                "Content blocked by moderation (severity=%s): %s",
                result.severity,
                result.description,
            )
            return outcome

        if age is not None and not is_appropriate_for_age(result, age):
            raise ContentFilteredError(
                f"Content not appropriate for target age {age}",
                fallback=FallbackStrategy.GENERIC_DESCRIPTION,
            )
        return outcome


def is_appropriate_for_age(result: ModerationResult, target_age: int) -> bool:
    if target_age < CHILD_AGE:
        return result.safe and result.severity == "none" and not result.flags.any()
    if target_age < ADULT_AGE:
        return result.safe and result.severity != "critical"
    return result.safe


# ------------------------------------------------------------------ #
#  Post-processing
# ------------------------------------------------------------------ #

_WARNINGS: dict[str, str] = {
    "low": "Content advisory: {description}",
    "medium": "Content warning: this image contains {description}. Viewer discretion advised.",
    "high": (
        "Strong content warning: this image contains potentially disturbing "
        "content ({description}). Proceed with caution."
    ),
    "critical": (
        "Critical content warning: this image has been flagged for "
        "{description} and may violate platform policies."
    ),
}


def content_warning(result: ModerationResult) -> str | None:
    if result.recommended_action == "allow":
        return None
    template = _WARNINGS.get(result.severity)
    if template is None:
        return None
    return template.format(description=result.description or "flagged content")


def apply_flags(description: StructuredDescription, result: ModerationResult) -> None:
    """OR moderation flags into the model's own safety flags, in place.

    Moderation can only add caution: a flag the model set is never cleared.
    """
    flags = description.safety_flags
    mod = result.flags
    flags.violence = flags.violence or mod.violence
    flags.adult_content = flags.adult_content or mod.adult_content
    flags.pii_detected = flags.pii_detected or mod.pii_visible
    flags.substances = flags.substances or mod.illegal_activity

    if mod.any() or flags.any():
        description.metadata.sensitive_content = True


def merge_moderation(description: StructuredDescription, result: ModerationResult) -> None:
    apply_flags(description, result)
    warning = content_warning(result)
    if warning:
        description.metadata.processing_notes.insert(0, warning)


def blocked_description(result: ModerationResult, model_cls: type[D]) -> D:
    """Safe placeholder returned instead of an analysis for blocked content."""
    description = model_cls.model_validate(
        {
            "metadata": {
                "confidence": "high",
                "sensitive_content": True,
                "processing_notes": [f"Content blocked: {result.description}"],
            },
            "accessibility": {
                "alt_text": "Content not available due to safety policies",
                "long_description": "This content cannot be described due to safety policy violations.",
            },
            "content": {
                "primary_subjects": ["blocked_content"],
                "scene_description": "Content blocked by safety filters",
            },
            "generation_guidance": {
                "suggested_prompt": "Cannot provide prompt for blocked content",
                "technical_parameters": {"recommended_model": "none", "complexity_score": 0},
            },
            "uncertainty_notes": ["Content blocked by safety moderation"],
        }
    )
    apply_flags(description, result)
    return description
