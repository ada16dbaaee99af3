from typing import Literal

from pydantic import BaseModel, Field

Severity = Literal["none", "low", "medium", "high", "critical"]
ModerationAction = Literal["allow", "warn", "block"]


class ModerationFlags(BaseModel):
    violence: bool = False
    adult_content: bool = False
    hate_speech: bool = False
    illegal_activity: bool = False
    self_harm: bool = False
    pii_visible: bool = False

    def any(self) -> bool:
        return any(self.model_dump().values())


class ModerationResult(BaseModel):
    """Safety verdict produced once per request by the moderation gate."""

    safe: bool
    severity: Severity = "none"
    flags: ModerationFlags = Field(default_factory=ModerationFlags)
    recommended_action: ModerationAction = "allow"
    description: str = ""
