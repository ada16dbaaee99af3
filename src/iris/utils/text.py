"""Free-text screening for generated descriptions: PII redaction and risky phrasing."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from iris.schemas.vision import StructuredDescription

# Order matters: card numbers before phone numbers so 16-digit runs are not
# half-matched as phones.
_PII_PATTERNS: list[tuple[str, re.Pattern[str], str]] = [
    ("email", re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[EMAIL_REDACTED]"),
    ("ssn", re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), "[SSN_REDACTED]"),
    ("card", re.compile(r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b"), "[CARD_REDACTED]"),
    (
        "phone",
        re.compile(r"(?<!\w)(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b"),
        "[PHONE_REDACTED]",
    ),
]

_RISK_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (
        re.compile(r"\b(?:kill|murder|harm)\s+(?:yourself|myself|themselves)\b", re.IGNORECASE),
        "Self-harm language detected",
    ),
    (
        re.compile(r"\b(?:nazi|hitler|holocaust\s+denial)\b", re.IGNORECASE),
        "Hate speech indicators detected",
    ),
    (
        re.compile(r"\b(?:how\s+to\s+make|instructions\s+for)\b.*?\b(?:bomb|explosive|weapon)s?\b", re.IGNORECASE),
        "Dangerous instructions detected",
    ),
]


def redact_pii(text: str) -> tuple[str, list[str]]:
    """Redact PII in one string. Returns (redacted_text, kinds_found)."""
    found: list[str] = []
    for kind, pattern, replacement in _PII_PATTERNS:
        text, count = pattern.subn(replacement, text)
        if count:
            found.append(kind)
    return text, found


def find_risk_issues(text: str) -> list[str]:
    return [issue for pattern, issue in _RISK_PATTERNS if pattern.search(text)]


def _redact_list(items: list[str], found: set[str]) -> list[str]:
    out = []
    for item in items:
        redacted, kinds = redact_pii(item)
        found.update(kinds)
        out.append(redacted)
    return out


def screen_description(description: StructuredDescription) -> list[str]:
    """Redact PII in the free-text fields in place; return processing notes.

    Only user-facing prose is touched (alt text, long description, scene
    description, visible text, suggested prompt, and for video the keyframe and
    segment summaries); enum-like fields are left alone.
    """
    found: set[str] = set()
    acc = description.accessibility
    content = description.content
    guidance = description.generation_guidance

    for obj, attr in (
        (acc, "alt_text"),
        (acc, "long_description"),
        (content, "scene_description"),
        (guidance, "suggested_prompt"),
    ):
        redacted, kinds = redact_pii(getattr(obj, attr))
        found.update(kinds)
        setattr(obj, attr, redacted)
    content.text_content = _redact_list(content.text_content, found)

    for item in getattr(description, "keyframes", []) + getattr(description, "scene_segments", []):
        redacted, kinds = redact_pii(item.summary)
        found.update(kinds)
        item.summary = redacted

    notes = [f"PII detected and redacted: {kind}" for kind in sorted(found)]
    if found:
        description.safety_flags.pii_detected = True

    prose = " ".join(
        [acc.alt_text, acc.long_description, content.scene_description, guidance.suggested_prompt]
    )
    notes.extend(find_risk_issues(prose))
    return notes
