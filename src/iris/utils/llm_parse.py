"""Model output parsing utilities.

Vision deployments occasionally wrap their JSON in markdown fences or emit
reasoning tags despite the response format; strip those before parsing.
"""

import json
import re

_THINK_PAIR_RE = re.compile(r"<think>.*?</think>", re.DOTALL)
_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)


def strip_wrappers(text: str) -> str:
    """Remove <think>...</think> blocks and markdown code fences."""
    text = _THINK_PAIR_RE.sub("", text)
    return _FENCE_RE.sub("", text).strip()


def extract_json_object(text: str) -> str:
    """Cut the outermost ``{...}`` span out of model output."""
    text = strip_wrappers(text)
    start = text.find("{")
    end = text.rfind("}")
    if start >= 0 and end > start:
        return text[start : end + 1]
    return text


def parse_json_object(text: str) -> dict:
    """Parse model output as a JSON object.

    Raises:
        ValueError: output is not JSON, or the top-level value is not an object
    """
    data = json.loads(extract_json_object(text))
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data
