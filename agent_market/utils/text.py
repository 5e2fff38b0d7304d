"""
Text processing utilities.

WHAT: Helpers for pulling structured JSON out of free-form model output
WHY: Oracle responses may wrap JSON in prose, code fences or thinking blocks
HOW: Try strict parse, then fenced block, then first '{' to last '}'
"""

import json
import re
from typing import Any

from .logger import get_logger

logger = get_logger(__name__)

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.IGNORECASE | re.DOTALL)
_THINK_PATTERN = re.compile(r"<think(?:ing)?>.*?</think(?:ing)?>\s*", re.IGNORECASE | re.DOTALL)


def strip_thinking(text: str) -> str:
    """Remove <think>...</think> reasoning blocks from model output."""
    return _THINK_PATTERN.sub("", text).strip()


def extract_json_object(text: str | None) -> dict[str, Any] | None:
    """
    Extract the first JSON object from model output.

    Args:
        text: Raw model output

    Returns:
        Parsed dict, or None if no JSON object could be recovered
    """
    if not text:
        return None

    cleaned = strip_thinking(text)
    candidates = [cleaned]

    fence_match = _FENCE_PATTERN.search(cleaned)
    if fence_match:
        candidates.append(fence_match.group(1))

    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start != -1 and end > start:
        candidates.append(cleaned[start:end + 1])

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data

    logger.debug(f"No JSON object found in text: {cleaned[:100]}")
    return None
