"""
Parse untrusted oracle replies into typed results.

Replies are free text that may wrap JSON in prose or markdown fences.
Every parser returns Ok(value) or Malformed(raw_text, reason); nothing
here raises on bad input.
"""

import json
import logging
import math
from typing import Any, List, Optional

from ai.schemas import (
    Malformed,
    Ok,
    Parsed,
    ReflectionVerdict,
    TradingDecision,
    VALID_ACTIONS,
)

logger = logging.getLogger(__name__)

_decoder = json.JSONDecoder()


def _extract_first(text: str, opener: str, kind: type) -> Optional[Any]:
    if not text:
        return None
    start = text.find(opener)
    while start != -1:
        try:
            value, _ = _decoder.raw_decode(text, start)
        except ValueError:
            value = None
        if isinstance(value, kind):
            return value
        start = text.find(opener, start + 1)
    return None


def extract_json_object(text: str) -> Optional[dict]:
    """First well-formed JSON object embedded in `text`, or None."""
    return _extract_first(text, "{", dict)


def extract_json_array(text: str) -> Optional[list]:
    """First well-formed JSON array embedded in `text`, or None."""
    return _extract_first(text, "[", list)


def _as_number(value: Any) -> Optional[float]:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    number = float(value)
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def parse_decision(text: str) -> Parsed:
    obj = extract_json_object(text)
    if obj is None:
        return Malformed(text or "", "no JSON object in reply")

    action = obj.get("action")
    if isinstance(action, str):
        action = action.strip().upper()
    if action not in VALID_ACTIONS:
        return Malformed(text, f"invalid action {obj.get('action')!r}")

    confidence = _as_number(obj.get("confidence"))
    if confidence is None or not 0 <= confidence <= 100:
        return Malformed(text, f"invalid confidence {obj.get('confidence')!r}")

    reasoning = obj.get("reasoning")
    if not isinstance(reasoning, str):
        return Malformed(text, "reasoning missing or not a string")

    size_usd = _as_number(obj.get("size_usd", 0 if action == "HOLD" else None))
    if size_usd is None or size_usd < 0:
        return Malformed(text, f"invalid size_usd {obj.get('size_usd')!r}")

    if action == "HOLD":
        size_usd = 0.0

    return Ok(TradingDecision(
        action=action,
        confidence=confidence,
        reasoning=reasoning,
        size_usd=size_usd,
    ))


def parse_reflection(text: str) -> Parsed:
    obj = extract_json_object(text)
    if obj is None:
        return Malformed(text or "", "no JSON object in reply")
    approved = obj.get("approved")
    if not isinstance(approved, bool):
        return Malformed(text, f"approved is not a boolean: {approved!r}")
    reason = obj.get("reason")
    return Ok(ReflectionVerdict(approved=approved, reason=str(reason) if reason is not None else ""))


def parse_recommendations(text: str) -> Parsed:
    """Raw recommendation objects; business filtering happens in the portfolio manager."""
    arr = extract_json_array(text)
    if arr is None:
        return Malformed(text or "", "no JSON array in reply")
    items: List[dict] = [item for item in arr if isinstance(item, dict)]
    if len(items) != len(arr):
        logger.debug(f"Dropped {len(arr) - len(items)} non-object recommendation entries")
    return Ok(items)
