"""Turn unreliable model text into a schema-conformant summary.

The text is expected to be JSON but frequently arrives fenced, truncated or
with trailing commas. :func:`parse_json_object` applies a fixed sequence of
cheap repairs; :func:`repair_summary` adds one corrective re-prompt and a
deterministic placeholder so a summary always exists.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

LOG = logging.getLogger("aligna.llm")

# field -> max items kept
ARRAY_FIELD_LIMITS: Dict[str, int] = {
    "strengths": 8,
    "risks": 8,
    "discussion_prompts": 12,
    "next_steps": 8,
}

PLACEHOLDER_HEADLINE = "Summary temporarily unavailable"
REASON_UNREPAIRABLE = "AI output could not be repaired into JSON."
REASON_INVALID_AFTER_REPAIR = "AI output was invalid JSON."

SOURCE_PARSED = "parsed"
SOURCE_CORRECTED = "corrected"
SOURCE_PLACEHOLDER = "placeholder"

_FENCE_OPEN = re.compile(r"^\s*```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```\s*$", re.IGNORECASE)
_LANG_TAG = re.compile(r"^\s*json\s*", re.IGNORECASE)
_TRAILING_COMMA = re.compile(r",\s*([}\]])")


class JsonRepairError(ValueError):
    pass


def strip_code_fences(text: str) -> str:
    t = (text or "").strip()
    t = _FENCE_OPEN.sub("", t)
    t = _FENCE_CLOSE.sub("", t)
    t = _LANG_TAG.sub("", t)
    return t.strip()


def extract_first_object(text: str) -> Optional[str]:
    t = strip_code_fences(text)
    start = t.find("{")
    if start < 0:
        return None

    depth = 0
    for i in range(start, len(t)):
        ch = t[i]
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return t[start : i + 1].strip()

    end = t.rfind("}")
    if end <= start:
        # Nothing closes; hand the tail to the bracket balancer.
        return t[start:].strip()
    return t[start : end + 1].strip()


def remove_trailing_commas(text: str) -> str:
    return _TRAILING_COMMA.sub(r"\1", text)


def balance_brackets(text: str) -> str:
    missing_square = max(0, text.count("[") - text.count("]"))
    missing_curly = max(0, text.count("{") - text.count("}"))
    return text + "]" * missing_square + "}" * missing_curly


def parse_json_object(raw: str) -> Dict[str, Any]:
    """Repair and parse ``raw``; raise :class:`JsonRepairError` on failure."""

    extracted = extract_first_object(raw)
    if not extracted:
        raise JsonRepairError("No JSON object found in model output")

    repaired = balance_brackets(remove_trailing_commas(extracted))
    try:
        parsed = json.loads(repaired)
    except ValueError as exc:
        raise JsonRepairError(f"JSON parse failed after repair: {exc}") from exc
    if not isinstance(parsed, dict):
        raise JsonRepairError("Parsed JSON is not an object")
    return parsed


def _as_text(value: Any) -> str:
    # Mirror JS String(): null/true/false spelled the JSON way
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def enforce_shape(obj: Mapping[str, Any]) -> Dict[str, Any]:
    """Coerce to the five summary fields and cap each list. Idempotent."""

    headline = obj.get("headline")
    shaped: Dict[str, Any] = {"headline": headline if isinstance(headline, str) else ""}
    for field, limit in ARRAY_FIELD_LIMITS.items():
        items = obj.get(field)
        shaped[field] = [_as_text(v) for v in items][:limit] if isinstance(items, list) else []
    return shaped


def placeholder_summary(reason: str) -> Dict[str, Any]:
    return {
        "headline": PLACEHOLDER_HEADLINE,
        "strengths": ["Try generating again in a moment."],
        "risks": [reason],
        "discussion_prompts": [
            "What felt most aligned during this session?",
            "What topic felt most different, and why?",
        ],
        "next_steps": ["Retry generating the summary.", "Discuss one key mismatch together."],
    }


@dataclass(frozen=True)
class RepairResult:
    summary: Dict[str, Any]
    source: str
    reason: Optional[str] = None

    @property
    def is_placeholder(self) -> bool:
        return self.source == SOURCE_PLACEHOLDER


def repair_summary(raw: str, corrector: Callable[[str], Optional[str]]) -> RepairResult:
    """Parse ``raw``; on failure ask ``corrector`` for one fixed version.

    ``corrector`` receives the broken text and returns the model's corrected
    text, or ``None`` when the corrective call itself did not succeed.
    """

    try:
        return RepairResult(enforce_shape(parse_json_object(raw)), SOURCE_PARSED)
    except JsonRepairError as exc:
        LOG.info("model_output_unparseable", extra={"reason": str(exc)})

    corrected = corrector(raw)
    if corrected is None:
        return RepairResult(enforce_shape(placeholder_summary(REASON_UNREPAIRABLE)), SOURCE_PLACEHOLDER, REASON_UNREPAIRABLE)

    try:
        return RepairResult(enforce_shape(parse_json_object(corrected)), SOURCE_CORRECTED)
    except JsonRepairError as exc:
        LOG.warning("corrected_output_unparseable", extra={"reason": str(exc)})
        return RepairResult(
            enforce_shape(placeholder_summary(REASON_INVALID_AFTER_REPAIR)),
            SOURCE_PLACEHOLDER,
            REASON_INVALID_AFTER_REPAIR,
        )


def dumps_summary(summary: Mapping[str, Any]) -> str:
    return json.dumps(summary, ensure_ascii=False)


def loads_summary(stored: str) -> Dict[str, Any]:
    """Read a stored summary string back into shape; unreadable text becomes the headline."""
    try:
        return enforce_shape(parse_json_object(stored))
    except JsonRepairError:
        return enforce_shape({"headline": stored})
