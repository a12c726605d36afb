from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..domain.models import ResponseRow, ToneProfile
from .tone import tone_directives

ANSWERS_CHAR_BUDGET = 90_000

# field -> (min, max) items the model is asked for
ARRAY_FIELD_BOUNDS: Dict[str, tuple[int, int]] = {
    "strengths": (3, 6),
    "risks": (3, 6),
    "discussion_prompts": (5, 10),
    "next_steps": (3, 6),
}

FIX_TEMPERATURE = 0.0
FIX_MAX_OUTPUT_TOKENS = 3072


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)


def compact_answers(responses: Iterable[ResponseRow]) -> List[Dict[str, Any]]:
    return [{"q": r.question_id, "u": r.user_id, "a": r.value} for r in responses]


def _schema_block() -> str:
    lines = ["headline (string),"]
    for idx, (name, (lo, hi)) in enumerate(ARRAY_FIELD_BOUNDS.items()):
        sep = "," if idx < len(ARRAY_FIELD_BOUNDS) - 1 else ""
        lines.append(f"{name} (array of {lo}-{hi} strings){sep}")
    return "\n".join(lines)


def _metrics_block(metrics: Optional[Mapping[str, Any]]) -> str:
    if not metrics:
        return (
            "COMPATIBILITY METRICS:\n"
            "- Not available. Use answers only; avoid numeric claims about compatibility."
        )
    return (
        "COMPATIBILITY METRICS (primary evidence; use these to prioritize what matters):\n"
        f"- overall_score: {metrics.get('overall_score')} / 100\n"
        "\n"
        "- strongest_modules (top 3):\n"
        f"{_dumps(metrics.get('strongest_modules'))}\n"
        "\n"
        "- highest_mismatch_modules (top 3):\n"
        f"{_dumps(metrics.get('highest_mismatch_modules'))}\n"
        "\n"
        "- top_mismatched_questions (top 5):\n"
        f"{_dumps(metrics.get('top_mismatched_questions'))}\n"
        "\n"
        "How to use:\n"
        "- Use strongest_modules to choose Strengths that feel specific (not generic).\n"
        "- Use highest_mismatch_modules + top_mismatched_questions to choose Risks + Discussion Prompts.\n"
        "- Do NOT mention UUIDs or internal IDs in the final output.\n"
        "- Paraphrase question_text naturally.\n"
        '- If values are short (e.g., "3", "yes/no"), interpret as preferences/importance without overclaiming.'
    )


def build_summary_prompt(
    session_status: str,
    answers: List[Dict[str, Any]],
    metrics: Optional[Mapping[str, Any]],
    tone: ToneProfile,
    *,
    char_budget: int = ANSWERS_CHAR_BUDGET,
) -> str:
    """Assemble the generation prompt.

    Deterministic for identical inputs. The serialized answers are cut at
    ``char_budget`` characters regardless of how many rows there are.
    """

    serialized = _dumps(answers)[:char_budget]
    sections = [
        "You generate a relationship compatibility summary for TWO people.",
        "Return ONLY valid JSON (no markdown, no code fences, no commentary).\n"
        "JSON keys EXACTLY:\n" + _schema_block(),
        "GLOBAL RULES:\n"
        "- Be culturally sensitive and respectful.\n"
        "- Avoid moralizing. Avoid diagnosis/therapy language. Do not shame either person.\n"
        '- Do not mention "AI", "model", "Gemini", "prompt", "tokens", or internal systems.',
        f"SESSION CONTEXT:\nsession_status={session_status}",
        tone_directives(tone),
        _metrics_block(metrics),
        f"SUPPORTING ANSWERS (compact; may include free-text):\nanswers={serialized}",
        "QUALITY RULES:\n"
        "- Prioritize top mismatched questions for Risks + Discussion Prompts.\n"
        "- Use strongest modules for Strengths.\n"
        "- Do not invent facts not supported by metrics/answers.",
    ]
    return "\n\n".join(sections)


def build_fix_prompt(broken: str) -> str:
    return (
        "Fix the following to be STRICTLY valid JSON.\n"
        "Return ONLY the corrected JSON object (no markdown).\n"
        "\n"
        "BROKEN_JSON:\n"
        f"{broken}"
    )
