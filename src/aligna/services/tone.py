"""Tone selection from a compatibility-metrics snapshot.

Pure functions only. The chosen tone shapes phrasing in the prompt; the
rationale string is for logs and audit events and is never shown to users.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from ..domain.models import ToneProfile

HIGH_SEVERITY = 0.72
MID_SEVERITY = 0.45
CELEBRATORY_MIN_SCORE = 80
BALANCED_MIN_SCORE = 55


@dataclass(frozen=True)
class ToneDecision:
    tone: ToneProfile
    rationale: str
    severity: Optional[float]
    overall: Optional[float]


def _number(value: Any) -> Optional[float]:
    # bool is an int subclass; a True mismatch_pct is not a score
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def compute_severity(metrics: Optional[Mapping[str, Any]]) -> Optional[float]:
    """Worst weighted mismatch, normalised to 0..1.

    ``None`` when the snapshot carries no mismatched questions at all.
    """

    top = (metrics or {}).get("top_mismatched_questions")
    if not isinstance(top, list) or not top:
        return None

    max_weighted = 0.0
    for q in top:
        if not isinstance(q, Mapping):
            continue
        mismatch_pct = _number(q.get("mismatch_pct"))
        if mismatch_pct is None:
            continue
        weight = _number(q.get("weight"))
        weight = 1.0 if weight is None else max(1.0, min(3.0, weight))
        weighted = (mismatch_pct / 100.0) * weight
        if weighted > max_weighted:
            max_weighted = weighted
    return min(1.0, max_weighted / 3.0)


def select_tone(metrics: Optional[Mapping[str, Any]]) -> ToneDecision:
    overall = _number((metrics or {}).get("overall_score"))
    severity = compute_severity(metrics)

    high = severity is not None and severity >= HIGH_SEVERITY
    mid = severity is not None and severity >= MID_SEVERITY

    if overall is None:
        tone = ToneProfile.BALANCED_GROWTH
    elif overall >= CELEBRATORY_MIN_SCORE:
        tone = ToneProfile.BALANCED_GROWTH if high else ToneProfile.CELEBRATORY_GROWTH
    elif overall >= BALANCED_MIN_SCORE:
        tone = ToneProfile.GENTLE_STRUCTURED if high else ToneProfile.BALANCED_GROWTH
    else:
        tone = ToneProfile.GENTLE_STRUCTURED

    suffix = " (severity override)" if high else " (severity noted)" if mid else ""
    overall_txt = "n/a" if overall is None else f"{overall:g}"
    severity_txt = "n/a" if severity is None else f"{severity:.2f}"
    rationale = f"overall={overall_txt}, severity={severity_txt}, rule={tone.value}{suffix}"
    return ToneDecision(tone=tone, rationale=rationale, severity=severity, overall=overall)


_DIRECTIVES = {
    ToneProfile.CELEBRATORY_GROWTH: (
        "TONE_PROFILE=CELEBRATORY_GROWTH\n"
        "- Style: warm, optimistic, celebratory, affectionate but not cheesy.\n"
        "- Still include 1-2 meaningful growth edges (no perfection language).\n"
        '- Avoid minimizing mismatches; frame them as "tuning" and "alignment choices".'
    ),
    ToneProfile.BALANCED_GROWTH: (
        "TONE_PROFILE=BALANCED_GROWTH\n"
        "- Style: practical, calm, constructive, emotionally intelligent.\n"
        "- Normalize differences; emphasize tradeoffs, negotiation, and curiosity.\n"
        "- Keep risks gentle and actionable (no alarmist language)."
    ),
    ToneProfile.GENTLE_STRUCTURED: (
        "TONE_PROFILE=GENTLE_STRUCTURED\n"
        "- Style: gentle, supportive, structured, non-judgmental.\n"
        '- Avoid doom language. Avoid "red flag" phrasing.\n'
        "- Focus on clarity, values, boundaries, and step-by-step conversations.\n"
        "- Make next_steps especially concrete and paced."
    ),
}


def tone_directives(tone: ToneProfile) -> str:
    return _DIRECTIVES[ToneProfile(tone)]
