import pytest

from src.aligna.domain.models import ToneProfile
from src.aligna.services.tone import compute_severity, select_tone, tone_directives


def _mismatch(pct, weight=None):
    q = {"question_text": "How often do you want to travel?", "mismatch_pct": pct}
    if weight is not None:
        q["weight"] = weight
    return q


def test_no_metrics_defaults_to_balanced():
    decision = select_tone(None)
    assert decision.tone is ToneProfile.BALANCED_GROWTH
    assert decision.severity is None
    assert decision.rationale == "overall=n/a, severity=n/a, rule=BALANCED_GROWTH"


def test_high_score_without_mismatches_is_celebratory():
    decision = select_tone({"overall_score": 86})
    assert decision.tone is ToneProfile.CELEBRATORY_GROWTH
    assert decision.rationale == "overall=86, severity=n/a, rule=CELEBRATORY_GROWTH"


def test_severity_override_softens_celebratory():
    decision = select_tone({"overall_score": 86, "top_mismatched_questions": [_mismatch(90, 3)]})
    assert decision.severity == pytest.approx(0.9)
    assert decision.tone is ToneProfile.BALANCED_GROWTH
    assert decision.rationale.endswith("rule=BALANCED_GROWTH (severity override)")


def test_mid_band_with_high_severity_is_gentle():
    decision = select_tone({"overall_score": 60, "top_mismatched_questions": [_mismatch(80, 3)]})
    assert decision.tone is ToneProfile.GENTLE_STRUCTURED


def test_mid_band_with_mid_severity_is_noted():
    decision = select_tone({"overall_score": 60, "top_mismatched_questions": [_mismatch(50, 3)]})
    assert decision.tone is ToneProfile.BALANCED_GROWTH
    assert decision.rationale == "overall=60, severity=0.50, rule=BALANCED_GROWTH (severity noted)"


def test_low_score_is_gentle():
    assert select_tone({"overall_score": 40}).tone is ToneProfile.GENTLE_STRUCTURED


def test_score_boundaries():
    assert select_tone({"overall_score": 80}).tone is ToneProfile.CELEBRATORY_GROWTH
    assert select_tone({"overall_score": 79.5}).tone is ToneProfile.BALANCED_GROWTH
    assert select_tone({"overall_score": 55}).tone is ToneProfile.BALANCED_GROWTH
    assert select_tone({"overall_score": 54}).tone is ToneProfile.GENTLE_STRUCTURED


def test_weight_is_clamped_and_defaulted():
    assert compute_severity({"top_mismatched_questions": [_mismatch(60, 10)]}) == pytest.approx(0.6)
    assert compute_severity({"top_mismatched_questions": [_mismatch(60, 0.2)]}) == pytest.approx(0.2)
    assert compute_severity({"top_mismatched_questions": [_mismatch(60)]}) == pytest.approx(0.2)


def test_severity_capped_at_one():
    assert compute_severity({"top_mismatched_questions": [_mismatch(150, 3)]}) == 1.0


def test_non_numeric_entries_are_skipped():
    metrics = {"top_mismatched_questions": [_mismatch(True), _mismatch("90"), "junk", _mismatch(30)]}
    assert compute_severity(metrics) == pytest.approx(0.1)


def test_empty_mismatch_list_has_no_severity():
    assert compute_severity({"top_mismatched_questions": []}) is None


def test_non_numeric_score_treated_as_missing():
    assert select_tone({"overall_score": "high"}).tone is ToneProfile.BALANCED_GROWTH


@pytest.mark.parametrize("tone", list(ToneProfile))
def test_directives_name_the_profile(tone):
    assert tone_directives(tone).splitlines()[0] == f"TONE_PROFILE={tone.value}"
