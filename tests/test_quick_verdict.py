from __future__ import annotations

from app.quick_verdict import CAUTION, DANGER, SAFE, assess, merge_verdicts


def test_allergen_keyword_gives_danger():
    result = assess("Grilled shrimp with garlic rice", ["shellfish"], [])
    assert result["level"] == DANGER
    assert result["trigger_codes"] == ["shellfish"]
    assert "shellfish" in result["question_for_staff"]


def test_diet_keyword_gives_danger():
    result = assess("Pork belly and kimchi stew", [], ["halal"])
    assert result["level"] == DANGER
    assert result["trigger_codes"] == ["halal"]


def test_hidden_ingredient_keyword_gives_caution():
    result = assess("House salad with special dressing", ["peanuts"], [])
    assert result["level"] == CAUTION
    assert result["trigger_codes"] == []


def test_low_confidence_without_keywords_gives_caution():
    assert assess("Steamed rice bowl", ["peanuts"], confidence="low")["level"] == CAUTION


def test_clean_text_gives_safe():
    result = assess("Steamed rice bowl with cucumber", ["peanuts"], [], confidence="high")
    assert result["level"] == SAFE
    assert result["confidence"] == "high"


def test_short_text_is_caution():
    result = assess("rice", ["peanuts"])
    assert result["level"] == CAUTION
    assert result["trigger_codes"] == ["_TEXT_TOO_SHORT"]


def test_ocr_failure_is_caution_with_low_confidence():
    result = assess("", ["peanuts"], ocr_failed=True)
    assert result["level"] == CAUTION
    assert result["trigger_codes"] == ["_OCR_FAILED"]
    assert result["confidence"] == "low"


def test_korean_keywords_match():
    assert assess("새우 볶음밥 그리고 김치", ["shellfish"])["level"] == DANGER


def test_merge_escalates_safe_to_caution_on_allergen_danger():
    quick = {"level": DANGER, "trigger_codes": ["shellfish"]}
    merged = merge_verdicts(quick, {"overall_status": SAFE, "results": []})
    assert merged["overall_status"] == CAUTION
    assert merged["escalated_by_quick_verdict"] is True


def test_merge_escalates_safe_to_danger_on_diet_trigger():
    quick = {"level": DANGER, "trigger_codes": ["vegan"]}
    merged = merge_verdicts(quick, {"overall_status": SAFE})
    assert merged["overall_status"] == DANGER
    assert merged["quick_diet_triggers"] == ["vegan"]


def test_merge_never_lowers_model_verdict():
    final = {"overall_status": DANGER}
    assert merge_verdicts({"level": SAFE, "trigger_codes": []}, final) == final
    assert merge_verdicts({"level": DANGER, "trigger_codes": ["eggs"]}, {"overall_status": CAUTION})[
        "overall_status"
    ] == CAUTION
    assert merge_verdicts(None, final) == final
