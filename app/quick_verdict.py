"""Rule-based first-pass safety verdict from OCR text.

This is an early warning, not a safety certificate: it flags obvious
allergen or diet violations in a few milliseconds so the client has
something to show while the model analysis runs. The model verdict may be
escalated by it (``merge_verdicts``) but never relaxed.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

logger = logging.getLogger(__name__)

SAFE = "SAFE"
CAUTION = "CAUTION"
DANGER = "DANGER"

MIN_TEXT_CHARS = 10

ALLERGY_DANGER_KEYWORDS: dict[str, list[str]] = {
    "eggs": ["계란", "달걀", "egg", "에그", "마요네즈", "mayonnaise"],
    "milk": ["우유", "치즈", "버터", "milk", "cheese", "cream", "크림", "유제품", "butter"],
    "peanuts": ["땅콩", "peanut", "피넛"],
    "tree_nuts": ["호두", "아몬드", "캐슈넛", "피스타치오", "견과류", "nut", "walnut", "almond"],
    "fish": ["생선", "연어", "참치", "고등어", "fish", "salmon", "tuna"],
    "shellfish": ["새우", "랍스터", "가재", "갑각류", "shrimp", "prawn", "crab", "lobster"],
    "wheat": ["밀", "글루텐", "빵", "wheat", "gluten", "flour", "bread", "pasta"],
    "soy": ["대두", "두부", "된장", "간장", "soy", "tofu"],
    "sesame": ["참깨", "sesame"],
    "pork": ["돼지", "삼겹", "베이컨", "pork", "bacon", "ham"],
    "beef": ["소고기", "불고기", "beef", "steak"],
    "chicken": ["닭", "치킨", "chicken"],
    "buckwheat": ["메밀", "buckwheat", "소바", "soba"],
    "alcohol": ["알코올", "맥주", "와인", "alcohol", "beer", "wine"],
}

CAUTION_KEYWORDS: list[str] = [
    "소스",
    "sauce",
    "양념",
    "육수",
    "broth",
    "stock",
    "튀김",
    "fried",
    "조미료",
    "seasoning",
    "드레싱",
    "dressing",
    "marinade",
    "볶음",
]

_MEAT = ["고기", "육류", "meat", "소고기", "돼지", "닭", "생선", "해산물", "beef", "pork", "chicken", "fish"]
_EGG = ["계란", "달걀", "egg"]
_DAIRY = ["우유", "치즈", "버터", "milk", "cheese", "cream", "유제품"]
_GARLIC_ONION = ["마늘", "양파", "대파", "garlic", "onion"]

DIET_DANGER_KEYWORDS: dict[str, list[str]] = {
    "vegetarian": _MEAT,
    "vegan": _MEAT + _EGG + _DAIRY + ["꿀", "honey", "dairy"],
    "lacto_vegetarian": _MEAT + _EGG,
    "ovo_vegetarian": _MEAT + _DAIRY,
    "pesco_vegetarian": ["고기", "육류", "meat", "소고기", "돼지", "닭", "beef", "pork", "chicken"],
    "flexitarian": _MEAT,
    "halal": ["돼지", "pork", "베이컨", "bacon", "ham", "알코올", "alcohol", "와인", "wine"],
    "kosher": ["돼지", "pork", "갑각류", "shellfish", "새우", "shrimp", "crab"],
    "buddhist_vegetarian": _MEAT + _GARLIC_ONION,
    "gluten_free": ["밀", "wheat", "글루텐", "gluten", "빵", "bread", "pasta"],
    "pork_free": ["돼지", "pork", "베이컨", "bacon", "ham"],
    "alcohol_free": ["알코올", "맥주", "와인", "소주", "alcohol", "beer", "wine"],
    "garlic_onion_free": _GARLIC_ONION,
}
DIET_CODES = frozenset(DIET_DANGER_KEYWORDS)


def _first_hits(text: str, codes: Sequence[str], table: dict[str, list[str]]) -> list[str]:
    hits: list[str] = []
    for code in codes:
        if code in hits:
            continue
        if any(keyword.lower() in text for keyword in table.get(code, ())):
            hits.append(code)
    return hits


def _staff_question(triggers: list[str], allergies: Sequence[str], diets: Sequence[str]) -> str:
    if triggers:
        return f"Does this dish contain {triggers[0].replace('_', ' ')}?"
    if allergies:
        names = ", ".join(code.replace("_", " ") for code in list(allergies)[:2])
        return f"Does this dish contain {names}?"
    if diets:
        return f"Is this dish suitable for a {diets[0].replace('_', ' ')} diet?"
    return "Could you tell me the main ingredients of this dish?"


def assess(
    text: str,
    allergies: Sequence[str],
    diets: Sequence[str] = (),
    *,
    confidence: str = "medium",
    ocr_failed: bool = False,
) -> dict[str, Any]:
    allergies = [str(a).strip().lower() for a in allergies or () if str(a).strip()]
    diets = [str(d).strip().lower() for d in diets or () if str(d).strip()]
    body = text if isinstance(text, str) else ""

    if ocr_failed and not body.strip():
        return {
            "level": CAUTION,
            "summary": "Text recognition failed; wait for the full analysis.",
            "trigger_codes": ["_OCR_FAILED"],
            "question_for_staff": _staff_question([], allergies, diets),
            "confidence": "low",
        }
    if len(body.strip()) < MIN_TEXT_CHARS:
        return {
            "level": CAUTION,
            "summary": "Not enough menu text to judge; ask the staff.",
            "trigger_codes": ["_TEXT_TOO_SHORT"],
            "question_for_staff": _staff_question([], allergies, diets),
            "confidence": confidence,
        }

    lowered = body.lower()
    allergy_hits = _first_hits(lowered, allergies, ALLERGY_DANGER_KEYWORDS)
    diet_hits = _first_hits(lowered, diets, DIET_DANGER_KEYWORDS)
    triggers = allergy_hits + diet_hits

    if triggers:
        level = DANGER
        summary = f"Likely contains {', '.join(t.replace('_', ' ') for t in triggers)}; confirm with the staff."
    elif any(keyword.lower() in lowered for keyword in CAUTION_KEYWORDS):
        level = CAUTION
        summary = "Hidden ingredients are possible; confirm with the staff."
    elif confidence == "low":
        level = CAUTION
        summary = "Menu text is unclear; confirming with the staff is recommended."
    else:
        level = SAFE
        summary = "No risk detected in the first pass; wait for the full analysis."

    return {
        "level": level,
        "summary": summary,
        "trigger_codes": triggers,
        "question_for_staff": _staff_question(triggers, allergies, diets),
        "confidence": confidence,
    }


def merge_verdicts(quick: dict[str, Any] | None, final: dict[str, Any]) -> dict[str, Any]:
    """Escalate the model verdict with the quick verdict; never lowers it.

    Quick DANGER with a diet trigger lifts SAFE to DANGER; any other quick
    DANGER lifts SAFE to CAUTION.
    """
    merged = dict(final)
    if not quick or quick.get("level") != DANGER:
        return merged
    model_level = str(final.get("overall_status") or SAFE).upper()
    diet_triggers = [code for code in quick.get("trigger_codes", []) if code in DIET_CODES]
    level = model_level
    if model_level == SAFE:
        level = DANGER if diet_triggers else CAUTION
    if level != model_level:
        logger.warning(
            "quick_verdict_escalated from_level=%s to_level=%s triggers=%s",
            model_level,
            level,
            ",".join(quick.get("trigger_codes", [])),
        )
        merged["overall_status"] = level
        merged["escalated_by_quick_verdict"] = True
    if diet_triggers:
        merged["quick_diet_triggers"] = diet_triggers
    return merged
