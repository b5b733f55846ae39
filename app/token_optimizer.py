"""Item budgeting for the model input of a menu scan.

The combined allergy + menu token list sent to the analysis model is capped
at ``max_items`` (default 60). Steps:
  1. normalize   - trim and lower-case
  2. canonicalize - map through the synonym table (unmapped terms pass through)
  3. dedupe      - stable, first surface form wins per canonical code
  4. protect     - protected keywords are never dropped
  5. cap         - drop from the tail, skipping protected items

Protected items win over the cap: when they alone exceed ``max_items`` the
result is larger than the cap rather than losing a safety-critical term.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITEMS = int(os.environ.get("SCAN_TOKEN_MAX_ITEMS", "60"))

TruncateOrder = Literal["tail", "menu_first", "allergy_first"]
TRUNCATE_ORDERS: tuple[str, ...] = ("tail", "menu_first", "allergy_first")

# canonical allergen code -> surface synonyms (lower-case)
ALLERGY_SYNONYMS: dict[str, list[str]] = {
    "milk": ["dairy", "cream", "cheese", "butter", "lactose", "whey", "우유", "유제품", "크림", "치즈", "버터"],
    "eggs": ["egg", "mayonnaise", "meringue", "계란", "달걀", "마요네즈"],
    "peanuts": ["peanut", "peanut butter", "땅콩", "땅콩버터"],
    "tree_nuts": [
        "nut",
        "nuts",
        "almond",
        "walnut",
        "cashew",
        "pistachio",
        "hazelnut",
        "macadamia",
        "견과류",
        "아몬드",
        "호두",
    ],
    "fish": ["salmon", "tuna", "cod", "mackerel", "anchovy", "생선", "연어", "참치", "멸치"],
    "shellfish": [
        "shrimp",
        "prawn",
        "crab",
        "lobster",
        "oyster",
        "mussel",
        "clam",
        "scallop",
        "새우",
        "게",
        "랍스터",
        "굴",
        "조개",
    ],
    "wheat": ["gluten", "flour", "bread", "pasta", "noodle", "밀", "밀가루", "글루텐"],
    "soy": ["soybean", "tofu", "soy sauce", "miso", "edamame", "대두", "두부", "간장"],
    "sesame": ["sesame oil", "tahini", "참깨", "참기름"],
}

PROTECTED_KEYWORDS: frozenset[str] = frozenset(
    {
        "milk",
        "eggs",
        "peanuts",
        "tree_nuts",
        "fish",
        "shellfish",
        "wheat",
        "soy",
        "sesame",
        "alcohol",
        "pork",
        "beef",
    }
)

_COOKING_PREFIXES = [
    "deep-fried",
    "deep fried",
    "fried",
    "grilled",
    "steamed",
    "roasted",
    "baked",
    "boiled",
    "sautéed",
    "sauteed",
    "smoked",
    "marinated",
    "breaded",
    "battered",
    "spicy",
    "raw",
    "fresh",
    "organic",
    "crispy",
    "튀김",
    "구이",
    "볶음",
    "양념",
    "매콤",
    "바삭",
]
_PREFIX_RE = re.compile(r"^(" + "|".join(re.escape(p) for p in _COOKING_PREFIXES) + r")\s+", re.IGNORECASE)
_PLURALS: dict[str, str] = {
    "eggs": "egg",
    "nuts": "nut",
    "shrimps": "shrimp",
    "prawns": "prawn",
    "crabs": "crab",
    "lobsters": "lobster",
    "oysters": "oyster",
    "mussels": "mussel",
    "clams": "clam",
    "scallops": "scallop",
    "almonds": "almond",
    "walnuts": "walnut",
    "cashews": "cashew",
    "peanuts": "peanut",
}
_TOKEN_SPLIT_RE = re.compile(r"[\n,;/·•|()\[\]]+")
_PRICE_RE = re.compile(r"^[\d\s.,₩$€¥원]+$")
_INLINE_PRICE_RE = re.compile(r"[₩$€¥]?[ \t]?\d[\d,.]*[ \t]?(?:원|won\b)?", re.IGNORECASE)


def build_synonym_map(table: Mapping[str, Iterable[str]] | None = None) -> dict[str, str]:
    """Invert ``{code: [synonym, ...]}`` into ``{term: code}``; codes map to themselves."""
    source = ALLERGY_SYNONYMS if table is None else table
    mapping: dict[str, str] = {}
    for code, synonyms in source.items():
        canonical = _normalize(code)
        if not canonical:
            continue
        mapping[canonical] = canonical
        for synonym in synonyms:
            term = _normalize(synonym)
            if term:
                mapping.setdefault(term, canonical)
    return mapping


@dataclass(frozen=True)
class TokenBudget:
    max_items: int = DEFAULT_MAX_ITEMS
    protected_keywords: frozenset[str] = PROTECTED_KEYWORDS
    synonym_map: Mapping[str, str] = field(default_factory=build_synonym_map)
    truncate_order: TruncateOrder = "tail"


@dataclass(frozen=True)
class OptimizeResult:
    bounded: list[str]
    dropped: list[str]

    @property
    def item_count(self) -> int:
        return len(self.bounded)

    @property
    def was_truncated(self) -> bool:
        return bool(self.dropped)


def default_budget(
    *,
    max_items: int | None = None,
    truncate_order: str = "tail",
) -> TokenBudget:
    order = truncate_order if truncate_order in TRUNCATE_ORDERS else "tail"
    return TokenBudget(
        max_items=DEFAULT_MAX_ITEMS if max_items is None else max(1, int(max_items)),
        truncate_order=order,  # type: ignore[arg-type]
    )


def _normalize(term: Any) -> str:
    if not isinstance(term, str):
        return ""
    return " ".join(term.split()).lower()


@dataclass
class _Entry:
    surface: str
    code: str
    source: str
    protected: bool


def _collect(
    terms: Sequence[Any],
    *,
    source: str,
    config: TokenBudget,
    seen: set[str],
    protected: set[str],
    out: list[_Entry],
) -> None:
    for raw in terms or ():
        surface = _normalize(raw)
        if not surface:
            continue
        code = config.synonym_map.get(surface, surface)
        if code in seen:
            continue
        seen.add(code)
        out.append(
            _Entry(
                surface=surface,
                code=code,
                source=source,
                protected=code in protected or surface in protected,
            )
        )


def _drop_sequence(entries: list[_Entry], order: str) -> list[int]:
    """Indices of droppable entries, in the order they get dropped."""
    tail = [i for i in range(len(entries) - 1, -1, -1) if not entries[i].protected]
    if order == "menu_first":
        return [i for i in tail if entries[i].source == "menu"] + [i for i in tail if entries[i].source != "menu"]
    if order == "allergy_first":
        return [i for i in tail if entries[i].source == "allergy"] + [i for i in tail if entries[i].source != "allergy"]
    return tail


def optimize(
    allergy_terms: Sequence[Any],
    menu_tokens: Sequence[Any],
    config: TokenBudget | None = None,
) -> OptimizeResult:
    """Bound the combined allergy + menu terms to ``config.max_items``.

    Pure and deterministic; malformed terms (non-strings, blanks) are skipped.
    """
    cfg = config or TokenBudget()
    protected = {_normalize(k) for k in cfg.protected_keywords}
    protected |= {cfg.synonym_map.get(k, k) for k in list(protected) if k}
    seen: set[str] = set()
    entries: list[_Entry] = []
    _collect(allergy_terms, source="allergy", config=cfg, seen=seen, protected=protected, out=entries)
    _collect(menu_tokens, source="menu", config=cfg, seen=seen, protected=protected, out=entries)

    cap = max(0, int(cfg.max_items))
    removed: set[int] = set()
    excess = len(entries) - cap
    if excess > 0:
        for idx in _drop_sequence(entries, cfg.truncate_order):
            if len(removed) >= excess:
                break
            removed.add(idx)
        if len(entries) - len(removed) > cap:
            logger.warning(
                "token_budget_exceeded_by_protected kept=%s max_items=%s",
                len(entries) - len(removed),
                cap,
            )

    bounded = [e.surface for i, e in enumerate(entries) if i not in removed]
    dropped = [e.surface for i, e in enumerate(entries) if i in removed]
    return OptimizeResult(bounded=bounded, dropped=dropped)


def normalize_ingredient(ingredient: str) -> str:
    """Strip cooking prefixes and fold plurals: ``"fresh organic eggs"`` -> ``"egg"``."""
    normalized = _normalize(ingredient)
    previous = None
    while normalized != previous:
        previous = normalized
        normalized = _PREFIX_RE.sub("", normalized)
    if normalized in _PLURALS:
        return _PLURALS[normalized]
    if normalized.endswith("s") and not normalized.endswith("ss") and len(normalized) > 2:
        singular = normalized[:-1]
        if singular in _PLURALS.values() or singular in PROTECTED_KEYWORDS:
            return singular
    return normalized


def extract_menu_tokens(text: str, *, max_words: int = 4) -> list[str]:
    """Split OCR text into candidate ingredient tokens, preserving first-seen order."""
    if not isinstance(text, str) or not text.strip():
        return []
    tokens: list[str] = []
    seen: set[str] = set()
    for chunk in _TOKEN_SPLIT_RE.split(_INLINE_PRICE_RE.sub(" ", text)):
        candidate = normalize_ingredient(chunk)
        if not candidate or _PRICE_RE.match(candidate):
            continue
        if len(candidate.split()) > max_words:
            continue
        if candidate not in seen:
            seen.add(candidate)
            tokens.append(candidate)
    return tokens
