"""
Mock scan collaborators for end-to-end runs without external providers.

Outputs are deterministic: the same image bytes and user id always give the
same OCR text, profile and verdict. Latency is simulated through
MOCK_OCR_LATENCY_S, MOCK_CONTEXT_LATENCY_S and MOCK_ANALYZER_LATENCY_S.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
from collections.abc import Sequence
from typing import Any

from app.quick_verdict import CAUTION, DANGER, SAFE
from app.scan_controller import OcrResult, UserContext
from app.token_optimizer import PROTECTED_KEYWORDS, build_synonym_map

logger = logging.getLogger(__name__)

MOCK_OCR_LATENCY_S = float(os.getenv("MOCK_OCR_LATENCY_S", "0.0"))
MOCK_CONTEXT_LATENCY_S = float(os.getenv("MOCK_CONTEXT_LATENCY_S", "0.0"))
MOCK_ANALYZER_LATENCY_S = float(os.getenv("MOCK_ANALYZER_LATENCY_S", "0.0"))

_MENUS = [
    "Grilled Shrimp Pasta 15,000\nCaesar Salad (egg, cheese)\nSteamed Tofu with soy sauce",
    "Peanut Noodles 12,000\nFried Chicken\nSesame Spinach, garlic sauce",
    "Beef Bulgogi 18,000\nKimchi Stew (pork)\nSteamed Rice",
    "Salmon Sushi 22,000\nMiso Soup (tofu)\nGreen Tea Ice Cream (milk)",
]

_PROFILES: dict[str, tuple[list[str], list[str]]] = {
    "demo": (["shellfish", "peanuts"], []),
    "vegan": ([], ["vegan"]),
    "halal": (["tree_nuts"], ["halal"]),
}
_DEFAULT_PROFILE: tuple[list[str], list[str]] = (["shellfish"], [])


def _digest_index(seed: bytes, modulo: int) -> int:
    h = hashlib.sha256(seed).hexdigest()
    return int(h[:8], 16) % modulo


class MockTextExtractor:
    """Picks one of a few fixed menus by hashing the image bytes."""

    def __init__(self, *, latency_s: float = MOCK_OCR_LATENCY_S) -> None:
        self.latency_s = latency_s

    async def extract_text(self, image: bytes) -> OcrResult:
        if self.latency_s:
            await asyncio.sleep(self.latency_s)
        if not image:
            return OcrResult(text="", confidence="low", failed=True)
        return OcrResult(text=_MENUS[_digest_index(image, len(_MENUS))], confidence="high")


class MockContextProvider:
    def __init__(self, *, latency_s: float = MOCK_CONTEXT_LATENCY_S) -> None:
        self.latency_s = latency_s

    async def fetch_context(self, user_id: str) -> UserContext:
        if self.latency_s:
            await asyncio.sleep(self.latency_s)
        allergies, diets = _PROFILES.get(user_id, _DEFAULT_PROFILE)
        return UserContext(user_id=user_id, allergies=list(allergies), diets=list(diets))


class MockAnalyzer:
    """Matches menu tokens against the allergen codes present in the same payload.

    Bare allergen codes in the token list are treated as the user's profile;
    every other token is a menu item, checked word by word through the
    synonym table.
    """

    def __init__(self, *, latency_s: float = MOCK_ANALYZER_LATENCY_S) -> None:
        self.latency_s = latency_s
        self._synonyms = build_synonym_map()

    async def analyze(self, bounded_tokens: Sequence[str], language: str) -> dict[str, Any]:
        if self.latency_s:
            await asyncio.sleep(self.latency_s)
        profile = {t for t in bounded_tokens if t in PROTECTED_KEYWORDS}
        results = []
        for token in bounded_tokens:
            if token in profile:
                continue
            codes = {self._synonyms.get(token, token)} | {self._synonyms.get(w, w) for w in token.split()}
            hits = sorted(codes & profile)
            status = DANGER if hits else SAFE
            if not hits and codes & PROTECTED_KEYWORDS:
                status = CAUTION
            results.append({"token": token, "status": status, "codes": hits})
        statuses = {r["status"] for r in results}
        overall = SAFE
        if DANGER in statuses:
            overall = DANGER
        elif CAUTION in statuses:
            overall = CAUTION
        return {"overall_status": overall, "results": results, "language": language, "model": "mock"}


class InMemoryResultSaver:
    """Collects saved results; stands in for the scan history table."""

    def __init__(self) -> None:
        self.saved: dict[str, dict[str, Any]] = {}
        self.save_calls = 0

    async def save(self, job_id: str, final_result: dict[str, Any]) -> None:
        self.save_calls += 1
        self.saved[job_id] = dict(final_result)
        logger.info("scan_result_saved job_id=%s", job_id)
