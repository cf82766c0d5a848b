"""
carecompanion/intent/classifier.py — Keyword intent classifier.

Stateless pass over a transcript: detects the spoken language (Malayalam
script vs. everything else) and sorts the transcript into one of three
categories (EMERGENCY, HEALTH_CONCERN or GENERAL) by case-insensitive
substring match against per-language keyword lists. Emergency keywords are
checked first, so they win whenever both lists match.

This is a coarse heuristic; the keyword lists are configuration
(``intent:`` in carecompanion.yaml), not logic.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional, Sequence

from carecompanion.core.config import IntentConfig
from carecompanion.core.constants import Language

logger = logging.getLogger(__name__)

_MALAYALAM = re.compile(r"[ഀ-ൿ]")


class IntentCategory(Enum):
    """What a user turn is about, in priority order."""

    EMERGENCY = "emergency"
    HEALTH_CONCERN = "health_concern"
    GENERAL = "general"


@dataclass(frozen=True)
class IntentResult:
    """
    Outcome of classifying one transcript.

    Attributes:
        category: Winning :class:`IntentCategory`.
        confidence: Fixed heuristic confidence (not a model score).
        language: Detected spoken language.
        matched_keywords: Keywords that caused the match (empty for GENERAL).
    """

    category: IntentCategory
    confidence: float
    language: Language
    matched_keywords: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_emergency(self) -> bool:
        return self.category is IntentCategory.EMERGENCY


def detect_language(text: str) -> Language:
    """Return ML if *text* contains any Malayalam character, else EN."""
    return Language.ML if _MALAYALAM.search(text or "") else Language.EN


def _matches(text: str, keywords: Sequence[str]) -> tuple[str, ...]:
    return tuple(k for k in keywords if k and k in text)


class IntentClassifier:
    """
    Keyword-set intent classifier.

    Args:
        config: Keyword lists and the fixed confidence value.
    """

    def __init__(self, config: Optional[IntentConfig] = None) -> None:
        cfg = config or IntentConfig()
        self._confidence = cfg.confidence
        self._emergency = self._normalise(cfg.emergency_keywords)
        self._health = self._normalise(cfg.health_keywords)

    @staticmethod
    def _normalise(table: Mapping[str, Sequence[str]]) -> dict[Language, tuple[str, ...]]:
        out: dict[Language, tuple[str, ...]] = {}
        for code, words in table.items():
            try:
                lang = Language.parse(code)
            except ValueError:
                logger.warning("Ignoring keywords for unsupported language %r", code)
                continue
            out[lang] = tuple(w.strip().lower() for w in words if w and w.strip())
        return out

    def classify(self, text: str, language: Optional[Language] = None) -> IntentResult:
        """
        Classify one transcript.

        Args:
            text: Final transcript text.
            language: Language to match against; detected from *text* if None.

        Returns:
            The :class:`IntentResult` for *text*.
        """
        lang = language or detect_language(text)
        lowered = (text or "").strip().lower()

        hits = _matches(lowered, self._emergency.get(lang, ()))
        if hits:
            category = IntentCategory.EMERGENCY
        else:
            hits = _matches(lowered, self._health.get(lang, ()))
            category = IntentCategory.HEALTH_CONCERN if hits else IntentCategory.GENERAL

        result = IntentResult(
            category=category,
            confidence=self._confidence,
            language=lang,
            matched_keywords=hits,
        )
        logger.debug("Intent %s (%s) for %r", category.value, lang.value, lowered[:60])
        return result
