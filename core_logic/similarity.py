# QueryBridge/core_logic/similarity.py
"""
String similarity used by the content index and schema relationship inference.

The combined score is a weighted sum of four signals, each in [0, 1]:
normalized Levenshtein, Jaro-Winkler, Soundex equality and Metaphone equality.
Weights sum to 1, so the combined score is also bounded by [0, 1].
"""
import logging
import re
from functools import lru_cache
from typing import Dict, Tuple

import jellyfish
import numpy as np

from config.settings import SIMILARITY_WEIGHTS
from core_logic.data_models import SimilarityScores

similarity_logger = logging.getLogger('QueryBridge.Similarity')
similarity_logger.setLevel(logging.INFO)

_METRICS = ("levenshtein", "jaro_winkler", "soundex", "metaphone")

_COMPANY_SUFFIXES = re.compile(
    r"\b(ltd|limited|inc|incorporated|corp|corporation|pvt|private|traders?)\b", re.IGNORECASE
)


def _weight_vector(weights: Dict[str, float]) -> np.ndarray:
    return np.array([weights[name] for name in _METRICS], dtype=float)


_WEIGHTS = _weight_vector(SIMILARITY_WEIGHTS)


def normalized_edit_similarity(a: str, b: str) -> float:
    """1 - levenshtein(a, b) / max(len(a), len(b)); 1.0 for two empty strings."""
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return max(0.0, 1.0 - jellyfish.levenshtein_distance(a, b) / longest)


@lru_cache(maxsize=20000)
def phonetic_codes(value: str) -> Tuple[str, str]:
    """(soundex, metaphone) for a value; empty codes when encoding fails."""
    try:
        return jellyfish.soundex(value), jellyfish.metaphone(value)
    except (ValueError, TypeError) as e:
        similarity_logger.warning(f"Phonetic encoding failed for '{value[:40]}': {e}")
        return "", ""


def phonetic_match(a: str, b: str) -> Tuple[bool, bool]:
    soundex_a, metaphone_a = phonetic_codes(a)
    soundex_b, metaphone_b = phonetic_codes(b)
    return (
        bool(soundex_a) and soundex_a == soundex_b,
        bool(metaphone_a) and metaphone_a == metaphone_b,
    )


@lru_cache(maxsize=50000)
def combined_similarity(a: str, b: str) -> SimilarityScores:
    """Multi-algorithm similarity between two terms (case-insensitive)."""
    a, b = a.lower(), b.lower()
    if a == b:
        return SimilarityScores(levenshtein=1.0, jaro_winkler=1.0, soundex=1.0, metaphone=1.0, combined=1.0)

    soundex_equal, metaphone_equal = phonetic_match(a, b)
    scores = np.array([
        normalized_edit_similarity(a, b),
        jellyfish.jaro_winkler_similarity(a, b),
        1.0 if soundex_equal else 0.0,
        1.0 if metaphone_equal else 0.0,
    ])
    combined = float(np.clip(np.dot(_WEIGHTS, scores), 0.0, 1.0))
    return SimilarityScores(
        levenshtein=float(scores[0]),
        jaro_winkler=float(scores[1]),
        soundex=float(scores[2]),
        metaphone=float(scores[3]),
        combined=combined,
    )


def normalize_company_name(company_name: str) -> str:
    """Drops legal suffixes and punctuation: 'K.P. Traders Pvt Ltd' -> 'kp'."""
    name = _COMPANY_SUFFIXES.sub("", company_name.lower())
    name = re.sub(r"[^\w\s]", "", name)
    return re.sub(r"\s+", " ", name).strip()
