"""
String similarity for fuzzy duplicate detection.

Three interchangeable algorithms, each bounded to [0, 1]:
- ``jaro``: Jaro-Winkler, suited to short strings such as titles
- ``cosine``: term-frequency cosine, suited to longer messages
- ``levenshtein``: normalized edit distance

The composite score used by the dedup decision weighs title similarity
(Jaro-Winkler) against message similarity (cosine) and adds a fixed bonus
when both sides carry the same category.

``compare_content`` strips HTML and markdown before comparing, and
``quick_check`` is a length-gated Jaro-Winkler pre-screen.
"""

import math
import re
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Optional

from rapidfuzz.distance import JaroWinkler, Levenshtein

from .normalizer import normalize_text

TITLE_WEIGHT = 0.6
MESSAGE_WEIGHT = 0.4
CONTENT_WEIGHT = 0.8
CATEGORY_BONUS = 0.2

DEFAULT_THRESHOLD = 0.85

QUICK_CHECK_THRESHOLD = 0.7
QUICK_CHECK_MIN_LENGTH = 10
QUICK_CHECK_MAX_LENGTH = 1000

_HTML_TAG = re.compile(r"<[^>]*>")
_MARKDOWN_CHARS = re.compile(r"[*_`~#\-+>!]")
_WHITESPACE = re.compile(r"\s+")


class SimilarityMethod(str, Enum):
    """Available string similarity algorithms."""

    JARO = "jaro"
    COSINE = "cosine"
    LEVENSHTEIN = "levenshtein"


@dataclass(frozen=True)
class SimilarityResult:
    """Score of a single comparison and whether it clears the threshold."""

    similarity: float
    is_duplicate: bool
    method: SimilarityMethod
    threshold: float


def jaro_similarity(a: str, b: str) -> float:
    """Jaro-Winkler similarity (prefix weight 0.1, prefix up to 4 chars)."""
    if not a or not b:
        return 1.0 if a == b else 0.0
    return float(JaroWinkler.similarity(a, b, prefix_weight=0.1))


def cosine_similarity(a: str, b: str) -> float:
    """Cosine similarity of whitespace-token term-frequency vectors."""
    terms_a = Counter(a.split())
    terms_b = Counter(b.split())
    if not terms_a or not terms_b:
        return 1.0 if not terms_a and not terms_b else 0.0

    dot = sum(count * terms_b[term] for term, count in terms_a.items())
    magnitude = math.sqrt(sum(c * c for c in terms_a.values())) * math.sqrt(sum(c * c for c in terms_b.values()))
    # Floating error can push identical vectors a hair above 1
    return min(1.0, dot / magnitude)


def levenshtein_similarity(a: str, b: str) -> float:
    """1 - edit_distance / max_length."""
    if not a and not b:
        return 1.0
    return float(Levenshtein.normalized_similarity(a, b))


_ALGORITHMS = {
    SimilarityMethod.JARO: jaro_similarity,
    SimilarityMethod.COSINE: cosine_similarity,
    SimilarityMethod.LEVENSHTEIN: levenshtein_similarity,
}


@lru_cache(maxsize=1024)
def _score(a: str, b: str, method: SimilarityMethod) -> float:
    return _ALGORITHMS[method](a, b)


def compare(
    a: str,
    b: str,
    method: SimilarityMethod | str = SimilarityMethod.JARO,
    threshold: float = DEFAULT_THRESHOLD,
    normalize: bool = True,
) -> SimilarityResult:
    """
    Compare two strings with the selected algorithm.

    Args:
        a: First string
        b: Second string
        method: Algorithm name or SimilarityMethod
        threshold: Score at or above which the pair counts as a duplicate
        normalize: Canonicalize both strings before scoring

    Raises:
        ValueError: If ``method`` names an unknown algorithm
    """
    method = SimilarityMethod(method)
    if normalize:
        a, b = normalize_text(a), normalize_text(b)
    similarity = _score(a, b, method)
    return SimilarityResult(
        similarity=similarity,
        is_duplicate=similarity >= threshold,
        method=method,
        threshold=threshold,
    )


def strip_markup(content: str) -> str:
    """Replace HTML tags and markdown syntax characters with spaces."""
    content = _HTML_TAG.sub(" ", content)
    content = _MARKDOWN_CHARS.sub(" ", content)
    return _WHITESPACE.sub(" ", content).strip()


def compare_content(
    a: str,
    b: str,
    method: SimilarityMethod | str = SimilarityMethod.JARO,
    threshold: float = DEFAULT_THRESHOLD,
    normalize: bool = True,
) -> SimilarityResult:
    """Like :func:`compare`, but for rich text: markup is removed from both sides first."""
    return compare(strip_markup(a), strip_markup(b), method=method, threshold=threshold, normalize=normalize)


def quick_check(a: str, b: str, threshold: float = QUICK_CHECK_THRESHOLD) -> bool:
    """
    Cheap pre-screen for "probably the same content".

    Strings shorter than ``QUICK_CHECK_MIN_LENGTH`` carry too little signal and
    must match exactly; strings longer than ``QUICK_CHECK_MAX_LENGTH`` are
    assumed different. Everything in between is scored with Jaro-Winkler.
    """
    if len(a) < QUICK_CHECK_MIN_LENGTH or len(b) < QUICK_CHECK_MIN_LENGTH:
        return a == b
    if len(a) > QUICK_CHECK_MAX_LENGTH or len(b) > QUICK_CHECK_MAX_LENGTH:
        return False
    return compare(a, b, SimilarityMethod.JARO, threshold=threshold).is_duplicate


def composite_similarity(
    title: str,
    message: str,
    category: Optional[str],
    stored_title: str,
    stored_message: str,
    stored_category: Optional[str],
) -> float:
    """
    Weighted similarity between new content and a stored entry.

    All text arguments are expected to be normalized already.
    """
    title_similarity = _score(title, stored_title, SimilarityMethod.JARO)
    message_similarity = _score(message, stored_message, SimilarityMethod.COSINE)
    category_bonus = CATEGORY_BONUS if category and category == stored_category else 0.0
    score = (title_similarity * TITLE_WEIGHT + message_similarity * MESSAGE_WEIGHT) * CONTENT_WEIGHT + category_bonus
    return min(1.0, score)
