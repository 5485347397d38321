"""
Content fingerprinting for exact-match lookup.

The hash is a truncated SHA-256 over ``"{title}|{message}|{category}"`` of the
normalized fields, so it is stable across processes (unlike ``hash()``).
Hash equality is treated as identity by the dedup cache.
"""

import hashlib
from typing import Optional

from ..protocols import DEFAULT_CATEGORY, ContentFingerprint
from .normalizer import normalize_text

HASH_LENGTH = 16


def content_hash(normalized_title: str, normalized_message: str, category: Optional[str] = None) -> str:
    """Hash already-normalized fields."""
    key = f"{normalized_title}|{normalized_message}|{category or DEFAULT_CATEGORY}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:HASH_LENGTH]


def fingerprint(title: str, message: str, category: Optional[str] = None) -> ContentFingerprint:
    """Normalize raw content and derive its fingerprint."""
    normalized_title = normalize_text(title)
    normalized_message = normalize_text(message)
    normalized_category = category.strip().lower() if category and category.strip() else None
    return ContentFingerprint(
        normalized_title=normalized_title,
        normalized_message=normalized_message,
        category=normalized_category,
        hash=content_hash(normalized_title, normalized_message, normalized_category),
    )
