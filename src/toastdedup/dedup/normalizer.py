"""
Text canonicalization for notification comparison.

Normalization is total and side-effect free:
- Case folding
- Punctuation removal (anything that is neither a word character nor whitespace)
- Whitespace collapse to single spaces, trimmed at both ends

Two strings that differ only in case, punctuation or spacing normalize to
the same value, so they fingerprint identically.
"""

import re

_PUNCTUATION_PATTERN = re.compile(r"[^\w\s]")
_WHITESPACE_PATTERN = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Canonicalize ``text``; empty or None input yields an empty string."""
    if not text:
        return ""
    text = _PUNCTUATION_PATTERN.sub("", text.casefold())
    return _WHITESPACE_PATTERN.sub(" ", text).strip()


def normalize_content(title: str, message: str) -> tuple[str, str]:
    """Normalize a (title, message) pair."""
    return normalize_text(title), normalize_text(message)
