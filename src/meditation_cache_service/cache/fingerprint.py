"""Content fingerprinting for exact-match cache keys."""

import hashlib
import re

_WHITESPACE_RUN = re.compile(r"\s+")

SegmentKey = tuple[str, str, str]


def normalize_text(text: str) -> str:
    """Normalize text for fingerprinting: trim and lower-case.

    Punctuation is kept, so "Welcome." and "Welcome!" are different keys;
    that gap is covered by semantic lookup.
    """
    return text.strip().lower()


def fingerprint(text: str) -> str:
    """Return the SHA-256 hex digest (64 chars) of the normalized text.

    Example:
        >>> fingerprint("Hello") == fingerprint("  hello  ")
        True
    """
    return hashlib.sha256(normalize_text(text).encode("utf-8")).hexdigest()


def normalize_for_embedding(text: str) -> str:
    """Trim and collapse whitespace runs; the form sent to the embedding provider."""
    return _WHITESPACE_RUN.sub(" ", text).strip()


def segment_key(text: str, voice_id: str, voice_style: str) -> SegmentKey:
    """Exact-match identity (text_hash, voice_id, voice_style) for a candidate segment."""
    return (fingerprint(text), voice_id, voice_style)
