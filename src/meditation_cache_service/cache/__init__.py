"""Semantic audio segment cache: fingerprinting, store, lookup and writes."""

from .fingerprint import fingerprint, normalize_for_embedding, normalize_text, segment_key
from .lookup import LookupOutcome, LookupResult, LookupSource, SegmentLookup, SimilarityMatch
from .memory import ReadThroughCache
from .resolver import ResolvedSegment, ScriptSegment, SegmentAudioResolver, VoiceConfig
from .store import AdminTransaction, SegmentFilter, SegmentStore
from .writer import CacheWriter

__all__ = [
    "AdminTransaction",
    "CacheWriter",
    "LookupOutcome",
    "LookupResult",
    "LookupSource",
    "ReadThroughCache",
    "ResolvedSegment",
    "ScriptSegment",
    "SegmentAudioResolver",
    "SegmentFilter",
    "SegmentLookup",
    "SegmentStore",
    "SimilarityMatch",
    "VoiceConfig",
    "fingerprint",
    "normalize_for_embedding",
    "normalize_text",
    "segment_key",
]
