"""Bounded read-through memory layer in front of the segment store.

Design Decision: Memory Layer Is Never Authoritative
====================================================

Entries map a segment key (text_hash, voice_id, voice_style) to the last
AudioSegment row seen for it. The layer only short-circuits the fingerprint
query: every hit is confirmed by the store's atomic usage increment, and an
entry whose row has disappeared is invalidated. Uniqueness is always
enforced by the database constraint on write.

Eviction:
- LRU (OrderedDict move_to_end / popitem(last=False)), max_entries bound
- TTL per entry, checked lazily on read
"""

import time
from collections import OrderedDict
from collections.abc import Callable

from meditation_cache_service.cache.fingerprint import SegmentKey
from meditation_cache_service.models import AudioSegment


class ReadThroughCache:
    """Size- and TTL-bounded map of segment keys to cached rows.

    Example:
        >>> cache = ReadThroughCache(max_entries=2, ttl_seconds=60)
        >>> cache.put(("abc", "v1", "calm"), segment)
        >>> cache.get(("abc", "v1", "calm")) is segment
        True
    """

    def __init__(
        self,
        max_entries: int = 2000,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the memory layer.

        Args:
            max_entries: Maximum number of entries kept (LRU eviction beyond).
            ttl_seconds: Lifetime of an entry; 0 or less disables expiry.
            clock: Monotonic time source, injectable for tests.
        """
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[SegmentKey, tuple[float, AudioSegment]] = OrderedDict()
        self._hits = 0
        self._misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: SegmentKey) -> AudioSegment | None:
        """Return the cached row for key, or None if absent or expired."""
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None

        stored_at, segment = entry
        if self.ttl_seconds > 0 and self._clock() - stored_at > self.ttl_seconds:
            del self._entries[key]
            self._misses += 1
            return None

        self._entries.move_to_end(key)
        self._hits += 1
        return segment

    def put(self, key: SegmentKey, segment: AudioSegment) -> None:
        """Store or refresh an entry, evicting least recently used ones."""
        self._entries[key] = (self._clock(), segment)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def put_segment(self, segment: AudioSegment) -> None:
        """Store a row under its own identity."""
        self.put(segment.identity, segment)

    def invalidate(self, key: SegmentKey) -> None:
        """Drop an entry if present."""
        self._entries.pop(key, None)

    def invalidate_ids(self, segment_ids: set[int]) -> int:
        """Drop every entry whose row id is in segment_ids.

        Used after administrative merges delete rows.

        Returns:
            Number of entries removed.
        """
        stale = [key for key, (_, seg) in self._entries.items() if seg.id in segment_ids]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def clear(self) -> int:
        """Drop all entries and reset counters.

        Returns:
            Number of entries dropped.
        """
        dropped = len(self._entries)
        self._entries.clear()
        self._hits = 0
        self._misses = 0
        return dropped

    @property
    def hit_rate(self) -> float:
        """Ratio of hits to total reads (0.0 before any read)."""
        total = self._hits + self._misses
        return self._hits / total if total > 0 else 0.0

    @property
    def stats(self) -> dict:
        """Entry count and bounds, hits, misses and hit rate."""
        return {
            "memory_entries": len(self._entries),
            "max_entries": self.max_entries,
            "ttl_seconds": self.ttl_seconds,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": self.hit_rate,
        }
