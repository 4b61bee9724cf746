"""Exception hierarchy for the audio segment cache.

Every cache failure derives from CacheError so request handlers can degrade
with a single except clause. The generation path never surfaces these to end
users; a failed lookup or write is treated as a cache miss.
"""


class CacheError(Exception):
    """Base exception for cache-related errors."""


class ConflictError(CacheError):
    """Insert would violate the (text_hash, voice_id, voice_style) uniqueness.

    Recovered locally by re-fetching the row that won the race.
    """

    def __init__(self, text_hash: str, voice_id: str, voice_style: str):
        self.text_hash = text_hash
        self.voice_id = voice_id
        self.voice_style = voice_style
        super().__init__(
            f"Segment already cached for hash={text_hash[:12]} "
            f"voice_id={voice_id} voice_style={voice_style}"
        )


class NotFoundError(CacheError):
    """Targeted segment no longer exists (deleted by a concurrent merge)."""

    def __init__(self, segment_id: int):
        self.segment_id = segment_id
        super().__init__(f"Segment {segment_id} not found")


class StoreUnavailableError(CacheError):
    """Segment store could not be reached after retries and timeouts were exhausted."""


class AdministrativeScopeError(CacheError):
    """Destructive operation attempted outside an administrative transaction."""


class MaintenanceBusyError(CacheError):
    """Another mutating maintenance run is already in progress."""


class ProviderUnavailableError(CacheError):
    """An external provider (embedding or TTS) failed or is unreachable."""


class SynthesisError(ProviderUnavailableError):
    """TTS provider failed to synthesize a segment."""
