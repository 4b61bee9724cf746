"""Abstract contracts for speech synthesis and audio storage."""

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class SynthesisResult:
    """Rendered audio for one segment."""

    audio_bytes: bytes
    duration_seconds: float | None = None

    @property
    def file_size(self) -> int:
        return len(self.audio_bytes)


class TTSProvider(ABC):
    """Text-to-speech provider.

    Vendor integrations live outside this service; the cache only needs
    a way to render one segment.
    """

    @abstractmethod
    async def synthesize(self, text: str, voice_id: str, voice_gender: str) -> SynthesisResult:
        """Render text with the given voice.

        Raises:
            SynthesisError: If the provider fails.
        """
        pass


class AudioStorage(ABC):
    """Destination for rendered audio bytes."""

    @abstractmethod
    async def store(self, audio_bytes: bytes, key: str) -> str:
        """Persist audio bytes under key and return their URL."""
        pass
