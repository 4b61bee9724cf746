"""Speech synthesis and audio storage contracts."""

from .base import AudioStorage, SynthesisResult, TTSProvider
from .local_storage import LocalAudioStorage

__all__ = [
    "AudioStorage",
    "LocalAudioStorage",
    "SynthesisResult",
    "TTSProvider",
]
