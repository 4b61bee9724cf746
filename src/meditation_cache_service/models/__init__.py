"""SQLAlchemy models for database schema."""

# Import all models here to ensure they are registered with Base.metadata

from .audio_segment import AudioSegment

__all__ = [
    "AudioSegment",
]
