"""Audio segment cache database model."""

from datetime import datetime

from sqlalchemy import JSON, DateTime, Float, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from meditation_cache_service.database import Base


class AudioSegment(Base):
    """One synthesized utterance that can be reused across meditations.

    Identity:
        (text_hash, voice_id, voice_style) is unique. text_hash alone is not:
        the same sentence rendered by two voices is two segments.

    Mutability:
        Only usage_count / last_used_at (usage accounting), embedding /
        embedding_model (repair) and the metadata backfills change after
        insert. Rows are deleted only by administrative optimization.

    Embeddings:
        Stored as a JSON float list together with the model that produced it.
        Vectors from different models are never compared.
    """

    __tablename__ = "audio_segments_cache"
    __table_args__ = (
        UniqueConstraint(
            "text_hash",
            "voice_id",
            "voice_style",
            name="audio_segments_cache_unique_segment",
        ),
        Index("idx_audio_segments_cache_language", "language"),
        Index("idx_audio_segments_cache_last_used", "last_used_at"),
        Index("idx_audio_segments_cache_text_hash", "text_hash"),
        Index("idx_audio_segments_cache_usage_count", "usage_count"),
        Index("idx_audio_segments_cache_voice_id", "voice_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    text_content: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Spoken text after pause-marker stripping",
    )
    text_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="SHA-256 of trimmed, lower-cased text",
    )

    # Voice configuration
    voice_id: Mapped[str] = mapped_column(String(50), nullable=False)
    voice_gender: Mapped[str] = mapped_column(String(10), nullable=False)
    voice_style: Mapped[str] = mapped_column(String(20), nullable=False)

    # Rendered audio
    audio_url: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Location of the rendered audio bytes",
    )
    audio_duration: Mapped[float | None] = mapped_column(
        Float,
        nullable=True,
        comment="Duration in seconds",
    )
    file_size: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        comment="Size in bytes",
    )

    # Usage accounting
    usage_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        server_default="1",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    last_used_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # Semantic fingerprint
    embedding: Mapped[list[float] | None] = mapped_column(
        JSON(none_as_null=True),
        nullable=True,
        comment="Embedding vector of text_content",
    )
    embedding_model: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
        comment="Model that produced the embedding",
    )

    language: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default="en-US",
        server_default="en-US",
    )
    similarity_threshold: Mapped[float | None] = mapped_column(
        Float,
        nullable=True,
        comment="Per-entry semantic match threshold (NULL = system default)",
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<AudioSegment(id={self.id}, voice_id='{self.voice_id}', "
            f"voice_style='{self.voice_style}', usage_count={self.usage_count})>"
        )

    @property
    def has_embedding(self) -> bool:
        """Check whether a semantic fingerprint has been computed."""
        return self.embedding is not None

    @property
    def identity(self) -> tuple[str, str, str]:
        """Exact-match identity (text_hash, voice_id, voice_style)."""
        return (self.text_hash, self.voice_id, self.voice_style)
