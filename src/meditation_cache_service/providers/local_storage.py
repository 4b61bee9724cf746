"""Filesystem-backed audio storage."""

import asyncio
import uuid
from pathlib import Path

from meditation_cache_service.logging_config import get_logger

from .base import AudioStorage

logger = get_logger(__name__)


class LocalAudioStorage(AudioStorage):
    """Write audio files under a base directory and serve them from a URL prefix.

    Every stored file gets a random suffix, so two writers rendering the same
    segment concurrently never overwrite each other. The loser of such a race
    leaves an unreferenced file, which the cache writer logs.
    """

    def __init__(self, base_path: str | Path, base_url: str = "/audio", extension: str = "mp3"):
        self.base_path = Path(base_path)
        self.base_url = base_url.rstrip("/")
        self.extension = extension

    def _filename(self, key: str) -> str:
        safe_key = "".join(c if c.isalnum() or c in "-_" else "_" for c in key)[:64]
        return f"{safe_key}-{uuid.uuid4().hex[:12]}.{self.extension}"

    def _write(self, path: Path, audio_bytes: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(audio_bytes)

    async def store(self, audio_bytes: bytes, key: str) -> str:
        """Write audio bytes to disk without blocking the event loop.

        Returns:
            URL of the stored file under base_url.
        """
        filename = self._filename(key)
        path = self.base_path / filename
        await asyncio.to_thread(self._write, path, audio_bytes)
        logger.debug("audio_stored", path=str(path), size=len(audio_bytes))
        return f"{self.base_url}/{filename}"
