"""Audio chunks and the per-turn ring buffer.

An AudioChunk is an immutable PCM16 frame tagged with a sequence number and
a capture timestamp. The AudioBuffer collects the chunks of one speech
segment and keeps at most ``max_duration_ms`` of audio: when that is
exceeded the oldest chunks are dropped and the turn carries on with the most
recent audio.
"""

from __future__ import annotations

import time
from collections import deque
from typing import Iterator

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

BYTES_PER_SAMPLE = 2  # PCM16


class AudioChunk(BaseModel):
    """An immutable buffer of interleaved PCM16 samples."""

    model_config = ConfigDict(frozen=True)

    data: bytes = b""
    sample_rate: int = 16000
    channels: int = 1
    sequence: int = 0
    timestamp: float = Field(default_factory=time.time)

    @property
    def sample_count(self) -> int:
        """Samples per channel."""
        return len(self.data) // (BYTES_PER_SAMPLE * self.channels)

    @property
    def duration_ms(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return self.sample_count * 1000.0 / self.sample_rate


class AudioBuffer:
    """Append-only ring buffer of AudioChunks bounded by duration.

    Args:
        max_duration_ms: Soft bound on buffered audio. The newest chunk is
            always kept, even when it alone exceeds the bound.
    """

    def __init__(self, max_duration_ms: float = 30000.0) -> None:
        if max_duration_ms <= 0:
            raise ValueError("max_duration_ms must be positive")
        self.max_duration_ms = max_duration_ms
        self._chunks: deque[AudioChunk] = deque()
        self._duration_ms = 0.0
        self._dropped = 0
        self._overflowed = False

    def append(self, chunk: AudioChunk) -> int:
        """Add a chunk, evicting the oldest ones past the bound.

        Returns:
            How many chunks were dropped by this call.
        """
        self._chunks.append(chunk)
        self._duration_ms += chunk.duration_ms

        dropped = 0
        while self._duration_ms > self.max_duration_ms and len(self._chunks) > 1:
            oldest = self._chunks.popleft()
            self._duration_ms -= oldest.duration_ms
            dropped += 1

        if dropped:
            self._dropped += dropped
            if not self._overflowed:
                logger.warning(
                    f"Audio buffer exceeded {self.max_duration_ms:.0f}ms, "
                    f"dropping oldest audio"
                )
            self._overflowed = True
        return dropped

    def snapshot(self) -> tuple[AudioChunk, ...]:
        """Immutable view of the buffered chunks, oldest first."""
        return tuple(self._chunks)

    def to_pcm(self) -> bytes:
        """Concatenated PCM16 bytes of the buffered chunks."""
        return b"".join(chunk.data for chunk in self._chunks)

    def clear(self) -> None:
        self._chunks.clear()
        self._duration_ms = 0.0

    @property
    def duration_ms(self) -> float:
        return self._duration_ms

    @property
    def dropped_chunks(self) -> int:
        """Total chunks dropped since the buffer was created."""
        return self._dropped

    @property
    def overflowed(self) -> bool:
        return self._overflowed

    def __len__(self) -> int:
        return len(self._chunks)

    def __iter__(self) -> Iterator[AudioChunk]:
        return iter(self._chunks)
