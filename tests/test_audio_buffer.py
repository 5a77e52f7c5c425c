"""Tests for AudioChunk and the bounded AudioBuffer."""

import pytest
from pydantic import ValidationError

from voxflow.audio.buffer import AudioBuffer, AudioChunk

from scripted import frame


class TestAudioChunk:

    def test_duration(self):
        chunk = AudioChunk(data=b"\x00" * 640, sample_rate=16000)
        assert chunk.sample_count == 320
        assert chunk.duration_ms == 20.0

    def test_stereo_duration(self):
        chunk = AudioChunk(data=b"\x00" * 640, sample_rate=16000, channels=2)
        assert chunk.duration_ms == 10.0

    def test_immutable(self):
        chunk = AudioChunk(data=b"\x00\x00")
        with pytest.raises(ValidationError):
            chunk.data = b""


class TestAudioBuffer:

    def test_append_within_bound(self):
        buffer = AudioBuffer(max_duration_ms=100)
        for _ in range(5):
            assert buffer.append(frame(ms=20)) == 0

        assert len(buffer) == 5
        assert buffer.duration_ms == 100.0
        assert not buffer.overflowed

    def test_drops_oldest_past_bound(self, log_records):
        buffer = AudioBuffer(max_duration_ms=100)
        chunks = [frame(ms=20) for _ in range(8)]
        dropped = [buffer.append(c) for c in chunks]

        assert dropped == [0, 0, 0, 0, 0, 1, 1, 1]
        assert buffer.dropped_chunks == 3
        assert buffer.overflowed
        assert buffer.snapshot() == tuple(chunks[3:])
        warnings = [r for r in log_records if r["level"].name == "WARNING"]
        assert len(warnings) == 1

    def test_newest_chunk_always_kept(self):
        buffer = AudioBuffer(max_duration_ms=10)
        buffer.append(frame(ms=20))
        big = frame(ms=40)

        assert buffer.append(big) == 1
        assert buffer.snapshot() == (big,)

    def test_to_pcm_and_clear(self):
        buffer = AudioBuffer()
        buffer.append(AudioChunk(data=b"\x01\x00"))
        buffer.append(AudioChunk(data=b"\x02\x00"))

        assert buffer.to_pcm() == b"\x01\x00\x02\x00"
        buffer.clear()
        assert len(buffer) == 0
        assert buffer.duration_ms == 0.0

    def test_invalid_bound(self):
        with pytest.raises(ValueError):
            AudioBuffer(max_duration_ms=0)
