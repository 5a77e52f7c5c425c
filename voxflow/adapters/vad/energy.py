"""Energy-based Voice Activity Detection.

Classifies PCM16 frames by RMS energy with hysteresis: a segment opens
after ``start_frames`` consecutive loud frames and closes after
``end_frames`` consecutive quiet ones, so short pauses inside an utterance
and single noise spikes do not produce segment boundaries.

No extra dependencies; good enough for push-to-talk style clients and
quiet environments. Register a model-based VAD for noisy input.
"""

from __future__ import annotations

import struct
from typing import Any

from loguru import logger

from voxflow.adapters.base import BaseVAD, SpeechActivity
from voxflow.audio.buffer import AudioChunk
from voxflow.core.errors import AdapterError
from voxflow.pipeline.cancellation import CancelToken


def compute_audio_energy(data: bytes) -> float:
    """Compute the normalized RMS energy of a PCM16 frame.

    Returns:
        RMS energy in 0.0 (silence) .. 1.0 (full scale).
    """
    n_samples = len(data) // 2
    if n_samples == 0:
        return 0.0
    samples = struct.unpack(f"<{n_samples}h", data[: n_samples * 2])
    total = sum(s * s for s in samples)
    return (total / n_samples) ** 0.5 / 32768.0


class EnergyVAD(BaseVAD):
    """RMS energy VAD with start/end hysteresis.

    Args:
        energy_threshold: Normalized RMS energy treated as voice (default: 0.022).
        start_frames: Consecutive voiced frames that open a segment (default: 2).
        end_frames: Consecutive silent frames that close it (default: 10).
    """

    def __init__(
        self,
        energy_threshold: float = 0.022,
        start_frames: int = 2,
        end_frames: int = 10,
    ):
        self.energy_threshold = energy_threshold
        self.start_frames = start_frames
        self.end_frames = end_frames
        self._speaking = False
        self._voiced = 0
        self._silent = 0

    async def initialize(self, options: dict[str, Any]) -> None:
        self.energy_threshold = float(options.get("energy_threshold", self.energy_threshold))
        self.start_frames = int(options.get("start_frames", self.start_frames))
        self.end_frames = int(options.get("end_frames", self.end_frames))
        if not 0.0 < self.energy_threshold < 1.0:
            raise AdapterError(f"energy_threshold must be in (0, 1), got {self.energy_threshold}")
        if self.start_frames < 1 or self.end_frames < 1:
            raise AdapterError("start_frames and end_frames must be at least 1")
        logger.debug(
            f"EnergyVAD: threshold={self.energy_threshold}, "
            f"start={self.start_frames}, end={self.end_frames}"
        )

    async def detect(
        self, chunk: AudioChunk, *, cancel_token: CancelToken
    ) -> SpeechActivity:
        return self.classify(compute_audio_energy(chunk.data))

    def classify(self, energy: float) -> SpeechActivity:
        """Advance the hysteresis state machine with one frame's energy."""
        voiced = energy >= self.energy_threshold

        if not self._speaking:
            if not voiced:
                self._voiced = 0
                return SpeechActivity.SILENCE
            self._voiced += 1
            if self._voiced < self.start_frames:
                return SpeechActivity.SILENCE
            self._speaking = True
            self._silent = 0
            logger.debug(f"EnergyVAD: speech started (energy={energy:.3f})")
            return SpeechActivity.STARTED

        if voiced:
            self._silent = 0
            return SpeechActivity.SPEAKING
        self._silent += 1
        if self._silent < self.end_frames:
            return SpeechActivity.SPEAKING
        self._speaking = False
        self._voiced = 0
        logger.debug("EnergyVAD: speech ended")
        return SpeechActivity.ENDED

    async def reset(self) -> None:
        self._speaking = False
        self._voiced = 0
        self._silent = 0

    @property
    def speaking(self) -> bool:
        return self._speaking
