"""Session and turn records.

A Session spans one ``start()`` .. ``stop()`` interaction; a Turn is one
speech-segment-to-response cycle within it. Turn status only moves forward
(pending -> running -> completed | failed | cancelled) and a turn is frozen
once it reaches a terminal status.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from voxflow.adapters.base import TTSChunk
from voxflow.audio.buffer import AudioChunk
from voxflow.core.errors import StageError, TurnStateError
from voxflow.core.events import Stage


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    LISTENING = "listening"
    SPEECH_DETECTED = "speech_detected"
    TRANSCRIBING = "transcribing"
    GENERATING = "generating"
    SYNTHESIZING = "synthesizing"
    STOPPED = "stopped"
    ERROR = "error"


# States in which a session is running (between start and stop)
ACTIVE_STATES = frozenset({
    SessionState.LISTENING,
    SessionState.SPEECH_DETECTED,
    SessionState.TRANSCRIBING,
    SessionState.GENERATING,
    SessionState.SYNTHESIZING,
})

INTERRUPTIBLE_STATES = frozenset({
    SessionState.GENERATING,
    SessionState.SYNTHESIZING,
})


class TurnStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (TurnStatus.COMPLETED, TurnStatus.FAILED, TurnStatus.CANCELLED)


_ALLOWED: dict[TurnStatus, frozenset[TurnStatus]] = {
    TurnStatus.PENDING: frozenset({TurnStatus.RUNNING, TurnStatus.CANCELLED}),
    TurnStatus.RUNNING: frozenset({
        TurnStatus.COMPLETED, TurnStatus.FAILED, TurnStatus.CANCELLED,
    }),
}


@dataclass(eq=False)
class Turn:
    """One speech-in -> response-out cycle.

    Fields stay writable through the ``record_*`` helpers until the turn
    reaches a terminal status; after that every mutation raises
    TurnStateError.
    """

    turn_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    audio: tuple[AudioChunk, ...] = ()
    transcript: str | None = None
    generated_text: str | None = None
    synthesized_audio: tuple[TTSChunk, ...] | None = None
    latencies: dict[Stage, float] = field(default_factory=dict)
    status: TurnStatus = TurnStatus.PENDING
    error: StageError | None = None
    cancel_reason: str = ""
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    ended_at: float | None = None
    adapters: dict[Stage, str] = field(default_factory=dict)

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def _transition(self, new: TurnStatus) -> None:
        if new not in _ALLOWED.get(self.status, frozenset()):
            raise TurnStateError(
                f"Turn {self.turn_id}: cannot move from {self.status.value} to {new.value}"
            )
        self.status = new
        if new == TurnStatus.RUNNING:
            self.started_at = time.perf_counter()
        if new.terminal:
            self.ended_at = time.perf_counter()

    def start(self) -> None:
        self._transition(TurnStatus.RUNNING)

    def complete(self) -> None:
        self._transition(TurnStatus.COMPLETED)

    def fail(self, error: StageError) -> None:
        self._transition(TurnStatus.FAILED)
        self.error = error

    def cancel(self, reason: str = "cancelled") -> bool:
        """Cancel the turn. Returns False if it was already terminal."""
        if self.status.terminal:
            return False
        self._transition(TurnStatus.CANCELLED)
        self.cancel_reason = reason
        return True

    # ------------------------------------------------------------------
    # Stage outputs
    # ------------------------------------------------------------------

    def _check_writable(self) -> None:
        if self.status.terminal:
            raise TurnStateError(f"Turn {self.turn_id} is {self.status.value} and immutable")

    def record_transcript(self, text: str, adapter: str, latency_ms: float) -> None:
        self._check_writable()
        self.transcript = text
        self.adapters[Stage.STT] = adapter
        self.latencies[Stage.STT] = latency_ms

    def record_generation(self, text: str, adapter: str, latency_ms: float) -> None:
        self._check_writable()
        self.generated_text = text
        self.adapters[Stage.LLM] = adapter
        self.latencies[Stage.LLM] = latency_ms

    def record_synthesis(
        self, chunks: tuple[TTSChunk, ...], adapter: str, latency_ms: float
    ) -> None:
        self._check_writable()
        self.synthesized_audio = chunks
        self.adapters[Stage.TTS] = adapter
        self.latencies[Stage.TTS] = latency_ms

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.status.terminal

    @property
    def total_latency_ms(self) -> float:
        """Running time from start to terminal status (0 if unfinished)."""
        if self.started_at is None or self.ended_at is None:
            return 0.0
        return (self.ended_at - self.started_at) * 1000

    def summary(self) -> dict[str, Any]:
        """Plain-dict view for logging or persistence hooks."""
        return {
            "turn_id": self.turn_id,
            "status": self.status.value,
            "transcript": self.transcript,
            "generated_text": self.generated_text,
            "audio_chunks": len(self.audio),
            "tts_chunks": len(self.synthesized_audio or ()),
            "latencies_ms": {s.value: round(v, 2) for s, v in self.latencies.items()},
            "adapters": {s.value: n for s, n in self.adapters.items()},
            "error": str(self.error) if self.error else None,
            "cancel_reason": self.cancel_reason or None,
        }


@dataclass
class Session:
    """One continuous interaction, from ``start()`` to ``stop()``."""

    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: float = field(default_factory=time.time)
    ended_at: float | None = None
    state: SessionState = SessionState.LISTENING
    adapters: dict[Stage, str] = field(default_factory=dict)
    turns: list[Turn] = field(default_factory=list)

    def end(self) -> None:
        self.state = SessionState.STOPPED
        self.ended_at = time.time()

    @property
    def duration_ms(self) -> int:
        """Session duration in milliseconds."""
        end = self.ended_at or time.time()
        return int((end - self.started_at) * 1000)

    @property
    def active_turn(self) -> Turn | None:
        """The running turn, if any."""
        for turn in reversed(self.turns):
            if turn.status == TurnStatus.RUNNING:
                return turn
        return None

    def turns_with_status(self, status: TurnStatus) -> list[Turn]:
        return [t for t in self.turns if t.status == status]
