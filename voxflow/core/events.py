"""Unified event model for voxflow.

Every observable thing the pipeline does is published as one of these
events. Callers subscribe through ``PipelineManager.on(event_type, handler)``
and receive the typed model. Within one turn, events arrive in causal order:

    speech_start -> speech_end -> partial_transcript* -> final_transcript
    -> llm_token* -> llm_complete -> tts_chunk* -> tts_complete
    -> turn_completed | turn_failed | turn_cancelled
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class Stage(str, Enum):
    """A pipeline phase bound to a pluggable adapter."""

    VAD = "vad"
    STT = "stt"
    LLM = "llm"
    TTS = "tts"

    @property
    def mandatory(self) -> bool:
        return self in (Stage.STT, Stage.LLM)


class EventType(str, Enum):
    SPEECH_START = "speech_start"
    SPEECH_END = "speech_end"
    PARTIAL_TRANSCRIPT = "partial_transcript"
    FINAL_TRANSCRIPT = "final_transcript"
    LLM_TOKEN = "llm_token"
    LLM_COMPLETE = "llm_complete"
    TTS_CHUNK = "tts_chunk"
    TTS_COMPLETE = "tts_complete"
    ERROR = "error"
    STATE_CHANGED = "state_changed"
    BUFFER_OVERFLOW = "buffer_overflow"
    TURN_COMPLETED = "turn_completed"
    TURN_FAILED = "turn_failed"
    TURN_CANCELLED = "turn_cancelled"


class Event(BaseModel):
    """Base event that all voxflow events inherit from."""

    event_type: EventType
    session_id: str = ""
    turn_id: str = ""
    timestamp: float = Field(default_factory=time.time)


class SpeechStart(Event):
    """The VAD (or the first push-to-talk chunk) opened a speech segment."""

    event_type: EventType = EventType.SPEECH_START


class SpeechEnd(Event):
    """The speech segment closed; a turn is about to be created."""

    event_type: EventType = EventType.SPEECH_END
    duration_ms: float = 0.0
    chunk_count: int = 0


class PartialTranscript(Event):
    event_type: EventType = EventType.PARTIAL_TRANSCRIPT
    text: str = ""


class FinalTranscript(Event):
    event_type: EventType = EventType.FINAL_TRANSCRIPT
    text: str = ""
    adapter: str = ""


class LLMToken(Event):
    event_type: EventType = EventType.LLM_TOKEN
    text: str = ""
    index: int = 0


class LLMComplete(Event):
    event_type: EventType = EventType.LLM_COMPLETE
    text: str = ""


class TTSAudioChunk(Event):
    """A chunk of synthesized audio for the external audio sink."""

    event_type: EventType = EventType.TTS_CHUNK
    audio: bytes = b""
    sample_rate: int = 24000
    sequence: int = 0


class TTSComplete(Event):
    event_type: EventType = EventType.TTS_COMPLETE
    chunk_count: int = 0


class ErrorEvent(Event):
    """Error event carrying the turn id (if any) and the failure kind.

    ``kind`` is a StageErrorKind value for stage failures, or one of
    ``initialization`` / ``degraded`` / ``pipeline`` for session-level
    problems.
    """

    event_type: EventType = EventType.ERROR
    kind: str = ""
    stage: Stage | None = None
    message: str = ""
    fatal: bool = False


class StateChanged(Event):
    event_type: EventType = EventType.STATE_CHANGED
    previous: str = ""
    current: str = ""


class BufferOverflow(Event):
    """Non-fatal warning: the turn's audio buffer dropped its oldest chunks."""

    event_type: EventType = EventType.BUFFER_OVERFLOW
    dropped_chunks: int = 0
    max_duration_ms: float = 0.0


class TurnCompleted(Event):
    event_type: EventType = EventType.TURN_COMPLETED
    transcript: str = ""
    generated_text: str = ""
    latency_ms: float = 0.0


class TurnFailed(Event):
    event_type: EventType = EventType.TURN_FAILED
    stage: Stage | None = None
    reason: str = ""


class TurnCancelled(Event):
    event_type: EventType = EventType.TURN_CANCELLED
    reason: str = ""


# Type alias for any event
AnyEvent = (
    SpeechStart
    | SpeechEnd
    | PartialTranscript
    | FinalTranscript
    | LLMToken
    | LLMComplete
    | TTSAudioChunk
    | TTSComplete
    | ErrorEvent
    | StateChanged
    | BufferOverflow
    | TurnCompleted
    | TurnFailed
    | TurnCancelled
)

# Map event types to their classes for deserialization
EVENT_TYPE_MAP: dict[EventType, type[Event]] = {
    EventType.SPEECH_START: SpeechStart,
    EventType.SPEECH_END: SpeechEnd,
    EventType.PARTIAL_TRANSCRIPT: PartialTranscript,
    EventType.FINAL_TRANSCRIPT: FinalTranscript,
    EventType.LLM_TOKEN: LLMToken,
    EventType.LLM_COMPLETE: LLMComplete,
    EventType.TTS_CHUNK: TTSAudioChunk,
    EventType.TTS_COMPLETE: TTSComplete,
    EventType.ERROR: ErrorEvent,
    EventType.STATE_CHANGED: StateChanged,
    EventType.BUFFER_OVERFLOW: BufferOverflow,
    EventType.TURN_COMPLETED: TurnCompleted,
    EventType.TURN_FAILED: TurnFailed,
    EventType.TURN_CANCELLED: TurnCancelled,
}

TERMINAL_TURN_EVENTS = frozenset({
    EventType.TURN_COMPLETED,
    EventType.TURN_FAILED,
    EventType.TURN_CANCELLED,
})


def event_from_dict(data: dict[str, Any]) -> Event:
    """Rebuild a typed event from its ``model_dump()`` form."""
    event_type = EventType(data["event_type"])
    return EVENT_TYPE_MAP[event_type](**data)
