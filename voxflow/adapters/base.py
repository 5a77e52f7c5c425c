"""Base interfaces for pipeline adapters (VAD, STT, LLM, TTS).

Every concrete provider implements exactly one of these stage contracts.
The registry only accepts instances of the contract that matches the
descriptor's stage, so the set of adapter kinds is closed and dispatch never
depends on duck typing.

Common lifecycle:
    1. factory(): the registry constructs the adapter lazily
    2. initialize(options): called once with the stage's extra options
    3. stage call: detect / transcribe / generate / synthesize
    4. reset(): per-session state is dropped on PipelineManager.stop()
    5. dispose(): the registry releases the instance
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, ClassVar, Sequence

from voxflow.audio.buffer import AudioChunk
from voxflow.core.events import Stage

if TYPE_CHECKING:
    from voxflow.adapters.registry import AdapterDescriptor
    from voxflow.pipeline.cancellation import CancelToken


# ---------------------------------------------------------------------------
# Data classes for adapter communication
# ---------------------------------------------------------------------------

class SpeechActivity(str, Enum):
    """What a VAD saw in one frame."""

    SILENCE = "silence"
    STARTED = "started"
    SPEAKING = "speaking"
    ENDED = "ended"


@dataclass
class STTResult:
    """A speech-to-text transcription result."""

    text: str
    is_final: bool = False
    confidence: float = 0.0
    language: str = ""
    # Word-level timestamps (optional)
    words: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class LLMChunk:
    """A streaming chunk from an LLM response."""

    text: str = ""
    is_final: bool = False
    # Usage info (only on final chunk)
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class TTSChunk:
    """A chunk of synthesized audio from a TTS adapter."""

    audio: bytes  # Raw PCM16
    sample_rate: int = 24000
    is_final: bool = False


@dataclass
class Message:
    """A conversation message for the LLM."""

    role: str  # "system", "user", "assistant"
    content: str = ""


@dataclass(frozen=True)
class AdapterCapabilities:
    """Declared capabilities of an adapter."""

    streaming: bool = True
    languages: tuple[str, ...] = ()
    local: bool = False


# ---------------------------------------------------------------------------
# Abstract Base Classes
# ---------------------------------------------------------------------------

class BaseAdapter(ABC):
    """Shared lifecycle for every stage adapter."""

    stage: ClassVar[Stage]

    # Set by the registry when it creates the instance
    descriptor: AdapterDescriptor | None = None

    async def initialize(self, options: dict[str, Any]) -> None:
        """Apply stage options. Raise AdapterError on failure."""

    def is_healthy(self) -> bool:
        return True

    async def reset(self) -> None:
        """Drop per-session state. Override if needed."""

    async def dispose(self) -> None:
        """Release resources. Override if needed."""

    @property
    def name(self) -> str:
        """Registered adapter name, falling back to the class name."""
        if self.descriptor is not None:
            return self.descriptor.name
        return self.__class__.__name__


class BaseVAD(BaseAdapter):
    """Abstract base class for Voice Activity Detection adapters.

    A VAD classifies each incoming frame and reports segment boundaries:
    STARTED on the first frame of a segment, SPEAKING inside it, ENDED on
    the frame that closes it, SILENCE otherwise.
    """

    stage = Stage.VAD

    @abstractmethod
    async def detect(
        self, chunk: AudioChunk, *, cancel_token: CancelToken
    ) -> SpeechActivity:
        """Classify one audio frame."""
        ...


class BaseSTT(BaseAdapter):
    """Abstract base class for Speech-to-Text adapters.

    ``transcribe`` receives the audio of one speech segment and streams
    partial (is_final=False) and final (is_final=True) results. The turn's
    transcript is the concatenation of the final results.
    """

    stage = Stage.STT

    @abstractmethod
    async def transcribe(
        self,
        audio: Sequence[AudioChunk],
        *,
        cancel_token: CancelToken,
    ) -> AsyncIterator[STTResult]:
        """Yield transcription results for a finished speech segment."""
        ...
        yield  # pragma: no cover


class BaseLLM(BaseAdapter):
    """Abstract base class for Large Language Model adapters.

    ``generate`` receives the prompt messages (system prompt, recent
    conversation history, then the new user transcript) and streams text
    chunks.
    """

    stage = Stage.LLM

    @abstractmethod
    async def generate(
        self,
        messages: list[Message],
        *,
        cancel_token: CancelToken,
    ) -> AsyncIterator[LLMChunk]:
        """Stream a response for ``messages``."""
        ...
        yield  # pragma: no cover


class BaseTTS(BaseAdapter):
    """Abstract base class for Text-to-Speech adapters."""

    stage = Stage.TTS

    @abstractmethod
    async def synthesize(
        self,
        text: str,
        *,
        cancel_token: CancelToken,
    ) -> AsyncIterator[TTSChunk]:
        """Synthesize text to audio, streaming chunks as they're ready."""
        ...
        yield  # pragma: no cover


STAGE_CONTRACTS: dict[Stage, type[BaseAdapter]] = {
    Stage.VAD: BaseVAD,
    Stage.STT: BaseSTT,
    Stage.LLM: BaseLLM,
    Stage.TTS: BaseTTS,
}
