"""Deterministic adapters and helpers for pipeline tests."""

from __future__ import annotations

import asyncio
from typing import Callable

from voxflow.adapters.base import (
    BaseLLM,
    BaseSTT,
    BaseTTS,
    BaseVAD,
    LLMChunk,
    SpeechActivity,
    STTResult,
    TTSChunk,
)
from voxflow.adapters.registry import AdapterDescriptor, AdapterRegistry
from voxflow.audio.buffer import AudioChunk
from voxflow.core.errors import TransientAdapterError
from voxflow.core.events import Stage

# Frame markers understood by ScriptedVAD (first byte of the payload)
SILENCE, START, SPEAK, END = 0, 1, 2, 3

_ACTIVITY = {
    SILENCE: SpeechActivity.SILENCE,
    START: SpeechActivity.STARTED,
    SPEAK: SpeechActivity.SPEAKING,
    END: SpeechActivity.ENDED,
}


def frame(marker: int = SPEAK, ms: int = 20, sample_rate: int = 16000) -> AudioChunk:
    """A PCM16 frame of ``ms`` milliseconds filled with ``marker``."""
    n_bytes = sample_rate * ms // 1000 * 2
    return AudioChunk(data=bytes([marker]) * n_bytes, sample_rate=sample_rate)


def utterance(speaking_frames: int = 1) -> list[AudioChunk]:
    return [frame(START)] + [frame(SPEAK) for _ in range(speaking_frames)] + [frame(END)]


async def until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until ``predicate()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class Tracking:
    """Counts lifecycle calls; set ``init_error`` to make initialize fail."""

    init_error: Exception | None = None
    init_calls = 0
    reset_calls = 0
    disposed = False
    options: dict | None = None

    async def initialize(self, options):
        self.init_calls += 1
        self.options = options
        if self.init_error is not None:
            raise self.init_error

    async def reset(self):
        self.reset_calls += 1

    async def dispose(self):
        self.disposed = True


class ScriptedVAD(Tracking, BaseVAD):
    def __init__(self):
        self.frames = 0

    async def detect(self, chunk, *, cancel_token):
        self.frames += 1
        if not chunk.data:
            return SpeechActivity.SILENCE
        return _ACTIVITY.get(chunk.data[0], SpeechActivity.SILENCE)


class ScriptedSTT(Tracking, BaseSTT):
    def __init__(self, text="hello", partials=(), errors=(), delay=0.0):
        self.text = text
        self.partials = list(partials)
        self.errors = list(errors)
        self.delay = delay
        self.calls = 0
        self.received: list[tuple[AudioChunk, ...]] = []

    async def transcribe(self, audio, *, cancel_token):
        self.calls += 1
        self.received.append(tuple(audio))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            raise self.errors.pop(0)
        for partial in self.partials:
            yield STTResult(text=partial)
        if self.text:
            yield STTResult(text=self.text, is_final=True, confidence=0.9)


class ScriptedLLM(Tracking, BaseLLM):
    """Streams ``tokens``, or echoes the prompt when ``echo`` is set.

    ``hang`` makes the first call block after its first token; when
    cancelled it takes ``wind_down`` seconds before it really returns.
    """

    def __init__(self, tokens=("hi", " there"), errors=(), echo=False,
                 hang=0.0, wind_down=0.0, fail_after=None):
        self.tokens = list(tokens)
        self.errors = list(errors)
        self.echo = echo
        self.hang = hang
        self.wind_down = wind_down
        self.fail_after = fail_after
        self.calls = 0
        self.messages = []
        self.returned = 0

    async def generate(self, messages, *, cancel_token):
        self.calls += 1
        self.messages.append(list(messages))
        try:
            if self.errors:
                raise self.errors.pop(0)
            tokens = [f"You said: {messages[-1].content}"] if self.echo else self.tokens
            for i, token in enumerate(tokens):
                if self.fail_after is not None and i == self.fail_after:
                    raise TransientAdapterError("stream dropped")
                yield LLMChunk(text=token)
                if self.hang and self.calls == 1:
                    try:
                        await asyncio.sleep(self.hang)
                    except asyncio.CancelledError:
                        await asyncio.sleep(self.wind_down)
                        raise
            yield LLMChunk(is_final=True, input_tokens=len(messages), output_tokens=len(tokens))
        finally:
            self.returned += 1


class ScriptedTTS(Tracking, BaseTTS):
    def __init__(self, chunks=2, errors=()):
        self.chunks = chunks
        self.errors = list(errors)
        self.calls = 0
        self.texts: list[str] = []

    async def synthesize(self, text, *, cancel_token):
        self.calls += 1
        self.texts.append(text)
        if self.errors:
            raise self.errors.pop(0)
        for i in range(self.chunks):
            yield TTSChunk(audio=bytes([i + 1]) * 480, sample_rate=24000)
        yield TTSChunk(audio=b"", sample_rate=24000, is_final=True)


def make_registry(vad=None, stt=None, llm=None, tts=None, extra=()) -> AdapterRegistry:
    """Registry holding the given instances under the name "scripted".

    ``extra`` is a sequence of (stage, name, instance, priority).
    """
    registry = AdapterRegistry()
    for stage, adapter in ((Stage.VAD, vad), (Stage.STT, stt), (Stage.LLM, llm), (Stage.TTS, tts)):
        if adapter is not None:
            registry.register(AdapterDescriptor(stage, "scripted", lambda a=adapter: a, priority=50))
    for stage, name, adapter, priority in extra:
        registry.register(AdapterDescriptor(stage, name, lambda a=adapter: a, priority=priority))
    return registry
