"""voxflow - Orchestration core for real-time voice AI pipelines.

Chains pluggable Voice Activity Detection, Speech-to-Text, Large Language
Model and Text-to-Speech adapters into a turn-based conversation loop with
streaming events, timeouts, retry/fallback and barge-in.

Quick start:
    from voxflow import AdapterRegistry, PipelineManager, register_builtins

    registry = register_builtins(AdapterRegistry())
    manager = PipelineManager(registry)

    @manager.on("llm_token")
    def show(event):
        print(event.text, end="")

    await manager.initialize({
        "stt": {"adapter": "deepgram", "options": {"api_key": "..."}},
        "llm": {"adapter": "openai", "options": {"api_key": "..."}},
        "tts": {"enabled": False},
    })
    await manager.start()
    manager.push_audio(pcm16_bytes)
"""

__version__ = "0.1.0"

# Core
from voxflow.config import PipelineSettings, StageConfig, load_config
from voxflow.log import configure_logging
from voxflow.pipeline.manager import PipelineManager

# Events
from voxflow.core.events import (
    BufferOverflow,
    ErrorEvent,
    Event,
    EventType,
    FinalTranscript,
    LLMComplete,
    LLMToken,
    PartialTranscript,
    SpeechEnd,
    SpeechStart,
    Stage,
    StateChanged,
    TTSAudioChunk,
    TTSComplete,
    TurnCancelled,
    TurnCompleted,
    TurnFailed,
)

# Errors
from voxflow.core.errors import (
    AdapterError,
    ConcurrentOperationError,
    InitializationError,
    NoAdapterAvailableError,
    NotInitializedError,
    StageError,
    TransientAdapterError,
    VoxflowError,
)

# Audio
from voxflow.audio.buffer import AudioBuffer, AudioChunk

# Adapters
from voxflow.adapters.base import BaseLLM, BaseSTT, BaseTTS, BaseVAD, SpeechActivity
from voxflow.adapters.registry import AdapterDescriptor, AdapterRegistry, register_builtins

# Pipeline
from voxflow.pipeline.history import ConversationHistory
from voxflow.pipeline.metrics import MetricsCollector
from voxflow.pipeline.turn import Session, SessionState, Turn, TurnStatus

__all__ = [
    "__version__",
    # Core
    "PipelineManager",
    "PipelineSettings",
    "StageConfig",
    "load_config",
    "configure_logging",
    # Events
    "BufferOverflow",
    "ErrorEvent",
    "Event",
    "EventType",
    "FinalTranscript",
    "LLMComplete",
    "LLMToken",
    "PartialTranscript",
    "SpeechEnd",
    "SpeechStart",
    "Stage",
    "StateChanged",
    "TTSAudioChunk",
    "TTSComplete",
    "TurnCancelled",
    "TurnCompleted",
    "TurnFailed",
    # Errors
    "AdapterError",
    "ConcurrentOperationError",
    "InitializationError",
    "NoAdapterAvailableError",
    "NotInitializedError",
    "StageError",
    "TransientAdapterError",
    "VoxflowError",
    # Audio
    "AudioBuffer",
    "AudioChunk",
    # Adapters
    "BaseLLM",
    "BaseSTT",
    "BaseTTS",
    "BaseVAD",
    "SpeechActivity",
    "AdapterDescriptor",
    "AdapterRegistry",
    "register_builtins",
    # Pipeline
    "ConversationHistory",
    "MetricsCollector",
    "Session",
    "SessionState",
    "Turn",
    "TurnStatus",
]
