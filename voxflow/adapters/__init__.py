"""voxflow adapters - pluggable VAD, STT, LLM and TTS implementations.

Every adapter implements one stage contract from ``voxflow.adapters.base``
and is made available to the pipeline through an AdapterRegistry:
- VAD (Voice Activity Detection): energy
- STT (Speech-to-Text): Deepgram
- LLM (Large Language Model): OpenAI GPT
- TTS (Text-to-Speech): ElevenLabs

Usage:
    from voxflow.adapters import AdapterDescriptor, AdapterRegistry, register_builtins

    registry = register_builtins(AdapterRegistry())
    registry.register(AdapterDescriptor(Stage.STT, "local", MyWhisperSTT, priority=0))
"""

from voxflow.adapters.base import BaseLLM, BaseSTT, BaseTTS, BaseVAD
from voxflow.adapters.registry import AdapterDescriptor, AdapterRegistry, register_builtins

__all__ = [
    "BaseVAD",
    "BaseSTT",
    "BaseLLM",
    "BaseTTS",
    "AdapterDescriptor",
    "AdapterRegistry",
    "register_builtins",
]
