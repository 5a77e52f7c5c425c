"""Tests for the AdapterRegistry and adapter base classes."""

import pytest

from voxflow.adapters.base import (
    STAGE_CONTRACTS,
    AdapterCapabilities,
    BaseLLM,
    BaseSTT,
    LLMChunk,
    Message,
    STTResult,
    TTSChunk,
)
from voxflow.adapters.registry import AdapterDescriptor, AdapterRegistry, register_builtins
from voxflow.core.errors import NoAdapterAvailableError
from voxflow.core.events import Stage

from scripted import ScriptedLLM, ScriptedSTT


# =========================================================================
# Data class tests
# =========================================================================


class TestDataClasses:

    def test_stt_result_defaults(self):
        result = STTResult(text="hello")
        assert result.is_final is False
        assert result.confidence == 0.0
        assert result.words == []

    def test_llm_chunk_usage(self):
        chunk = LLMChunk(is_final=True, input_tokens=150, output_tokens=80)
        assert chunk.text == ""
        assert chunk.output_tokens == 80

    def test_tts_chunk(self):
        chunk = TTSChunk(audio=b"\x00\x01")
        assert chunk.sample_rate == 24000
        assert chunk.is_final is False

    def test_message(self):
        assert Message(role="user", content="hi").content == "hi"

    def test_stage_contracts_cover_every_stage(self):
        assert set(STAGE_CONTRACTS) == set(Stage)
        assert STAGE_CONTRACTS[Stage.STT] is BaseSTT

    def test_abstract_adapters_cannot_be_instantiated(self):
        with pytest.raises(TypeError):
            BaseLLM()


# =========================================================================
# Registry
# =========================================================================


class TestAdapterRegistry:

    def test_resolve_picks_lowest_priority_number(self):
        registry = AdapterRegistry()
        local, cloud = ScriptedSTT(), ScriptedSTT()
        registry.register(AdapterDescriptor(Stage.STT, "cloud", lambda: cloud, priority=10))
        registry.register(AdapterDescriptor(Stage.STT, "local", lambda: local, priority=0))

        assert registry.resolve(Stage.STT) is local
        assert registry.available(Stage.STT) == ["local", "cloud"]
        assert local.name == "local"

    def test_instances_created_lazily_and_cached(self):
        registry = AdapterRegistry()
        created = []

        def factory():
            created.append(1)
            return ScriptedSTT()

        registry.register(AdapterDescriptor(Stage.STT, "stt", factory))
        assert registry.cached_count == 0

        first = registry.resolve(Stage.STT)
        second = registry.resolve(Stage.STT)

        assert first is second
        assert len(created) == 1
        assert registry.is_cached(Stage.STT, "stt")

    def test_factory_kwargs(self):
        registry = AdapterRegistry()
        registry.register(AdapterDescriptor(
            Stage.STT, "stt", ScriptedSTT, factory_kwargs={"text": "bonjour"},
        ))
        assert registry.resolve(Stage.STT).text == "bonjour"

    def test_preferred_name(self):
        registry = AdapterRegistry()
        registry.register(AdapterDescriptor(Stage.STT, "a", ScriptedSTT, priority=0))
        registry.register(AdapterDescriptor(Stage.STT, "b", ScriptedSTT, priority=10))

        assert registry.resolve(Stage.STT, "b").name == "b"

    def test_unknown_preferred_name_falls_back(self, log_records):
        registry = AdapterRegistry()
        registry.register(AdapterDescriptor(Stage.STT, "a", ScriptedSTT))

        assert registry.resolve(Stage.STT, "missing").name == "a"
        assert any(r["level"].name == "WARNING" and "missing" in r["message"] for r in log_records)

    def test_no_registrations(self):
        registry = AdapterRegistry()
        with pytest.raises(NoAdapterAvailableError) as exc_info:
            registry.resolve(Stage.TTS)
        assert exc_info.value.stage == Stage.TTS

    def test_resolve_next_skips_attempted(self):
        registry = AdapterRegistry()
        registry.register(AdapterDescriptor(Stage.STT, "a", ScriptedSTT, priority=0))
        registry.register(AdapterDescriptor(Stage.STT, "b", ScriptedSTT, priority=10))

        assert registry.resolve_next(Stage.STT, exclude=["a"]).name == "b"
        assert registry.resolve_next(Stage.STT, exclude=["a", "b"]) is None

    def test_set_priority_reorders(self):
        registry = AdapterRegistry()
        registry.register(AdapterDescriptor(Stage.STT, "a", ScriptedSTT, priority=0))
        registry.register(AdapterDescriptor(Stage.STT, "b", ScriptedSTT, priority=10))

        registry.set_priority(Stage.STT, "b", -1)

        assert registry.available(Stage.STT) == ["b", "a"]
        with pytest.raises(KeyError):
            registry.set_priority(Stage.STT, "zzz", 0)

    def test_factory_must_honor_stage_contract(self):
        registry = AdapterRegistry()
        registry.register(AdapterDescriptor(Stage.STT, "wrong", ScriptedLLM))

        with pytest.raises(TypeError, match="expected a BaseSTT"):
            registry.resolve(Stage.STT)
        assert registry.cached_count == 0

    def test_reregister_replaces(self, log_records):
        registry = AdapterRegistry()
        registry.register(AdapterDescriptor(Stage.STT, "a", ScriptedSTT, priority=0))
        registry.register(AdapterDescriptor(Stage.STT, "a", ScriptedSTT, priority=5))

        assert [d.priority for d in registry.descriptors(Stage.STT)] == [5]
        assert any("Replacing" in r["message"] for r in log_records)

    def test_lazy_import_path(self):
        registry = register_builtins(AdapterRegistry())
        vad = registry.resolve(Stage.VAD)

        assert type(vad).__name__ == "EnergyVAD"
        assert vad.name == "energy"
        assert registry.descriptors(Stage.VAD)[0].capabilities == AdapterCapabilities(
            streaming=True, local=True,
        )

    def test_builtins(self):
        registry = register_builtins(AdapterRegistry())
        assert registry.available(Stage.STT) == ["deepgram"]
        assert registry.available(Stage.LLM) == ["openai"]
        assert registry.available(Stage.TTS) == ["elevenlabs"]
        assert registry.cached_count == 0

    def test_registries_are_independent(self):
        first, second = AdapterRegistry(), AdapterRegistry()
        first.register(AdapterDescriptor(Stage.STT, "a", ScriptedSTT))
        assert second.available(Stage.STT) == []

    @pytest.mark.asyncio
    async def test_release_disposes(self):
        registry = AdapterRegistry()
        registry.register(AdapterDescriptor(Stage.STT, "a", ScriptedSTT))
        registry.register(AdapterDescriptor(Stage.LLM, "b", ScriptedLLM))
        stt = registry.resolve(Stage.STT)
        registry.resolve(Stage.LLM)

        assert await registry.release(Stage.STT, "a") is True
        assert stt.disposed
        assert await registry.release(Stage.STT, "a") is False
        assert await registry.release_all() == 1
        assert registry.cached_count == 0
        # Resolving again builds a fresh instance
        assert registry.resolve(Stage.STT) is not stt
