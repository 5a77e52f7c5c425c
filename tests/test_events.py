"""Tests for the event model and the EventBus."""

import pytest

from voxflow.core.bus import ALL_EVENTS, EventBus
from voxflow.core.events import (
    EVENT_TYPE_MAP,
    TERMINAL_TURN_EVENTS,
    BufferOverflow,
    ErrorEvent,
    EventType,
    FinalTranscript,
    LLMToken,
    Stage,
    StateChanged,
    TTSAudioChunk,
    TurnCancelled,
    event_from_dict,
)


# ==========================================================================
# Event Model Tests
# ==========================================================================


class TestEventModels:

    def test_every_event_type_is_mapped(self):
        assert set(EVENT_TYPE_MAP) == set(EventType)
        for event_type, cls in EVENT_TYPE_MAP.items():
            assert cls().event_type == event_type

    def test_defaults(self):
        event = FinalTranscript(text="hello")
        assert event.event_type == EventType.FINAL_TRANSCRIPT
        assert event.session_id == ""
        assert event.turn_id == ""
        assert event.timestamp > 0

    def test_error_event(self):
        event = ErrorEvent(turn_id="t1", kind="timeout", stage=Stage.STT, message="slow")
        assert event.stage == Stage.STT
        assert event.fatal is False

    def test_tts_chunk_carries_audio(self):
        event = TTSAudioChunk(audio=b"\x01\x02", sequence=3)
        assert event.audio == b"\x01\x02"
        assert event.sample_rate == 24000

    def test_serialization_round_trip(self):
        event = BufferOverflow(session_id="s1", dropped_chunks=4, max_duration_ms=100.0)
        restored = event_from_dict(event.model_dump())
        assert isinstance(restored, BufferOverflow)
        assert restored.dropped_chunks == 4
        assert restored.session_id == "s1"

    def test_terminal_turn_events(self):
        assert TERMINAL_TURN_EVENTS == {
            EventType.TURN_COMPLETED, EventType.TURN_FAILED, EventType.TURN_CANCELLED,
        }

    def test_mandatory_stages(self):
        assert [s for s in Stage if s.mandatory] == [Stage.STT, Stage.LLM]


# ==========================================================================
# EventBus Tests
# ==========================================================================


class TestEventBus:

    @pytest.mark.asyncio
    async def test_typed_handlers_receive_matching_events(self):
        bus = EventBus()
        tokens = []
        bus.on(EventType.LLM_TOKEN, tokens.append)

        await bus.emit(LLMToken(text="hi"))
        await bus.emit(FinalTranscript(text="hello"))

        assert [e.text for e in tokens] == ["hi"]

    @pytest.mark.asyncio
    async def test_decorator_and_async_handlers(self):
        bus = EventBus()
        seen = []

        @bus.on("turn_cancelled")
        async def on_cancel(event):
            seen.append(event.reason)

        await bus.emit(TurnCancelled(reason="barge_in"))
        assert seen == ["barge_in"]

    @pytest.mark.asyncio
    async def test_catch_all_runs_after_typed(self):
        bus = EventBus()
        order = []
        bus.on(ALL_EVENTS, lambda e: order.append("all"))
        bus.on(EventType.STATE_CHANGED, lambda e: order.append("typed"))

        await bus.emit(StateChanged(previous="ready", current="listening"))
        assert order == ["typed", "all"]

    @pytest.mark.asyncio
    async def test_failing_handler_is_skipped(self, log_records):
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        bus.on(EventType.LLM_TOKEN, broken)
        bus.on(EventType.LLM_TOKEN, seen.append)

        await bus.emit(LLMToken(text="x"))

        assert len(seen) == 1
        assert any(r["level"].name == "ERROR" and "boom" in r["message"] for r in log_records)

    @pytest.mark.asyncio
    async def test_off(self):
        bus = EventBus()
        seen = []
        bus.on(EventType.LLM_TOKEN, seen.append)
        bus.off(EventType.LLM_TOKEN, seen.append)

        await bus.emit(LLMToken(text="x"))

        assert seen == []
        assert bus.handler_count() == 0

    def test_off_all_handlers_of_type(self):
        bus = EventBus()
        bus.on(EventType.ERROR, print)
        bus.on(EventType.ERROR, repr)
        bus.on(ALL_EVENTS, print)

        bus.off(EventType.ERROR)

        assert bus.handler_count(EventType.ERROR) == 0
        assert bus.handler_count() == 1

    def test_unknown_event_type_rejected(self):
        bus = EventBus()
        with pytest.raises(ValueError):
            bus.on("not_an_event", print)
