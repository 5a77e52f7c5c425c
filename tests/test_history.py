"""Tests for Turn/Session records and the ConversationHistory."""

import pytest

from voxflow.core.errors import StageError, StageErrorKind, TurnStateError
from voxflow.core.events import Stage
from voxflow.pipeline.history import ConversationHistory
from voxflow.pipeline.turn import Session, SessionState, Turn, TurnStatus


def completed(transcript="hello", reply="hi there"):
    turn = Turn()
    turn.start()
    turn.record_transcript(transcript, "stt", 12.0)
    turn.record_generation(reply, "llm", 30.0)
    turn.complete()
    return turn


# =========================================================================
# Turn
# =========================================================================


class TestTurn:

    def test_lifecycle(self):
        turn = Turn()
        assert turn.status == TurnStatus.PENDING
        turn.start()
        assert turn.status == TurnStatus.RUNNING
        turn.complete()
        assert turn.is_terminal
        assert turn.total_latency_ms >= 0

    def test_status_is_monotonic(self):
        turn = completed()
        with pytest.raises(TurnStateError):
            turn.start()
        with pytest.raises(TurnStateError):
            turn.fail(StageError(Stage.LLM, StageErrorKind.FATAL))

    def test_cancel_terminal_turn_is_noop(self):
        turn = completed()
        assert turn.cancel("late") is False
        assert turn.status == TurnStatus.COMPLETED

    def test_cancel_running_turn(self):
        turn = Turn()
        turn.start()
        assert turn.cancel("barge_in") is True
        assert turn.cancel_reason == "barge_in"

    def test_terminal_turn_is_immutable(self):
        turn = Turn()
        turn.start()
        turn.cancel()
        with pytest.raises(TurnStateError):
            turn.record_generation("late tokens", "llm", 5.0)

    def test_fail_keeps_error(self):
        turn = Turn()
        turn.start()
        error = StageError(Stage.TTS, StageErrorKind.TIMEOUT)
        turn.fail(error)
        assert turn.error is error
        assert turn.summary()["error"] == "tts stage timeout"

    def test_summary(self):
        summary = completed().summary()
        assert summary["status"] == "completed"
        assert summary["adapters"] == {"stt": "stt", "llm": "llm"}
        assert summary["latencies_ms"] == {"stt": 12.0, "llm": 30.0}


class TestSession:

    def test_active_turn_and_end(self):
        session = Session()
        done = completed()
        running = Turn()
        running.start()
        session.turns += [done, running]

        assert session.active_turn is running
        assert session.turns_with_status(TurnStatus.COMPLETED) == [done]

        session.end()
        assert session.state == SessionState.STOPPED
        assert session.duration_ms >= 0


# =========================================================================
# ConversationHistory
# =========================================================================


class TestConversationHistory:

    def test_only_completed_turns(self):
        history = ConversationHistory()
        turn = Turn()
        turn.start()
        turn.cancel()
        with pytest.raises(ValueError):
            history.append(turn)

    def test_fifo_eviction(self):
        history = ConversationHistory(max_turns=2)
        turns = [completed(f"q{i}", f"a{i}") for i in range(3)]
        for turn in turns:
            history.append(turn)

        assert len(history) == 2
        assert history.snapshot() == (turns[1], turns[2])
        assert history.last_turn is turns[2]

    def test_snapshot_last(self):
        history = ConversationHistory()
        turns = [completed(f"q{i}") for i in range(3)]
        for turn in turns:
            history.append(turn)

        assert history.snapshot(1) == (turns[2],)
        assert history.snapshot(0) == ()

    def test_to_messages(self):
        history = ConversationHistory(system_prompt="Be brief.")
        history.append(completed("hello", "hi there"))

        messages = history.to_messages("what time is it?")

        assert [(m.role, m.content) for m in messages] == [
            ("system", "Be brief."),
            ("user", "hello"),
            ("assistant", "hi there"),
            ("user", "what time is it?"),
        ]

    def test_to_messages_window(self):
        history = ConversationHistory()
        for i in range(5):
            history.append(completed(f"q{i}", f"a{i}"))

        messages = history.to_messages("next", window=2)
        assert [m.content for m in messages] == ["q3", "a3", "q4", "a4", "next"]

    def test_to_messages_char_budget(self):
        history = ConversationHistory(max_context_chars=10)
        history.append(completed("x" * 8, "y" * 8))

        messages = history.to_messages("prompt")
        assert [m.content for m in messages] == ["y" * 8, "prompt"]

    def test_get_transcript_and_clear(self):
        history = ConversationHistory()
        history.append(completed())

        assert history.get_transcript() == [
            {"role": "user", "content": "hello"},
            {"role": "assistant", "content": "hi there"},
        ]
        history.clear()
        assert len(history) == 0
