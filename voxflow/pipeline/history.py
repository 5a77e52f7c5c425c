"""Conversation history for the LLM stage.

Holds completed turns in order, capped at ``max_turns`` with the oldest
evicted first. The LLM stage never sees the live list: it gets a snapshot
turned into Messages, trimmed to the prompt window and a character budget.
"""

from __future__ import annotations

from collections import deque
from typing import Iterator

from loguru import logger

from voxflow.adapters.base import Message
from voxflow.pipeline.turn import Turn, TurnStatus


class ConversationHistory:
    """Ordered, FIFO-capped log of completed turns.

    Args:
        max_turns: Maximum completed turns to keep (default: 50).
        system_prompt: Optional system prompt prepended to every prompt.
        max_context_chars: Approximate max chars of history in a prompt
            (default: 32000).
    """

    def __init__(
        self,
        max_turns: int = 50,
        system_prompt: str = "",
        max_context_chars: int = 32000,
    ) -> None:
        if max_turns < 1:
            raise ValueError("max_turns must be at least 1")
        self.max_turns = max_turns
        self.system_prompt = system_prompt
        self.max_context_chars = max_context_chars
        self._turns: deque[Turn] = deque()

    def append(self, turn: Turn) -> None:
        """Add a completed turn, evicting the oldest past the cap."""
        if turn.status != TurnStatus.COMPLETED:
            raise ValueError(
                f"Only completed turns enter the history (turn {turn.turn_id} "
                f"is {turn.status.value})"
            )
        self._turns.append(turn)
        while len(self._turns) > self.max_turns:
            evicted = self._turns.popleft()
            logger.debug(f"History: evicted turn {evicted.turn_id}")

    def snapshot(self, last: int | None = None) -> tuple[Turn, ...]:
        """Immutable copy of the most recent ``last`` turns (all if None)."""
        turns = tuple(self._turns)
        if last is None:
            return turns
        if last <= 0:
            return ()
        return turns[-last:]

    def to_messages(self, prompt: str, window: int = 10) -> list[Message]:
        """Build the LLM input: system prompt, last ``window`` turns, prompt.

        Oldest history messages are dropped first until the history fits
        in ``max_context_chars``. The system prompt and the new prompt are
        always kept.
        """
        history: list[Message] = []
        for turn in self.snapshot(window):
            history.append(Message(role="user", content=turn.transcript or ""))
            history.append(Message(role="assistant", content=turn.generated_text or ""))

        total_chars = sum(len(m.content) for m in history)
        while history and total_chars > self.max_context_chars:
            removed = history.pop(0)
            total_chars -= len(removed.content)

        messages: list[Message] = []
        if self.system_prompt:
            messages.append(Message(role="system", content=self.system_prompt))
        messages.extend(history)
        messages.append(Message(role="user", content=prompt))
        return messages

    def get_transcript(self) -> list[dict[str, str]]:
        """Simplified transcript for storage/display."""
        transcript = []
        for turn in self._turns:
            transcript.append({"role": "user", "content": turn.transcript or ""})
            transcript.append({"role": "assistant", "content": turn.generated_text or ""})
        return transcript

    def clear(self) -> None:
        self._turns.clear()

    @property
    def last_turn(self) -> Turn | None:
        return self._turns[-1] if self._turns else None

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(self.snapshot())
