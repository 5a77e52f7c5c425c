"""Cancellation token shared by every stage call.

``cancel()`` is synchronous so ``stop()`` / ``interrupt()`` can propagate it
without suspending. Adapters may poll ``cancelled`` or await ``wait()``; the
StageRunner abandons the call either way.
"""

from __future__ import annotations

import asyncio


class OperationCancelled(Exception):
    """Raised by ``CancelToken.raise_if_cancelled``."""


class CancelToken:
    """One-shot cancellation flag backed by an asyncio.Event."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    async def wait(self) -> str:
        """Suspend until cancelled. Returns the reason."""
        await self._event.wait()
        return self._reason

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self._reason)
