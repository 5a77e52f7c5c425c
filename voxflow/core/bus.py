"""In-process event bus used by the PipelineManager.

Handlers are registered per event type, or for every event with ``"*"``.
They may be plain functions or coroutines; ``emit`` awaits them one by one
in registration order, so a handler sees events in the order they were
published. A failing handler is logged and skipped.
"""

from __future__ import annotations

import inspect
from typing import Any, Callable

from loguru import logger

from voxflow.core.events import Event, EventType

# Type for event handler callbacks
EventHandler = Callable[[Event], Any]

ALL_EVENTS = "*"


class EventBus:
    """Typed publish/subscribe over the voxflow Event union.

    Usage:
        bus = EventBus()

        @bus.on(EventType.FINAL_TRANSCRIPT)
        async def show(event):
            print(event.text)

        await bus.emit(FinalTranscript(text="hello"))
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}

    @staticmethod
    def _key(event_type: EventType | str) -> str:
        if isinstance(event_type, EventType):
            return event_type.value
        if event_type != ALL_EVENTS:
            # Validates plain strings such as "llm_token"
            return EventType(event_type).value
        return event_type

    def on(
        self,
        event_type: EventType | str,
        handler: EventHandler | None = None,
    ) -> Any:
        """Subscribe ``handler`` to ``event_type``.

        Can be used directly (``bus.on(t, fn)``) or as a decorator
        (``@bus.on(t)``). Returns the handler.
        """
        key = self._key(event_type)

        def register(fn: EventHandler) -> EventHandler:
            self._handlers.setdefault(key, []).append(fn)
            return fn

        if handler is None:
            return register
        return register(handler)

    def off(
        self,
        event_type: EventType | str,
        handler: EventHandler | None = None,
    ) -> None:
        """Unsubscribe ``handler``, or every handler of ``event_type``."""
        key = self._key(event_type)
        if handler is None:
            self._handlers.pop(key, None)
            return
        handlers = self._handlers.get(key)
        if handlers and handler in handlers:
            handlers.remove(handler)
            if not handlers:
                del self._handlers[key]

    def handler_count(self, event_type: EventType | str | None = None) -> int:
        if event_type is None:
            return sum(len(h) for h in self._handlers.values())
        return len(self._handlers.get(self._key(event_type), []))

    def clear(self) -> None:
        self._handlers.clear()

    async def emit(self, event: Event) -> None:
        """Deliver ``event`` to its typed handlers, then to catch-all ones."""
        handlers = list(self._handlers.get(event.event_type.value, []))
        handlers += self._handlers.get(ALL_EVENTS, [])

        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    f"Event handler {getattr(handler, '__name__', handler)!r} "
                    f"failed on {event.event_type.value}: {e}"
                )
