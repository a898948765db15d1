"""Async pub/sub EventBus that keeps UI and telemetry out of the engine."""

from __future__ import annotations

import asyncio
import inspect
import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator

from ide_assist.types import AgentEvent, EventType

_logger = logging.getLogger(__name__)

# Key for handlers that receive every event
WILDCARD = "*"

Handler = Callable[[AgentEvent], Any]


class EventBus:
    """Lightweight async pub/sub event bus.

    Handlers may be sync or async and are subscribed per ``EventType`` or
    to ``"*"``.  A failing handler is logged and never reaches the
    emitter.  The last ``max_history`` events are kept for inspection.
    """

    def __init__(self, max_history: int = 200) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._history: list[AgentEvent] = []
        self._max_history = max_history

    def subscribe(self, event_type: EventType | str, handler: Handler) -> None:
        self._handlers.setdefault(self._key(event_type), []).append(handler)

    def unsubscribe(self, event_type: EventType | str, handler: Handler) -> None:
        handlers = self._handlers.get(self._key(event_type), [])
        if handler in handlers:
            handlers.remove(handler)

    @contextmanager
    def listening(self, event_type: EventType | str, handler: Handler) -> Iterator[None]:
        """Subscribe *handler* for the duration of the ``with`` block."""
        self.subscribe(event_type, handler)
        try:
            yield
        finally:
            self.unsubscribe(event_type, handler)

    async def emit(self, event: AgentEvent) -> None:
        self._history.append(event)
        if len(self._history) > self._max_history:
            del self._history[: len(self._history) - self._max_history]

        handlers = list(self._handlers.get(self._key(event.type), []))
        handlers.extend(self._handlers.get(WILDCARD, []))
        if handlers:
            await asyncio.gather(*(self._call(h, event) for h in handlers))

    @property
    def history(self) -> list[AgentEvent]:
        return list(self._history)

    def of_type(self, event_type: EventType) -> list[AgentEvent]:
        return [e for e in self._history if e.type is event_type]

    @staticmethod
    def _key(event_type: EventType | str) -> str:
        if isinstance(event_type, EventType):
            return event_type.value
        return str(event_type)

    @staticmethod
    async def _call(handler: Handler, event: AgentEvent) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            _logger.exception(
                "EventBus handler %s raised for %s",
                getattr(handler, "__name__", handler), event.type.value,
            )
