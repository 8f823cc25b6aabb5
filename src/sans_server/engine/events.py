"""Per-request event channel and the diagnostics emitter."""

from collections.abc import Callable
from typing import Any

from sans_server.shared.logging import get_logger
from sans_server.shared.models import LogEvent

logger = get_logger(__name__)

Listener = Callable[[LogEvent], None]


class EventChannel:
    """Publish/subscribe channel carrying the log events of one request."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a listener for every event emitted on this channel.

        Args:
            listener: Called with each LogEvent, in emission order

        Returns:
            A function that removes the listener
        """
        if not callable(listener):
            raise TypeError(f"Invalid listener specified. Expected a callable. Received: {listener!r}")
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: LogEvent) -> None:
        for listener in list(self._listeners):
            listener(event)

    def clear(self) -> None:
        self._listeners.clear()


class Diagnostics:
    """
    Emitter for conditions that indicate misuse rather than a bad request,
    such as sending a response twice.

    Every event is written to the log at ERROR level. Subscribers registered
    with ``on`` receive the payload as well.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Callable[[Any], None]]] = {}

    def on(self, kind: str, handler: Callable[[Any], None]) -> None:
        if not callable(handler):
            raise TypeError(f"Invalid handler specified. Expected a callable. Received: {handler!r}")
        handlers = self._handlers.setdefault(kind, [])
        if handler not in handlers:
            handlers.append(handler)

    def off(self, kind: str, handler: Callable[[Any], None]) -> None:
        handlers = self._handlers.get(kind, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, kind: str, payload: Any) -> None:
        logger.error(f"{kind}: {payload}")
        for handler in list(self._handlers.get(kind, [])):
            handler(payload)
