"""Observer interface for signaling and negotiation notifications."""
from __future__ import annotations

import collections
import inspect
import logging
from typing import Any
from typing import Callable

logger = logging.getLogger(__name__)

Handler = Callable[..., Any]


class EventEmitter:
    """Subscription based event notifier.

    Handlers may be plain callables or coroutine functions. Handlers are
    invoked in subscription order. An event emitted while handlers of a
    previous event are still running is queued and dispatched once those
    handlers return, so handlers never re-enter each other. Exceptions
    raised by a handler are logged and do not stop other handlers.

    Example:
        ```python
        emitter = EventEmitter()
        unsubscribe = emitter.on('connected', lambda: print('connected'))
        await emitter.emit('connected')
        unsubscribe()
        ```
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = collections.defaultdict(
            list,
        )
        self._pending: collections.deque[
            tuple[str, tuple[Any, ...]]
        ] = collections.deque()
        self._dispatching = False

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        """Subscribe a handler to an event.

        Args:
            event: Name of the event.
            handler: Callable invoked with the event arguments.

        Returns:
            Callable that removes the subscription.
        """
        self._handlers[event].append(handler)

        def _unsubscribe() -> None:
            try:
                self._handlers[event].remove(handler)
            except ValueError:
                pass

        return _unsubscribe

    def remove_all(self, event: str | None = None) -> None:
        """Remove all handlers for an event or for every event if `None`."""
        if event is None:
            self._handlers.clear()
        else:
            self._handlers.pop(event, None)

    async def emit(self, event: str, *args: Any) -> None:
        """Notify the handlers of an event.

        If this is called from within a handler, the event is queued and
        this returns immediately.

        Args:
            event: Name of the event.
            args: Positional arguments passed to each handler.
        """
        self._pending.append((event, args))
        if self._dispatching:
            return

        self._dispatching = True
        try:
            while self._pending:
                name, event_args = self._pending.popleft()
                for handler in list(self._handlers.get(name, ())):
                    try:
                        result = handler(*event_args)
                        if inspect.isawaitable(result):
                            await result
                    except Exception:
                        logger.exception(
                            f'Handler {handler!r} for event "{name}" raised',
                        )
        finally:
            self._dispatching = False
