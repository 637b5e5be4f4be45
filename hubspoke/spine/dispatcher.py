"""
Event Dispatcher - the publish point between the transport and its users.

Decoded messages are published by op; collaborators register handlers
per op and receive the message data.

Usage:
    dispatcher = EventDispatcher()
    dispatcher.register("trades", on_trades)        # sync or async handler
    await dispatcher.dispatch(Message(op="trades", data=[...]))
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Optional

from hubspoke.spine.schemas import Message

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Optional[Awaitable[None]]]


class EventDispatcher:
    """Op-keyed subscription registry with error-isolated delivery."""

    def __init__(self):
        self._handlers: dict[str, list[Handler]] = {}
        self._stats = {"dispatched": 0, "unhandled": 0, "handler_errors": 0}

    @property
    def stats(self) -> dict[str, int]:
        return dict(self._stats)

    def register(self, op: str, handler: Handler) -> None:
        """Subscribe handler to op. The same handler may be registered once per op."""
        if not op:
            raise ValueError("op must be a non-empty string")
        handlers = self._handlers.setdefault(op, [])
        if handler not in handlers:
            handlers.append(handler)
            logger.debug(f"[DISPATCH] Registered handler for {op}")

    # event-emitter style alias
    on = register

    def unregister(self, op: str, handler: Handler) -> bool:
        """Remove handler from op. Returns False if it was not registered."""
        handlers = self._handlers.get(op)
        if not handlers or handler not in handlers:
            return False
        handlers.remove(handler)
        if not handlers:
            del self._handlers[op]
        return True

    def handlers(self, op: str) -> list[Handler]:
        return list(self._handlers.get(op, ()))

    def ops(self) -> list[str]:
        return list(self._handlers)

    async def dispatch(self, message: Message) -> int:
        """
        Deliver message.data to every handler registered for message.op.

        Handlers run in registration order; coroutine results are awaited
        before the next handler runs. A failing handler is logged and does
        not stop the others. Returns the number of handlers invoked.
        """
        handlers = self._handlers.get(message.op)
        if not handlers:
            self._stats["unhandled"] += 1
            logger.debug(f"[DISPATCH] No handler for {message.op}")
            return 0

        self._stats["dispatched"] += 1
        invoked = 0
        # copy so handlers may (un)register while we iterate
        for handler in list(handlers):
            invoked += 1
            try:
                result = handler(message.data)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self._stats["handler_errors"] += 1
                logger.error(f"[DISPATCH] Handler error on {message.op}: {e}")

        return invoked

    async def publish(self, op: str, data: Any = None) -> int:
        """Dispatch a locally built message."""
        return await self.dispatch(Message(op=op, data=data))
