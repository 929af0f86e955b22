"""
In-process typed publish / subscribe.

``subscribe`` hands back a ``Subscription`` handle; unsubscribing goes
through the handle, never through handler identity, so registering the same
callable twice yields two independent subscriptions.

Handlers may be plain functions or coroutine functions.  ``publish`` awaits
coroutine handlers in subscription order; one handler raising does not stop
the others and is logged.
"""

from __future__ import annotations

import inspect
import itertools
import logging
from typing import Awaitable, Callable, Generic, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")

Handler = Callable[[T], Union[None, Awaitable[None]]]


class Subscription:
    """Handle returned by ``subscribe``.  ``unsubscribe`` is idempotent."""

    def __init__(self, release: Callable[[], None]):
        self._release = release
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._release()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *args) -> None:
        self.unsubscribe()


class EventBus(Generic[T]):
    def __init__(self, name: str = "bus"):
        self.name = name
        self._handlers: dict[int, Handler] = {}
        self._ids = itertools.count()

    def subscribe(self, handler: Handler) -> Subscription:
        key = next(self._ids)
        self._handlers[key] = handler
        return Subscription(lambda: self._handlers.pop(key, None))

    def __len__(self) -> int:
        return len(self._handlers)

    async def publish(self, message: T) -> None:
        for handler in list(self._handlers.values()):
            try:
                result = handler(message)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Handler failed on %s", self.name)
