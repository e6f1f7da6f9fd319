"""Cooperative cancellation for in-flight session work."""

import asyncio
import logging
from typing import Callable

from yoloagent.errors import GenerationCancelled

logger = logging.getLogger(__name__)


class CancelToken:
    """A per-session cancellation handle.

    Callbacks registered with ``on_cancel`` run once when ``cancel()`` is
    invoked; they are how pending question waits and provider streams get
    torn down for this session only.
    """

    def __init__(self):
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancel callback failed")

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a callback; returns a function that unregisters it."""
        if self._cancelled:
            callback()
            return lambda: None

        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise GenerationCancelled("Generation stopped")

    async def wait(self) -> None:
        await self._event.wait()
