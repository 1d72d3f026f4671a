from __future__ import annotations

import asyncio

from ink2md.core.errors import ConversionCancelled


class CancellationToken:
    """Cooperative cancellation shared by every stage of one conversion run.

    Once cancelled the token stays cancelled. Registered asyncio futures (in-flight
    provider attempts) are cancelled together with the token; futures registered
    after cancellation are cancelled immediately.
    """

    def __init__(self) -> None:
        self.cancelled = False
        self._registered: set[asyncio.Future] = set()

    def cancel(self) -> None:
        self.cancelled = True
        registered = list(self._registered)
        self._registered.clear()
        for future in registered:
            if not future.done():
                future.cancel()

    def register(self, future: asyncio.Future) -> None:
        if self.cancelled:
            future.cancel()
            return
        self._registered.add(future)

    def unregister(self, future: asyncio.Future) -> None:
        self._registered.discard(future)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise ConversionCancelled()
