"""Run delivery operations one at a time, in submission order."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

Thunk = Callable[[], Awaitable[None]]


class SerialDeliveryQueue:
    """FIFO of coroutine factories drained by a single task.

    A thunk starts only after every earlier thunk has settled. Failures are
    logged and do not stop the queue.
    """

    def __init__(self, name: str = "stream") -> None:
        self._name = name
        self._pending: deque[tuple[Thunk, asyncio.Future[None]]] = deque()
        self._worker: Optional[asyncio.Task[None]] = None

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def idle(self) -> bool:
        return not self._pending and (self._worker is None or self._worker.done())

    def enqueue(self, thunk: Thunk) -> asyncio.Future[None]:
        """Append ``thunk``; the returned future resolves once it has settled."""
        loop = asyncio.get_running_loop()
        done: asyncio.Future[None] = loop.create_future()
        self._pending.append((thunk, done))
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._drain())
        return done

    async def join(self) -> None:
        """Wait until everything enqueued so far has settled."""
        if self._pending or (self._worker is not None and not self._worker.done()):
            await self.enqueue(_noop)

    async def _drain(self) -> None:
        while self._pending:
            thunk, done = self._pending.popleft()
            try:
                await thunk()
            except asyncio.CancelledError:
                done.cancel()
                for _, rest in self._pending:
                    rest.cancel()
                self._pending.clear()
                raise
            except Exception as e:
                logger.warning("%s update failed: %s", self._name, e)
            if not done.done():
                done.set_result(None)


async def _noop() -> None:
    return None
