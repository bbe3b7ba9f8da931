"""Repeat the chat "typing…" action until the first streamed text is visible."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from livereply.core.events import StreamTarget
from livereply.core.transport import MessageTransport

logger = logging.getLogger(__name__)

TYPING_ACTION_INTERVAL = 4.0


class TypingIndicator:
    def __init__(
        self,
        transport: MessageTransport,
        target: StreamTarget,
        interval: float = TYPING_ACTION_INTERVAL,
    ) -> None:
        self._transport = transport
        self._target = target
        self._interval = interval
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.active:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _loop(self) -> None:
        while True:
            try:
                await self._transport.send_typing(self._target)
            except Exception as e:
                logger.debug("send_typing failed: %s", e)
            await asyncio.sleep(self._interval)
