"""Per-reply dispatcher: partial replies go to a ReplyStream, complete ones are chunked and sent."""

from __future__ import annotations

import logging
import re
from collections import OrderedDict
from typing import Callable, Optional

from livereply.core.events import RenderMode, StreamOptions, StreamTarget
from livereply.core.segmenter import chunk_text
from livereply.core.stream import ReplyStream
from livereply.core.transport import MessageTransport
from livereply.core.typing_indicator import TYPING_ACTION_INTERVAL, TypingIndicator

logger = logging.getLogger(__name__)

DELIVERED_KEYS_MAX = 100

_FENCED_CODE_RE = re.compile(r"```[\s\S]*?```")
_TABLE_RE = re.compile(r"\|.+\|[\r\n]+\|[-:| ]+\|")


def should_use_rich(text: str) -> bool:
    """True when text has markdown that renders badly as plain text (code fences, tables)."""
    return bool(_FENCED_CODE_RE.search(text) or _TABLE_RE.search(text))


class DeliveredKeys:
    """Bounded set of delivered payloads; oldest entry is evicted first."""

    def __init__(self, max_size: int = DELIVERED_KEYS_MAX) -> None:
        self._max = max_size
        self._keys: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, key: str) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def add(self, key: str) -> None:
        if key in self._keys:
            return
        if self._max > 0 and len(self._keys) >= self._max:
            self._keys.popitem(last=False)
        self._keys[key] = None


class ReplyDispatcher:
    """Routes one conversation turn to the chat: streamed partials, then the final reply.

    Pass ``delivered`` to share the duplicate cache between dispatchers; keys
    include the chat id, so one cache can serve many chats.
    """

    def __init__(
        self,
        transport: MessageTransport,
        target: StreamTarget,
        options: Optional[StreamOptions] = None,
        *,
        render_mode: RenderMode = RenderMode.AUTO,
        delivered_keys_max: int = DELIVERED_KEYS_MAX,
        delivered: Optional[DeliveredKeys] = None,
        typing_interval: float = TYPING_ACTION_INTERVAL,
        stream_factory: Optional[Callable[..., ReplyStream]] = None,
    ) -> None:
        self._transport = transport
        self._target = target
        self._options = options or StreamOptions()
        self._render_mode = render_mode
        self._delivered = delivered if delivered is not None else DeliveredKeys(delivered_keys_max)
        self._typing = TypingIndicator(transport, target, interval=typing_interval)
        self._stream_factory = stream_factory or ReplyStream
        self._stream: Optional[ReplyStream] = None

    @property
    def stream(self) -> Optional[ReplyStream]:
        return self._stream

    async def on_reply_start(self) -> None:
        if self._stream is not None and self._stream.message_id:
            return
        if not self._target.reply_to_message_id:
            return
        if self._typing.active:
            return
        self._typing.start()
        logger.debug("typing indicator started", extra={"chat_id": self._target.chat_id})

    async def on_idle(self) -> None:
        if self._typing.active:
            await self._typing.stop()
            logger.debug("typing indicator stopped", extra={"chat_id": self._target.chat_id})

    async def on_partial_reply(self, text: str) -> None:
        if not text:
            return
        if self._stream is None:
            self._stream = self._stream_factory(self._transport, self._target, self._options)
            await self.on_idle()
        await self._stream.update(text)

    async def deliver(self, text: str) -> None:
        """Deliver a complete reply; closes the active stream if there is one."""
        logger.debug("deliver called: text=%s", text[:100])
        if not text.strip():
            return

        key = f"{self._target.chat_id}:{text}"
        if self._stream is not None:
            stream, self._stream = self._stream, None
            await stream.finalize(text)
            self._delivered.add(key)
            return

        if key in self._delivered:
            logger.info("deliver: duplicate payload, skipping")
            return
        self._delivered.add(key)

        rich = self._render_mode == RenderMode.RICH or (
            self._render_mode == RenderMode.AUTO and should_use_rich(text)
        )
        chunks = chunk_text(text, self._options.text_chunk_limit, self._options.chunk_mode)
        logger.info(
            "deliver: sending %d %s chunks to %s",
            len(chunks),
            "rich" if rich else "text",
            self._target.chat_id,
        )
        for chunk in chunks:
            try:
                result = await self._transport.send_message(self._target, chunk, rich=rich)
            except Exception as e:
                logger.warning("deliver: send failed: %s", e)
                continue
            if not result.ok:
                logger.warning("deliver: send failed: %s", result.error)

    async def close(self) -> None:
        """Finalize any open stream and stop typing."""
        await self.on_idle()
        if self._stream is not None:
            stream, self._stream = self._stream, None
            await stream.finalize()
