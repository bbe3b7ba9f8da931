"""Live-updating reply stream: one logical message spread over edited chat messages.

The caller feeds the full accumulated text with ``update``; the stream
debounces, re-segments the text under the chunk limit and drives the minimal
create/edit calls to keep the remote messages in sync. ``finalize`` flushes
and freezes the stream. All network work goes through a SerialDeliveryQueue so
edits land in the order they were requested.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable, Optional

from livereply.core.continuity import is_continuation
from livereply.core.events import DeliveryResult, StreamOptions, StreamTarget
from livereply.core.segmenter import split_streaming_text
from livereply.core.serial_queue import SerialDeliveryQueue
from livereply.core.transport import MessageTransport

logger = logging.getLogger(__name__)


class StreamState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    FINALIZED = "finalized"


def compute_finalized_length(segments: list[str]) -> int:
    """Characters locked into messages that will no longer be edited (all but the last)."""
    if len(segments) <= 1:
        return 0
    return sum(len(s) for s in segments[:-1])


class ReplyStream:
    """Streams one reply into a chat. Not safe for multiple producers.

    ``clock`` measures time since the last delivery. ``call_later(delay, callback)``
    arms the debounce timer and must return a handle with ``cancel()``; it
    defaults to the running loop's ``call_later``. Inject both to drive the
    stream on virtual time.
    """

    def __init__(
        self,
        transport: MessageTransport,
        target: StreamTarget,
        options: Optional[StreamOptions] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        call_later: Optional[Callable[[float, Callable[[], None]], Any]] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._transport = transport
        self._target = target
        self._options = options or StreamOptions()
        self._interval = self._options.update_interval_ms / 1000.0
        self._clock = clock
        self._call_later = call_later
        self._log = log or logger
        self._queue = SerialDeliveryQueue(name=f"stream {target.chat_id}")

        self._message_ids: list[str] = []
        self._segments: list[str] = []
        self._finalized_length = 0
        self._last_content = ""
        self._last_update_time: Optional[float] = None
        self._pending_handle: Optional[Any] = None
        self._pending_content: Optional[str] = None
        self._finalized = False

    @property
    def target(self) -> StreamTarget:
        return self._target

    @property
    def message_id(self) -> Optional[str]:
        """Id of the last (still mutable) remote message, if any."""
        return self._message_ids[-1] if self._message_ids else None

    @property
    def message_ids(self) -> list[str]:
        return list(self._message_ids)

    @property
    def segments(self) -> list[str]:
        return list(self._segments)

    @property
    def finalized_length(self) -> int:
        return self._finalized_length

    @property
    def last_content(self) -> str:
        return self._last_content

    @property
    def has_pending(self) -> bool:
        return self._pending_handle is not None

    @property
    def is_finalized(self) -> bool:
        return self._finalized

    @property
    def state(self) -> StreamState:
        if self._finalized:
            return StreamState.FINALIZED
        return StreamState.STREAMING if self._message_ids else StreamState.IDLE

    async def update(self, content: str, is_final: bool = False) -> None:
        """Show ``content`` (the full text so far), now or on the next interval tick."""
        if self._finalized:
            return
        if content == self._last_content and not is_final:
            return

        if is_final:
            self._clear_pending()
            await self._enqueue(content, True)
            return

        if not self._message_ids:
            await self._enqueue(content, False)
            return

        elapsed = self._elapsed()
        if elapsed >= self._interval:
            self._clear_pending()
            await self._enqueue(content, False)
            return

        self._pending_content = content
        if self._pending_handle is None:
            call_later = self._call_later or asyncio.get_running_loop().call_later
            self._pending_handle = call_later(self._interval - elapsed, self._flush_pending)

    async def finalize(self, content: str = "") -> None:
        """Deliver the last content and freeze the stream. Repeated calls are no-ops."""
        if self._finalized:
            return
        pending = self._pending_content
        self._clear_pending()
        await self._queue.enqueue(lambda: self._apply_final(content or pending or ""))

    async def join(self) -> None:
        """Wait for all queued deliveries to settle."""
        await self._queue.join()

    def close(self) -> None:
        """Drop any armed timer. In-flight deliveries still run to completion."""
        self._clear_pending()

    def build_segments(self, content: str) -> Optional[list[str]]:
        """New segment list for ``content``, or None when the locked prefix no longer matches."""
        limit = self._options.text_chunk_limit
        mode = self._options.chunk_mode
        if not content:
            return []
        if not self._segments:
            return split_streaming_text(content, 0, limit, mode)

        remaining = content[self._finalized_length:]
        current = self._segments[-1]
        if current and not remaining.startswith(current):
            return None
        chunks = split_streaming_text(remaining, len(current), limit, mode)
        return self._segments[:-1] + chunks

    def _elapsed(self) -> float:
        if self._last_update_time is None:
            return float("inf")
        return self._clock() - self._last_update_time

    def _clear_pending(self) -> None:
        if self._pending_handle is not None:
            self._pending_handle.cancel()
            self._pending_handle = None
        self._pending_content = None

    def _flush_pending(self) -> None:
        self._pending_handle = None
        content = self._pending_content
        self._pending_content = None
        if not content or content == self._last_content:
            return
        self._queue.enqueue(lambda: self._apply_update(content, False))

    def _enqueue(self, content: str, is_final: bool) -> asyncio.Future[None]:
        return self._queue.enqueue(lambda: self._apply_update(content, is_final))

    async def _apply_final(self, content: str) -> None:
        # last_content is read at delivery time, after earlier queued updates applied
        await self._apply_update(content or self._last_content, True)

    async def _apply_update(self, content: str, is_final: bool) -> None:
        if self._finalized:
            return
        if not content and not is_final:
            return
        if not is_final and self._segments and content == self._last_content:
            return

        if self._segments and not is_continuation(self._last_content, content):
            self._log.info(
                "stream restarted, closing current message",
                extra={"chat_id": self._target.chat_id, "messages": len(self._message_ids)},
            )
            await self._finalize_active_message()
            self._reset_state()

        segments = self.build_segments(content)
        if segments is None:
            await self._finalize_active_message()
            self._reset_state()
            segments = self.build_segments(content)
            if segments is None:
                self._log.error("stream: unexpected incompatible segments after reset")
                return
        if not segments:
            return

        await self._sync_segments(segments, is_final)
        self._segments = segments
        self._finalized_length = compute_finalized_length(segments)
        self._last_content = content

        if is_final:
            self._finalized = True
            self._log.info(
                "stream finalized with %d chars in %d messages",
                len(content),
                len(self._message_ids),
            )

    def _reset_state(self) -> None:
        self._message_ids = []
        self._segments = []
        self._finalized_length = 0
        self._last_content = ""
        self._last_update_time = None

    async def _sync_segments(self, segments: list[str], is_final: bool) -> None:
        prev_count = len(self._message_ids)
        next_count = len(segments)

        if prev_count == 0:
            await self._send_initial_segments(segments, is_final)
            return

        if next_count < prev_count:
            await self._finalize_active_message()
            self._reset_state()
            await self._send_initial_segments(segments, is_final)
            return

        if next_count > prev_count:
            await self._update_existing(prev_count - 1, segments[prev_count - 1], streaming=False)
            skipped = 0
            for i in range(prev_count, next_count):
                streaming = not is_final and i == next_count - 1
                result = await self._send_segment(segments[i], streaming)
                if not result.ok:
                    skipped += 1
                    continue
                if skipped:
                    # later segment landed while an earlier one did not: ids shift left
                    self._log.warning(
                        "stream: segment %d created after %d failed segment(s)", i, skipped
                    )
                self._message_ids.append(result.message_id)
                if streaming:
                    self._last_update_time = self._clock()
            return

        streaming = not is_final
        await self._update_existing(prev_count - 1, segments[-1], streaming=streaming)
        if streaming:
            self._last_update_time = self._clock()

    async def _send_initial_segments(self, segments: list[str], is_final: bool) -> None:
        for i, segment in enumerate(segments):
            streaming = not is_final and i == len(segments) - 1
            result = await self._send_segment(segment, streaming)
            if not result.ok:
                return
            self._message_ids.append(result.message_id)
            if streaming:
                self._last_update_time = self._clock()

    async def _send_segment(self, content: str, streaming: bool) -> DeliveryResult:
        if not content.strip():
            return DeliveryResult.failure("blank segment")
        try:
            result = await self._transport.create_message(self._target, content, streaming=streaming)
        except Exception as e:
            self._log.warning("stream message create failed: %s", e)
            return DeliveryResult.failure(str(e))
        if result.ok and not result.message_id:
            result = DeliveryResult.failure("no message id returned")
        if not result.ok:
            self._log.warning("stream message create failed: %s", result.error)
        return result

    async def _update_existing(self, index: int, content: str, *, streaming: bool) -> None:
        if index < 0 or index >= len(self._message_ids):
            return
        message_id = self._message_ids[index]
        try:
            result = await self._transport.update_message(
                message_id, content, streaming=streaming, target=self._target
            )
        except Exception as e:
            self._log.warning("stream message update failed: %s", e)
            return
        if not result.ok:
            self._log.debug("stream message update failed: %s", result.error)

    async def _finalize_active_message(self) -> None:
        if not self._message_ids or not self._segments:
            return
        await self._update_existing(
            len(self._message_ids) - 1, self._segments[-1], streaming=False
        )
