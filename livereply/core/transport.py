"""Transport contract for chat surfaces.

The streaming engine never talks to an API directly. A transport creates and
edits messages and reports the outcome as a DeliveryResult:

- create_message: new message; ``streaming`` marks it as still being written.
- update_message: edit an earlier message in place.
- send_message: one-shot send of a complete (non-streamed) chunk.
- send_typing: best-effort "typing…" hint while nothing is visible yet.

Transports may also raise; callers treat an exception like a failed result.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from livereply.core.events import DeliveryResult, StreamTarget


@runtime_checkable
class MessageTransport(Protocol):
    """Protocol for chat surfaces that support message edits."""

    async def create_message(
        self, target: StreamTarget, content: str, *, streaming: bool
    ) -> DeliveryResult:
        ...

    async def update_message(
        self,
        message_id: str,
        content: str,
        *,
        streaming: bool,
        target: StreamTarget,
    ) -> DeliveryResult:
        ...

    async def send_message(self, target: StreamTarget, text: str, *, rich: bool) -> DeliveryResult:
        ...

    async def send_typing(self, target: StreamTarget) -> None:
        ...
