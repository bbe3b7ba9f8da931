"""Pytest fixtures and config."""

from __future__ import annotations

import asyncio
from typing import Optional

import pytest

from livereply.core.events import DeliveryResult, StreamTarget


class FakeTransport:
    """In-memory MessageTransport; records every call in order."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, Optional[str], str, bool]] = []
        self.sent: list[tuple[str, bool]] = []
        self.typing = 0
        self.fail_creates: set[int] = set()
        self.fail_updates = False
        self.raise_on_create = False
        self.delay = 0.0
        self._creates = 0
        self._next_id = 1

    @property
    def creates(self) -> list[tuple[str, str, bool]]:
        return [(mid, content, streaming) for op, mid, content, streaming in self.calls if op == "create"]

    @property
    def updates(self) -> list[tuple[str, str, bool]]:
        return [(mid, content, streaming) for op, mid, content, streaming in self.calls if op == "update"]

    async def create_message(self, target: StreamTarget, content: str, *, streaming: bool) -> DeliveryResult:
        n = self._creates
        self._creates += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.raise_on_create:
            raise ConnectionError("network down")
        if n in self.fail_creates:
            self.calls.append(("create_failed", None, content, streaming))
            return DeliveryResult.failure("create rejected")
        mid = str(self._next_id)
        self._next_id += 1
        self.calls.append(("create", mid, content, streaming))
        return DeliveryResult.success(mid)

    async def update_message(
        self, message_id: str, content: str, *, streaming: bool, target: StreamTarget
    ) -> DeliveryResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_updates:
            self.calls.append(("update_failed", message_id, content, streaming))
            return DeliveryResult.failure("edit rejected")
        self.calls.append(("update", message_id, content, streaming))
        return DeliveryResult.success(message_id)

    async def send_message(self, target: StreamTarget, text: str, *, rich: bool) -> DeliveryResult:
        self.sent.append((text, rich))
        return DeliveryResult.success(str(len(self.sent)))

    async def send_typing(self, target: StreamTarget) -> None:
        self.typing += 1


class FakeClock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeTimer:
    """Stands in for loop.call_later; tests fire armed callbacks by hand."""

    def __init__(self) -> None:
        self.armed: list[tuple[float, object]] = []
        self.cancelled = 0

    def __call__(self, delay, callback):
        entry = (delay, callback)
        self.armed.append(entry)
        timer = self

        class _Handle:
            def cancel(self) -> None:
                if entry in timer.armed:
                    timer.armed.remove(entry)
                    timer.cancelled += 1

        return _Handle()

    def fire(self) -> None:
        armed, self.armed = self.armed, []
        for _, callback in armed:
            callback()


@pytest.fixture(autouse=True)
def env_cleanup(monkeypatch):
    """Avoid loading real secrets or overrides in tests."""
    for name in (
        "TELEGRAM_BOT_TOKEN",
        "STREAM_TEXT_CHUNK_LIMIT",
        "STREAM_CHUNK_MODE",
        "LIVEREPLY_ENV_PREFIX",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/1")
    yield


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def target() -> StreamTarget:
    return StreamTarget(chat_id="100")


@pytest.fixture
def timer() -> FakeTimer:
    return FakeTimer()
