"""Tests for core/stream: debounce, segment sync, restarts, failures, finalization."""

import asyncio
import logging

import pytest

from livereply.core.events import ChunkMode, StreamOptions
from livereply.core.stream import ReplyStream, StreamState, compute_finalized_length


def make_stream(transport, target, clock=None, limit=4000, interval_ms=400, mode=ChunkMode.LENGTH):
    options = StreamOptions(text_chunk_limit=limit, chunk_mode=mode, update_interval_ms=interval_ms)
    if clock is None:
        return ReplyStream(transport, target, options)
    return ReplyStream(transport, target, options, clock=clock)


def test_compute_finalized_length():
    assert compute_finalized_length([]) == 0
    assert compute_finalized_length(["only"]) == 0
    assert compute_finalized_length(["abc", "de", "f"]) == 5


@pytest.mark.asyncio
async def test_first_update_is_sent_immediately(transport, target, clock):
    stream = make_stream(transport, target, clock)
    assert stream.state == StreamState.IDLE
    await stream.update("Hello")
    assert transport.creates == [("1", "Hello", True)]
    assert stream.message_id == "1"
    assert stream.state == StreamState.STREAMING


@pytest.mark.asyncio
async def test_identical_update_is_noop(transport, target, clock):
    stream = make_stream(transport, target, clock)
    await stream.update("Hello")
    clock.now += 10
    await stream.update("Hello")
    assert len(transport.calls) == 1


@pytest.mark.asyncio
async def test_updates_within_interval_are_coalesced(transport, target, clock):
    stream = make_stream(transport, target, clock)
    await stream.update("Hello")
    await stream.update("Hello wor")
    await stream.update("Hello world")
    assert len(transport.calls) == 1
    assert stream.has_pending is True

    await stream.finalize()
    assert stream.has_pending is False
    assert transport.updates == [("1", "Hello world", False)]
    assert stream.is_finalized


@pytest.mark.asyncio
async def test_update_after_interval_is_sent_immediately(transport, target, clock):
    stream = make_stream(transport, target, clock)
    await stream.update("Hello")
    clock.now += 0.4
    await stream.update("Hello world")
    assert transport.updates == [("1", "Hello world", True)]
    assert stream.has_pending is False


@pytest.mark.asyncio
async def test_timer_is_armed_for_remaining_interval(transport, target, clock, timer):
    options = StreamOptions(update_interval_ms=400)
    stream = ReplyStream(transport, target, options, clock=clock, call_later=timer)
    await stream.update("Hello")
    clock.now += 0.3
    await stream.update("Hello wor")
    await stream.update("Hello world")
    assert len(timer.armed) == 1
    assert timer.armed[0][0] == pytest.approx(0.1)
    assert transport.updates == []

    clock.now += 0.1
    timer.fire()
    await stream.join()
    assert transport.updates == [("1", "Hello world", True)]
    assert stream.has_pending is False


@pytest.mark.asyncio
async def test_remaining_interval_not_sent_early(transport, target, clock):
    stream = make_stream(transport, target, clock, interval_ms=400)
    await stream.update("Hello")
    clock.now += 0.3
    await stream.update("Hello world")
    await asyncio.sleep(0.05)
    await stream.join()
    assert transport.updates == []

    await asyncio.sleep(0.15)
    await stream.join()
    assert transport.updates == [("1", "Hello world", True)]


@pytest.mark.asyncio
async def test_finalize_without_content_sends_pending_not_last_delivered(
    transport, target, clock, timer
):
    options = StreamOptions(update_interval_ms=400)
    stream = ReplyStream(transport, target, options, clock=clock, call_later=timer)
    await stream.update("Hello")
    await stream.update("Hello there")
    assert stream.last_content == "Hello"

    await stream.finalize()
    assert timer.armed == []
    assert timer.cancelled == 1
    assert transport.updates == [("1", "Hello there", False)]
    assert stream.last_content == "Hello there"


@pytest.mark.asyncio
async def test_timer_delivers_latest_pending(transport, target):
    stream = make_stream(transport, target, interval_ms=50)
    await stream.update("a")
    await stream.update("ab")
    await stream.update("abc")
    await asyncio.sleep(0.15)
    await stream.join()
    assert [c[2] for c in transport.calls] == ["a", "abc"]
    assert transport.updates == [("1", "abc", True)]
    assert stream.last_content == "abc"


@pytest.mark.asyncio
async def test_close_cancels_timer(transport, target):
    stream = make_stream(transport, target, interval_ms=50)
    await stream.update("a")
    await stream.update("ab")
    stream.close()
    await asyncio.sleep(0.1)
    await stream.join()
    assert len(transport.calls) == 1


@pytest.mark.asyncio
async def test_finalize_twice_is_noop(transport, target, clock):
    stream = make_stream(transport, target, clock)
    await stream.update("Hello")
    await stream.finalize("Hello world")
    calls = len(transport.calls)
    await stream.finalize("Hello world again")
    await stream.update("Hello world again and again")
    assert len(transport.calls) == calls
    assert stream.state == StreamState.FINALIZED


@pytest.mark.asyncio
async def test_finalize_without_content_uses_last_delivered(transport, target, clock):
    stream = make_stream(transport, target, clock)
    await stream.update("Hello")
    await stream.finalize()
    assert transport.updates == [("1", "Hello", False)]
    assert stream.is_finalized


@pytest.mark.asyncio
async def test_finalize_on_empty_stream_sends_nothing(transport, target):
    stream = make_stream(transport, target)
    await stream.finalize()
    assert transport.calls == []


@pytest.mark.asyncio
async def test_final_update_on_fresh_stream_is_not_streaming(transport, target):
    stream = make_stream(transport, target)
    await stream.update("Done.", is_final=True)
    assert transport.creates == [("1", "Done.", False)]
    assert stream.is_finalized


@pytest.mark.asyncio
async def test_growth_splits_into_new_messages(transport, target, clock):
    stream = make_stream(transport, target, clock, limit=10, interval_ms=0)
    await stream.update("hello ")
    assert transport.creates == [("1", "hello ", True)]

    await stream.update("hello world this")
    assert stream.segments == ["hello worl", "d this"]
    assert stream.finalized_length == 10
    assert transport.calls[1:] == [
        ("update", "1", "hello worl", False),
        ("create", "2", "d this", True),
    ]

    await stream.finalize("hello world this is done")
    assert stream.segments == ["hello worl", "d this is ", "done"]
    assert stream.message_ids == ["1", "2", "3"]
    assert transport.calls[3:] == [
        ("update", "2", "d this is ", False),
        ("create", "3", "done", False),
    ]
    assert "".join(stream.segments) == "hello world this is done"


@pytest.mark.asyncio
async def test_same_segment_count_updates_last_message(transport, target, clock):
    stream = make_stream(transport, target, clock, limit=10, interval_ms=0)
    await stream.update("hello ")
    await stream.update("hello wo")
    assert transport.updates == [("1", "hello wo", True)]


@pytest.mark.asyncio
async def test_restart_finalizes_old_message(transport, target, clock):
    stream = make_stream(transport, target, clock, interval_ms=0)
    await stream.update("Answer A is forty-two")
    await stream.update("Never mind, Answer B is seven")
    assert transport.calls == [
        ("create", "1", "Answer A is forty-two", True),
        ("update", "1", "Answer A is forty-two", False),
        ("create", "2", "Never mind, Answer B is seven", True),
    ]
    assert stream.message_ids == ["2"]
    assert stream.last_content == "Never mind, Answer B is seven"


@pytest.mark.asyncio
async def test_incompatible_segments_reset_and_resend(transport, target, clock):
    stream = make_stream(transport, target, clock, limit=10, interval_ms=0)
    await stream.update("hello ")
    await stream.update("hello world this")
    assert stream.message_ids == ["1", "2"]

    # still a continuation (small leading drift) but the locked prefix moved
    await stream.update("> hello world this more")
    assert ("update", "2", "d this", False) in transport.calls
    assert stream.segments == ["> hello ", "world ", "this more"]
    assert stream.message_ids == ["3", "4", "5"]
    assert transport.creates[-3:] == [
        ("3", "> hello ", False),
        ("4", "world ", False),
        ("5", "this more", True),
    ]


@pytest.mark.asyncio
async def test_fewer_segments_than_messages_restarts(transport, target, clock):
    stream = make_stream(transport, target, clock, limit=10, interval_ms=0)
    await stream.update("hello ")
    await stream.update("hello world this")
    await stream._sync_segments(["fresh"], False)
    assert transport.calls[-2:] == [
        ("update", "2", "d this", False),
        ("create", "3", "fresh", True),
    ]
    assert stream.message_ids == ["3"]


@pytest.mark.asyncio
async def test_failed_initial_create_is_retried_next_time(transport, target, clock, caplog):
    transport.fail_creates = {0}
    stream = make_stream(transport, target, clock)
    with caplog.at_level(logging.WARNING):
        await stream.update("hello")
    assert stream.message_ids == []
    assert stream.state == StreamState.IDLE
    assert "create failed" in caplog.text

    await stream.update("hello world")
    assert transport.creates == [("1", "hello world", True)]
    assert stream.message_ids == ["1"]


@pytest.mark.asyncio
async def test_failed_middle_create_keeps_appending(transport, target, clock, caplog):
    transport.fail_creates = {1}
    stream = make_stream(transport, target, clock, limit=10, interval_ms=0)
    await stream.update("hello ")
    with caplog.at_level(logging.WARNING):
        await stream.update("hello world this is it")
    assert stream.segments == ["hello worl", "d this is ", "it"]
    assert stream.message_ids == ["1", "2"]
    assert transport.creates[-1] == ("2", "it", True)
    assert "after 1 failed segment" in caplog.text


@pytest.mark.asyncio
async def test_transport_exception_does_not_propagate(transport, target, clock):
    transport.raise_on_create = True
    stream = make_stream(transport, target, clock)
    await stream.update("hello")
    await stream.finalize("hello world")
    assert stream.message_ids == []


@pytest.mark.asyncio
async def test_update_failure_leaves_stream_usable(transport, target, clock):
    transport.fail_updates = True
    stream = make_stream(transport, target, clock, interval_ms=0)
    await stream.update("hello")
    await stream.update("hello world")
    transport.fail_updates = False
    await stream.finalize("hello world!")
    assert transport.updates == [("1", "hello world!", False)]
    assert stream.is_finalized


@pytest.mark.asyncio
async def test_whitespace_only_content_is_never_sent(transport, target):
    stream = make_stream(transport, target)
    await stream.update("   ")
    assert transport.calls == []


@pytest.mark.asyncio
async def test_concurrent_updates_land_in_order(transport, target, clock):
    transport.delay = 0.01
    stream = make_stream(transport, target, clock, interval_ms=0)
    await asyncio.gather(
        stream.update("a b"),
        stream.update("a b c"),
        stream.update("a b c d"),
    )
    assert transport.calls == [
        ("create", "1", "a b", True),
        ("update", "1", "a b c", True),
        ("update", "1", "a b c d", True),
    ]


@pytest.mark.asyncio
async def test_queued_duplicate_is_skipped(transport, target, clock):
    transport.delay = 0.01
    stream = make_stream(transport, target, clock, interval_ms=0)
    await asyncio.gather(stream.update("same"), stream.update("same"))
    assert len(transport.calls) == 1


@pytest.mark.asyncio
async def test_monotonic_growth_keeps_ids_and_segments_aligned(transport, target, clock):
    text = "Streaming replies grow one token at a time until the model is done talking."
    stream = make_stream(transport, target, clock, limit=20, interval_ms=0)
    counts = []
    for end in range(5, len(text), 7):
        await stream.update(text[:end])
        counts.append(len(stream.message_ids))
    await stream.finalize(text)
    counts.append(len(stream.message_ids))

    assert counts == sorted(counts)
    assert len(stream.message_ids) == len(stream.segments)
    assert "".join(stream.segments) == text
    assert all(len(s) <= 20 for s in stream.segments)
    assert transport.calls[-1][3] is False
