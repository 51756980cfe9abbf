from __future__ import annotations

import asyncio

import pytest

from bridge.buffers import AudioQueue, ChunkBuffer


@pytest.mark.asyncio
async def test_drop_oldest_keeps_newest_frames():
    queue = AudioQueue(max_items=2, overflow_policy="drop_oldest")
    for frame in (b"a", b"b", b"c"):
        await queue.put(frame)
    queue.close()

    assert [frame async for frame in queue] == [b"b", b"c"]
    assert queue.drops.frames == 1


@pytest.mark.asyncio
async def test_block_policy_waits_for_room():
    queue = AudioQueue(max_items=1, overflow_policy="block")
    await queue.put(b"a")

    blocked = asyncio.create_task(queue.put(b"b"))
    await asyncio.sleep(0.01)
    assert not blocked.done()

    assert await queue.get() == b"a"
    assert await asyncio.wait_for(blocked, timeout=1) is True
    assert await queue.get() == b"b"
    assert queue.drops.frames == 0


@pytest.mark.asyncio
async def test_close_releases_blocked_producer_and_consumer():
    queue = AudioQueue(max_items=1, overflow_policy="block")
    await queue.put(b"a")
    producer = asyncio.create_task(queue.put(b"b"))
    await asyncio.sleep(0)

    queue.close()

    assert await asyncio.wait_for(producer, timeout=1) is False
    assert await queue.get() == b"a"
    assert await queue.get() is None
    assert await queue.put(b"c") is False


def test_chunk_buffer_drops_oldest_over_cap():
    buffer = ChunkBuffer(max_bytes=4)
    buffer.append(b"ab")
    buffer.append(b"cd")
    buffer.append(b"ef")
    buffer.append(b"")

    assert len(buffer) == 2
    assert buffer.drops.bytes == 2
    assert buffer.take_all() == b"cdef"
    assert buffer.nbytes == 0
    assert not buffer
