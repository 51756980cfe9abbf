"""Bounded audio buffers.

``AudioQueue`` sits in front of a transcoder and applies the configured
overflow policy: ``block`` makes the producer wait for room, ``drop_oldest``
discards the oldest frame. ``ChunkBuffer`` holds converted audio capped by
duration and always drops the oldest chunks.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Literal

LOGGER = logging.getLogger(__name__)

OverflowPolicy = Literal["block", "drop_oldest"]


@dataclass
class DropCounters:
    frames: int = 0
    bytes: int = 0


class AudioQueue:
    """Bounded FIFO of audio frames that can be closed for end-of-stream."""

    def __init__(self, *, max_items: int, overflow_policy: OverflowPolicy, name: str = "audio") -> None:
        if max_items <= 0:
            raise ValueError("max_items must be > 0")
        self._max_items = max_items
        self._policy = overflow_policy
        self._name = name
        self._items: deque[bytes] = deque()
        self._closed = False
        self._readable = asyncio.Event()
        self._writable = asyncio.Event()
        self._writable.set()
        self.drops = DropCounters()

    def __len__(self) -> int:
        return len(self._items)

    @property
    def closed(self) -> bool:
        return self._closed

    def _full(self) -> bool:
        return len(self._items) >= self._max_items

    def _drop_oldest(self) -> None:
        dropped = self._items.popleft()
        self.drops.frames += 1
        self.drops.bytes += len(dropped)
        if self.drops.frames == 1 or self.drops.frames % 100 == 0:
            LOGGER.warning(
                "%s queue overflow: dropped oldest frame (total dropped=%s)", self._name, self.drops.frames
            )

    def _push(self, item: bytes) -> None:
        self._items.append(item)
        self._readable.set()

    async def put(self, item: bytes) -> bool:
        """Enqueue a frame. Returns False if the queue is already closed."""

        if self._closed:
            return False
        if self._full():
            if self._policy == "drop_oldest":
                self._drop_oldest()
            else:
                LOGGER.debug("%s queue full; waiting for room", self._name)
                while self._full() and not self._closed:
                    self._writable.clear()
                    await self._writable.wait()
                if self._closed:
                    return False
        self._push(item)
        return True

    async def get(self) -> bytes | None:
        """Return the next frame, or None once closed and drained."""

        while not self._items:
            if self._closed:
                return None
            self._readable.clear()
            await self._readable.wait()
        item = self._items.popleft()
        self._writable.set()
        return item

    def close(self) -> None:
        self._closed = True
        self._readable.set()
        self._writable.set()

    def clear(self) -> None:
        self._items.clear()
        self._writable.set()

    async def __aiter__(self) -> AsyncIterator[bytes]:
        while True:
            item = await self.get()
            if item is None:
                return
            yield item


class ChunkBuffer:
    """Ordered chunks of converted audio, capped at ``max_bytes``."""

    def __init__(self, *, max_bytes: int, name: str = "chunks") -> None:
        self._max_bytes = max_bytes
        self._name = name
        self._chunks: deque[bytes] = deque()
        self._nbytes = 0
        self.drops = DropCounters()

    def __len__(self) -> int:
        return len(self._chunks)

    def __bool__(self) -> bool:
        return bool(self._chunks)

    @property
    def nbytes(self) -> int:
        return self._nbytes

    def append(self, chunk: bytes) -> None:
        if not chunk:
            return
        self._chunks.append(chunk)
        self._nbytes += len(chunk)
        while self._nbytes > self._max_bytes and len(self._chunks) > 1:
            dropped = self._chunks.popleft()
            self._nbytes -= len(dropped)
            self.drops.frames += 1
            self.drops.bytes += len(dropped)
            LOGGER.warning(
                "%s buffer overflow: dropped %s bytes (total dropped=%s bytes)",
                self._name,
                len(dropped),
                self.drops.bytes,
            )

    def popleft(self) -> bytes:
        chunk = self._chunks.popleft()
        self._nbytes -= len(chunk)
        return chunk

    def take_all(self) -> bytes:
        data = b"".join(self._chunks)
        self.clear()
        return data

    def clear(self) -> None:
        self._chunks.clear()
        self._nbytes = 0
