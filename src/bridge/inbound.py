"""Caller audio: telephony frames -> transcoder -> realtime service.

Two cadences run independently. The append cadence forwards whatever has
accumulated, ``append_interval_ms`` after the first byte landed in an empty
buffer. The commit cadence commits and requests a response once enough
appended audio has built up since the last commit.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Literal

from bridge.buffers import AudioQueue, ChunkBuffer
from bridge.errors import UpstreamTransportError

if TYPE_CHECKING:  # pragma: no cover
    from config.settings import Settings
    from integrations.realtime_client import RealtimeClient
    from telephony.transcoder import Transcoder

LOGGER = logging.getLogger(__name__)


class InboundPath:
    def __init__(
        self,
        settings: Settings,
        transcoder: Transcoder,
        upstream: RealtimeClient,
        *,
        call_id: str = "-",
    ) -> None:
        self._transcoder = transcoder
        self._upstream = upstream
        self._call_id = call_id
        self._format = transcoder.output_format
        self._append_interval = settings.append_interval_ms / 1000
        self._commit_interval = settings.commit_interval_ms / 1000
        self._min_commit_ms = settings.min_commit_ms

        max_bytes = self._format.bytes_for(settings.max_buffered_ms)
        self._queue = AudioQueue(
            max_items=settings.queue_max_frames,
            overflow_policy=settings.overflow_policy,
            name=f"[{call_id}] inbound",
        )
        self._buffer = ChunkBuffer(max_bytes=max_bytes, name=f"[{call_id}] inbound accumulation")
        self._pending = ChunkBuffer(max_bytes=max_bytes, name=f"[{call_id}] inbound pending")
        self._has_audio = asyncio.Event()
        self._lock = asyncio.Lock()
        self._ready = False

        # Milliseconds appended upstream since the last commit.
        self.window_ms = 0.0
        self.appends = 0
        self.commits = 0

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def pending_chunks(self) -> int:
        return len(self._pending)

    async def push_frame(self, frame: bytes) -> None:
        if frame:
            await self._queue.put(frame)

    def finish(self) -> None:
        """Signal end of input; ``run()`` returns once the transcoder drains."""

        self._queue.close()

    async def run(self) -> None:
        async for chunk in self._transcoder.convert(aiter(self._queue)):
            self._buffer.append(chunk)
            self._has_audio.set()

    async def run_append_timer(self) -> None:
        while True:
            await self._has_audio.wait()
            await asyncio.sleep(self._append_interval)
            await self.flush()

    async def run_commit_timer(self) -> None:
        while True:
            await asyncio.sleep(self._commit_interval)
            await self.maybe_commit()

    async def _append(self, data: bytes) -> None:
        await self._upstream.append_audio(data)
        self.appends += 1
        self.window_ms += self._format.duration_ms(len(data))

    async def _commit(self) -> None:
        await self._upstream.commit()
        # The service rejects response.create while a response is in progress.
        if self._upstream.response_active:
            LOGGER.debug("[%s] Response in progress; committed without requesting another", self._call_id)
        else:
            await self._upstream.request_response()
        LOGGER.debug("[%s] Committed %.0f ms of caller audio", self._call_id, self.window_ms)
        self.window_ms = 0.0
        self.commits += 1

    async def flush(self) -> None:
        """Forward accumulated audio, or park it until upstream is ready."""

        async with self._lock:
            self._has_audio.clear()
            data = self._buffer.take_all()
            if not data:
                return
            if not self._ready:
                self._pending.append(data)
                return
            await self._append(data)

    async def maybe_commit(self) -> bool:
        async with self._lock:
            if not self._ready or self.window_ms < self._min_commit_ms:
                return False
            await self._commit()
            return True

    async def mark_upstream_ready(self) -> None:
        async with self._lock:
            if self._pending:
                LOGGER.info("[%s] Draining %s pending audio chunks", self._call_id, len(self._pending))
            while self._pending:
                await self._append(self._pending.popleft())
            self._ready = True

    def mark_upstream_lost(self) -> None:
        self._ready = False
        self._pending.clear()
        self._buffer.clear()
        self._has_audio.clear()
        self.window_ms = 0.0

    async def final_flush(self, policy: Literal["commit", "discard"]) -> bool:
        """Best-effort last append and commit when the call stops.

        Returns True if a final commit was sent. Failures are logged only.
        """

        try:
            await self.flush()
            async with self._lock:
                if policy != "commit" or not self._ready or self.window_ms <= 0:
                    if self.window_ms > 0:
                        LOGGER.info(
                            "[%s] Discarding %.0f ms of uncommitted audio", self._call_id, self.window_ms
                        )
                    return False
                await self._commit()
                return True
        except UpstreamTransportError as exc:
            LOGGER.warning("[%s] Final commit failed: %s", self._call_id, exc)
            return False
