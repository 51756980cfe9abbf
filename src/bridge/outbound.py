"""Assistant audio: realtime deltas -> transcoder -> telephony frames."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

from bridge.buffers import AudioQueue, ChunkBuffer

if TYPE_CHECKING:  # pragma: no cover
    from config.settings import Settings
    from integrations.realtime_events import AudioDelta
    from integrations.twilio_streaming import TwilioMediaStream
    from telephony.transcoder import Transcoder

LOGGER = logging.getLogger(__name__)

# An empty item in the queue marks the end of a response.
_RESPONSE_BOUNDARY = b""


class OutboundPath:
    """Relays converted audio downstream, tagged with the stream sid.

    Audio that arrives before the sid is known is held, then flushed in
    arrival order when ``set_stream_sid`` is called.
    """

    def __init__(
        self,
        settings: Settings,
        transcoder: Transcoder,
        downstream: TwilioMediaStream,
        *,
        call_id: str = "-",
    ) -> None:
        self._transcoder = transcoder
        self._downstream = downstream
        self._call_id = call_id
        fmt = transcoder.output_format
        self._frame_bytes = max(fmt.bytes_for(settings.outbound_frame_ms), fmt.sample_width)
        self._send_marks = settings.send_response_marks
        self._mark_name = settings.mark_name

        self._queue = AudioQueue(
            max_items=settings.queue_max_frames,
            overflow_policy=settings.overflow_policy,
            name=f"[{call_id}] outbound",
        )
        self._held = ChunkBuffer(max_bytes=fmt.bytes_for(settings.max_held_ms), name=f"[{call_id}] outbound held")
        self._partial = b""
        self._lock = asyncio.Lock()
        self.stream_sid: str | None = None
        self.frames_sent = 0

    @property
    def held_frames(self) -> int:
        return len(self._held)

    async def handle_delta(self, delta: AudioDelta) -> None:
        if delta.audio:
            await self._queue.put(delta.audio)

    async def handle_response_completed(self) -> None:
        await self._queue.put(_RESPONSE_BOUNDARY)

    def finish(self) -> None:
        self._queue.close()

    async def set_stream_sid(self, stream_sid: str) -> None:
        async with self._lock:
            if self.stream_sid is not None:
                if stream_sid != self.stream_sid:
                    LOGGER.warning(
                        "[%s] Ignoring second streamSid %s (have %s)", self._call_id, stream_sid, self.stream_sid
                    )
                return
            self.stream_sid = stream_sid
            if self._held:
                LOGGER.info("[%s] Flushing %s held frames to %s", self._call_id, len(self._held), stream_sid)
            while self._held:
                await self._send(stream_sid, self._held.popleft())

    async def _send(self, stream_sid: str, frame: bytes) -> None:
        await self._downstream.send_media(stream_sid, frame)
        self.frames_sent += 1

    async def _relay(self, frame: bytes) -> None:
        async with self._lock:
            if self.stream_sid is None:
                self._held.append(frame)
                return
            await self._send(self.stream_sid, frame)

    def _split(self, chunk: bytes) -> list[bytes]:
        data = self._partial + chunk
        usable = len(data) - len(data) % self._frame_bytes
        self._partial = data[usable:]
        return [data[i : i + self._frame_bytes] for i in range(0, usable, self._frame_bytes)]

    async def _flush_partial(self) -> None:
        if self._partial:
            tail, self._partial = self._partial, b""
            await self._relay(tail)

    async def _end_of_response(self) -> None:
        await self._flush_partial()
        if not self._send_marks:
            return
        async with self._lock:
            if self.stream_sid is None:
                return
            await self._downstream.send_mark(self.stream_sid, self._mark_name)

    async def _frames(self) -> AsyncIterator[bytes]:
        # The consumer relays each converted chunk before pulling the next
        # input, so a boundary seen here follows all audio before it.
        async for item in self._queue:
            if item == _RESPONSE_BOUNDARY:
                await self._end_of_response()
                continue
            yield item

    async def run(self) -> None:
        async for chunk in self._transcoder.convert(self._frames()):
            for frame in self._split(chunk):
                await self._relay(frame)
        await self._flush_partial()
