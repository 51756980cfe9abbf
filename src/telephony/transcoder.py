"""Pluggable audio transcoders.

A transcoder turns an async stream of frames in one format into an async
stream in another, preserving order. The buffering/commit logic only sees
``Transcoder.convert``; the engine behind it can be swapped.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

import numpy as np

from bridge.errors import TranscoderFailure
from telephony.g711 import pcm16_downsample, pcm16_upsample, ulaw_decode, ulaw_encode

if TYPE_CHECKING:  # pragma: no cover
    from config.settings import Settings

LOGGER = logging.getLogger(__name__)

Encoding = Literal["g711_ulaw", "pcm16"]


@dataclass(frozen=True, slots=True)
class AudioFormat:
    encoding: Encoding
    sample_rate: int
    channels: int = 1

    @property
    def sample_width(self) -> int:
        return 1 if self.encoding == "g711_ulaw" else 2

    @property
    def bytes_per_ms(self) -> float:
        return self.sample_rate * self.sample_width * self.channels / 1000

    def duration_ms(self, nbytes: int) -> float:
        return nbytes / self.bytes_per_ms

    def bytes_for(self, ms: float) -> int:
        frame = self.sample_width * self.channels
        return int(ms * self.bytes_per_ms) // frame * frame


TELEPHONY_FORMAT = AudioFormat("g711_ulaw", 8000)


class Transcoder(ABC):
    """Converts an ordered stream of frames between two audio formats."""

    def __init__(self, input_format: AudioFormat, output_format: AudioFormat) -> None:
        self.input_format = input_format
        self.output_format = output_format

    @abstractmethod
    def convert(self, frames: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        """Yield converted audio for ``frames`` until the input ends."""

    async def aclose(self) -> None:
        """Release engine resources. Safe to call more than once."""


class PassthroughTranscoder(Transcoder):
    def __init__(self, audio_format: AudioFormat) -> None:
        super().__init__(audio_format, audio_format)

    async def convert(self, frames: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        async for frame in frames:
            if frame:
                yield frame


class G711Transcoder(Transcoder):
    """In-process mu-law <-> PCM16 engine built on numpy.

    The PCM16 side runs at an integer multiple of 8 kHz. Partial samples left
    at the end of a frame are carried into the next one.
    """

    def __init__(self, input_format: AudioFormat, output_format: AudioFormat) -> None:
        super().__init__(input_format, output_format)
        pcm = output_format if output_format.encoding == "pcm16" else input_format
        if {input_format.encoding, output_format.encoding} != {"g711_ulaw", "pcm16"}:
            raise ValueError("G711Transcoder converts between g711_ulaw and pcm16 only")
        if pcm.sample_rate % TELEPHONY_FORMAT.sample_rate:
            raise ValueError(f"unsupported PCM sample rate {pcm.sample_rate}")
        self._factor = pcm.sample_rate // TELEPHONY_FORMAT.sample_rate
        self._decoding = input_format.encoding == "g711_ulaw"
        self._carry = b""
        self._last_sample: int | None = None

    def _decode(self, ulaw: bytes) -> bytes:
        pcm8k = ulaw_decode(ulaw)
        out = pcm16_upsample(pcm8k, self._factor, previous=self._last_sample)
        if pcm8k.size:
            self._last_sample = int(pcm8k[-1])
        return out.tobytes()

    def _encode(self, pcm_bytes: bytes) -> bytes:
        data = self._carry + pcm_bytes
        usable = len(data) - len(data) % (2 * self._factor)
        self._carry = data[usable:]
        if not usable:
            return b""
        pcm = np.frombuffer(data[:usable], dtype="<i2")
        return ulaw_encode(pcm16_downsample(pcm, self._factor))

    def transcode(self, frame: bytes) -> bytes:
        return self._decode(frame) if self._decoding else self._encode(frame)

    async def convert(self, frames: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        async for frame in frames:
            try:
                out = self.transcode(frame)
            except ValueError as exc:
                raise TranscoderFailure(str(exc)) from exc
            if out:
                yield out


_FFMPEG_FORMATS = {"g711_ulaw": "mulaw", "pcm16": "s16le"}


class FfmpegTranscoder(Transcoder):
    """Runs ``ffmpeg`` as a raw-in/raw-out filter process.

    Writes to stdin await ``drain()``, so a slow reader holds back the
    producer instead of growing a buffer.
    """

    def __init__(
        self,
        input_format: AudioFormat,
        output_format: AudioFormat,
        *,
        ffmpeg_path: str = "ffmpeg",
        read_ms: int = 20,
    ) -> None:
        super().__init__(input_format, output_format)
        self._ffmpeg_path = ffmpeg_path
        self._read_size = max(output_format.bytes_for(read_ms), output_format.sample_width)
        self._proc: asyncio.subprocess.Process | None = None
        self._closing = False

    def _command(self) -> list[str]:
        src, dst = self.input_format, self.output_format
        return [
            self._ffmpeg_path,
            "-hide_banner",
            "-loglevel",
            "error",
            "-fflags",
            "nobuffer",
            "-f",
            _FFMPEG_FORMATS[src.encoding],
            "-ar",
            str(src.sample_rate),
            "-ac",
            str(src.channels),
            "-i",
            "pipe:0",
            "-f",
            _FFMPEG_FORMATS[dst.encoding],
            "-ar",
            str(dst.sample_rate),
            "-ac",
            str(dst.channels),
            "pipe:1",
        ]

    async def _feed(self, stdin: asyncio.StreamWriter, frames: AsyncIterator[bytes]) -> None:
        try:
            async for frame in frames:
                stdin.write(frame)
                await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            LOGGER.debug("ffmpeg stdin closed while writing")
            return
        with contextlib.suppress(BrokenPipeError, ConnectionResetError):
            stdin.close()

    async def convert(self, frames: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        if self._proc is not None:
            raise RuntimeError("FfmpegTranscoder.convert() can only run once")
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._command(),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise TranscoderFailure(f"could not start ffmpeg: {exc}") from exc

        self._proc = proc
        if proc.stdin is None or proc.stdout is None:
            await self._terminate()
            raise TranscoderFailure("ffmpeg started without stdio pipes")
        LOGGER.debug("Started ffmpeg pid=%s: %s", proc.pid, " ".join(self._command()))
        stdout = proc.stdout
        writer = asyncio.create_task(self._feed(proc.stdin, frames))
        try:
            while True:
                chunk = await stdout.read(self._read_size)
                if not chunk:
                    break
                yield chunk

            returncode = await proc.wait()
            if self._closing:
                return
            if not writer.done() or returncode != 0:
                stderr = b""
                if proc.stderr is not None:
                    stderr = await proc.stderr.read()
                raise TranscoderFailure(
                    f"ffmpeg exited with code {returncode}: {stderr.decode(errors='replace').strip()}"
                )
            if writer.exception() is not None:
                raise TranscoderFailure(str(writer.exception()))
        finally:
            if not writer.done():
                writer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await writer
            await self._terminate()

    async def _terminate(self) -> None:
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=1.0)
        except asyncio.TimeoutError:
            LOGGER.warning("ffmpeg pid=%s did not exit; killing", proc.pid)
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()

    async def aclose(self) -> None:
        self._closing = True
        await self._terminate()


def upstream_format(settings: Settings) -> AudioFormat:
    if settings.upstream_audio_format == "g711_ulaw":
        return TELEPHONY_FORMAT
    return AudioFormat("pcm16", settings.upstream_sample_rate)


def build_transcoders(settings: Settings) -> tuple[Transcoder, Transcoder]:
    """Return ``(inbound, outbound)`` transcoders for one call."""

    upstream = upstream_format(settings)
    if upstream == TELEPHONY_FORMAT:
        return PassthroughTranscoder(TELEPHONY_FORMAT), PassthroughTranscoder(TELEPHONY_FORMAT)
    if settings.transcoder_engine == "ffmpeg":
        return (
            FfmpegTranscoder(TELEPHONY_FORMAT, upstream, ffmpeg_path=settings.ffmpeg_path),
            FfmpegTranscoder(upstream, TELEPHONY_FORMAT, ffmpeg_path=settings.ffmpeg_path),
        )
    return G711Transcoder(TELEPHONY_FORMAT, upstream), G711Transcoder(upstream, TELEPHONY_FORMAT)
