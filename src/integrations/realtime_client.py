"""Client for the realtime speech service (upstream leg)."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import TYPE_CHECKING, Any, Protocol
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from bridge.errors import ProtocolParseError, UpstreamConnectError, UpstreamTransportError
from integrations.realtime_events import (
    RealtimeEvent,
    ResponseCompleted,
    input_audio_append,
    input_audio_commit,
    parse_realtime_message,
    response_cancel,
    response_create,
    session_update,
)

if TYPE_CHECKING:  # pragma: no cover
    from config.settings import Settings
    from telephony.transcoder import AudioFormat

LOGGER = logging.getLogger(__name__)


class RealtimeConnection(Protocol):
    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[str | bytes]: ...


Connector = Callable[..., Awaitable[RealtimeConnection]]


async def websocket_connector(url: str, *, headers: dict[str, str]) -> RealtimeConnection:
    return await websockets.connect(url, additional_headers=headers, max_size=None)


class RealtimeClient:
    """Owns one control/audio connection to the speech service.

    Outgoing operations are fire-and-forget: they return once the message is
    written, without waiting for an acknowledgement.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        connector: Connector | None = None,
        call_id: str = "-",
    ) -> None:
        self._settings = settings
        self._connector = connector or websocket_connector
        self._call_id = call_id
        self._ws: RealtimeConnection | None = None
        self._send_lock = asyncio.Lock()
        self._attempted = False
        self._configured = False
        self._closed = False
        self.response_active = False

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._closed

    def _url(self) -> str:
        base = self._settings.realtime_url
        separator = "&" if "?" in base else "?"
        return f"{base}{separator}{urlencode({'model': self._settings.realtime_model})}"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._settings.openai_api_key or ''}",
            "OpenAI-Beta": "realtime=v1",
        }

    async def connect(self) -> None:
        if self._attempted:
            raise UpstreamConnectError("Realtime connection already attempted for this call")
        self._attempted = True
        if not self._settings.openai_api_key:
            raise UpstreamConnectError("OPENAI_API_KEY is not configured")

        url = self._url()
        LOGGER.info("[%s] Connecting to realtime service: %s", self._call_id, url)
        try:
            self._ws = await asyncio.wait_for(
                self._connector(url, headers=self._headers()),
                timeout=self._settings.upstream_connect_timeout_s,
            )
        except asyncio.TimeoutError as exc:
            raise UpstreamConnectError("Timed out connecting to realtime service") from exc
        except (OSError, InvalidHandshake, InvalidURI) as exc:
            raise UpstreamConnectError(f"Realtime connection failed: {exc}") from exc

    def _turn_detection(self) -> dict[str, Any] | None:
        settings = self._settings
        if settings.turn_detection == "none":
            return None
        return {
            "type": "server_vad",
            "threshold": settings.vad_threshold,
            "prefix_padding_ms": settings.vad_prefix_padding_ms,
            "silence_duration_ms": settings.vad_silence_duration_ms,
        }

    async def configure(self, *, input_format: AudioFormat, output_format: AudioFormat) -> None:
        """Send the one-time ``session.update``."""

        if self._configured:
            return
        await self._send(
            session_update(
                input_audio_format=input_format.encoding,
                output_audio_format=output_format.encoding,
                instructions=self._settings.instructions,
                voice=self._settings.voice,
                turn_detection=self._turn_detection(),
            )
        )
        self._configured = True

    async def _send(self, operation: dict[str, Any]) -> None:
        ws = self._ws
        if ws is None or self._closed:
            raise UpstreamTransportError()
        async with self._send_lock:
            try:
                await ws.send(json.dumps(operation))
            except ConnectionClosed as exc:
                self._closed = True
                raise UpstreamTransportError(f"Realtime connection closed: {exc}") from exc

    async def append_audio(self, audio: bytes) -> None:
        if audio:
            await self._send(input_audio_append(audio))

    async def commit(self) -> None:
        await self._send(input_audio_commit())

    async def request_response(self, instructions: str | None = None) -> None:
        await self._send(response_create(instructions))
        self.response_active = True

    async def cancel_response(self) -> None:
        await self._send(response_cancel())
        self.response_active = False

    async def close(self) -> None:
        if self._ws is None or self._closed:
            self._closed = True
            return
        self._closed = True
        try:
            await self._ws.close()
        except (ConnectionClosed, OSError) as exc:
            LOGGER.debug("[%s] Realtime connection close failed: %s", self._call_id, exc)

    async def events(self) -> AsyncIterator[RealtimeEvent]:
        """Yield normalized events until the connection closes.

        Unparseable messages are dropped.
        """

        if self._ws is None:
            raise UpstreamTransportError()
        try:
            async for message in self._ws:
                try:
                    event = parse_realtime_message(message)
                except ProtocolParseError as exc:
                    LOGGER.debug("[%s] Dropping malformed realtime event: %s", self._call_id, exc)
                    continue
                if isinstance(event, ResponseCompleted):
                    self.response_active = False
                yield event
        except ConnectionClosed as exc:
            if not self._closed:
                LOGGER.warning("[%s] Realtime connection lost: %s", self._call_id, exc)
        finally:
            self._closed = True
