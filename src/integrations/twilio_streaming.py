"""Twilio Media Streams protocol (downstream leg).

Inbound envelopes are parsed into one tagged message type per event kind.
Outbound frames are plain JSON strings built by ``build_media_message`` and
``build_mark_message``.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Protocol

from fastapi import WebSocketDisconnect

from bridge.errors import CLOSE_NORMAL, DownstreamTransportError, ProtocolParseError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ConnectedMessage:
    protocol: str | None = None


@dataclass(frozen=True, slots=True)
class StartMessage:
    stream_sid: str
    call_sid: str | None = None


@dataclass(frozen=True, slots=True)
class MediaMessage:
    payload: bytes
    track: str | None = None


@dataclass(frozen=True, slots=True)
class MarkMessage:
    name: str | None = None


@dataclass(frozen=True, slots=True)
class StopMessage:
    pass


@dataclass(frozen=True, slots=True)
class IgnoredMessage:
    event: str


TwilioMessage = ConnectedMessage | StartMessage | MediaMessage | MarkMessage | StopMessage | IgnoredMessage


def _section(message: dict[str, Any], key: str) -> dict[str, Any]:
    value = message.get(key) or {}
    if not isinstance(value, dict):
        raise ProtocolParseError(f"'{key}' must be an object")
    return value


def parse_twilio_message(text: str | bytes) -> TwilioMessage:
    """Parse one Media Streams envelope.

    Raises:
        ProtocolParseError: if the envelope is not valid JSON or misses a
            required field for its event kind.
    """

    try:
        message = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ProtocolParseError(f"invalid JSON: {exc}") from exc
    if not isinstance(message, dict):
        raise ProtocolParseError("envelope must be a JSON object")

    event = str(message.get("event") or "")
    if event == "media":
        media = _section(message, "media")
        payload = media.get("payload")
        if not isinstance(payload, str):
            raise ProtocolParseError("media.payload missing")
        try:
            raw = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ProtocolParseError("media.payload is not valid base64") from exc
        return MediaMessage(payload=raw, track=media.get("track"))
    if event == "start":
        start = _section(message, "start")
        stream_sid = start.get("streamSid") or message.get("streamSid")
        if not isinstance(stream_sid, str) or not stream_sid:
            raise ProtocolParseError("start.streamSid missing")
        return StartMessage(stream_sid=stream_sid, call_sid=start.get("callSid"))
    if event == "mark":
        return MarkMessage(name=_section(message, "mark").get("name"))
    if event == "stop":
        return StopMessage()
    if event == "connected":
        return ConnectedMessage(protocol=message.get("protocol"))
    return IgnoredMessage(event=event)


def build_media_message(stream_sid: str, audio: bytes) -> str:
    return json.dumps(
        {
            "event": "media",
            "streamSid": stream_sid,
            "media": {"payload": base64.b64encode(audio).decode("ascii")},
        }
    )


def build_mark_message(stream_sid: str, name: str) -> str:
    return json.dumps({"event": "mark", "streamSid": stream_sid, "mark": {"name": name}})


class MediaConnection(Protocol):
    """The subset of a Starlette ``WebSocket`` the bridge relies on."""

    async def receive_text(self) -> str: ...

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000, reason: str | None = None) -> None: ...


class TwilioMediaStream:
    """Owns the telephony media-stream connection for one call."""

    def __init__(self, connection: MediaConnection, *, call_id: str = "-") -> None:
        self._connection = connection
        self._call_id = call_id
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def messages(self) -> AsyncIterator[TwilioMessage]:
        """Yield parsed messages until the peer disconnects.

        Malformed envelopes are dropped; the connection stays open.
        """

        while not self._closed:
            try:
                text = await self._connection.receive_text()
            except WebSocketDisconnect as exc:
                LOGGER.info("[%s] Media stream disconnected (code=%s)", self._call_id, exc.code)
                self._closed = True
                return
            except RuntimeError as exc:
                LOGGER.info("[%s] Media stream no longer readable: %s", self._call_id, exc)
                self._closed = True
                return
            try:
                message = parse_twilio_message(text)
            except ProtocolParseError as exc:
                LOGGER.debug("[%s] Dropping malformed media envelope: %s", self._call_id, exc)
                continue
            yield message

    async def _send(self, text: str) -> None:
        if self._closed:
            raise DownstreamTransportError()
        try:
            await self._connection.send_text(text)
        except (RuntimeError, WebSocketDisconnect) as exc:
            self._closed = True
            raise DownstreamTransportError(str(exc) or None) from exc

    async def send_media(self, stream_sid: str, audio: bytes) -> None:
        await self._send(build_media_message(stream_sid, audio))

    async def send_mark(self, stream_sid: str, name: str) -> None:
        await self._send(build_mark_message(stream_sid, name))

    async def close(self, code: int = CLOSE_NORMAL) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._connection.close(code=code)
        except (RuntimeError, WebSocketDisconnect) as exc:
            # Starlette raises RuntimeError once the socket is already gone.
            LOGGER.debug("[%s] Media stream already closed: %s", self._call_id, exc)
