"""In-memory stand-ins for both legs of a call."""

from __future__ import annotations

import asyncio
import base64
import json
from typing import Any

from fastapi import WebSocketDisconnect

from config.settings import Settings

_DISCONNECT = object()


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "openai_api_key": "sk-test",
        "greeting_enabled": False,
        "shutdown_timeout_s": 1.0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


async def wait_until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def start_event(stream_sid: str = "CA123") -> dict:
    return {"event": "start", "start": {"streamSid": stream_sid, "callSid": "CA-call"}}


def media_event(payload: bytes, track: str | None = None) -> dict:
    media = {"payload": base64.b64encode(payload).decode("ascii")}
    if track:
        media["track"] = track
    return {"event": "media", "media": media}


def stop_event() -> dict:
    return {"event": "stop"}


class FakeMediaConnection:
    """Mimics the Starlette WebSocket used for the Twilio media stream."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.close_codes: list[int] = []
        self._incoming: asyncio.Queue = asyncio.Queue()

    def push(self, message: dict | str) -> None:
        self._incoming.put_nowait(message if isinstance(message, str) else json.dumps(message))

    def disconnect(self) -> None:
        self._incoming.put_nowait(_DISCONNECT)

    async def receive_text(self) -> str:
        item = await self._incoming.get()
        if item is _DISCONNECT:
            raise WebSocketDisconnect(code=1000)
        return item

    async def send_text(self, data: str) -> None:
        if self.close_codes:
            raise RuntimeError("Cannot call send once a close message has been sent.")
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        if self.close_codes:
            raise RuntimeError("Cannot call close once a close message has been sent.")
        self.close_codes.append(code)

    @property
    def media(self) -> list[dict]:
        return [m for m in self.sent if m["event"] == "media"]

    @property
    def media_bytes(self) -> bytes:
        return b"".join(base64.b64decode(m["media"]["payload"]) for m in self.media)


class FakeRealtimeSocket:
    """Mimics a websockets client connection to the realtime service."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    def push(self, event: dict | str) -> None:
        self._incoming.put_nowait(event if isinstance(event, str) else json.dumps(event))

    def end(self) -> None:
        self._incoming.put_nowait(None)

    async def send(self, message: str) -> None:
        self.sent.append(json.loads(message))

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(None)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            item = await self._incoming.get()
            if item is None:
                return
            yield item

    @property
    def types(self) -> list[str]:
        return [op["type"] for op in self.sent]

    def appended(self) -> bytes:
        return b"".join(
            base64.b64decode(op["audio"]) for op in self.sent if op["type"] == "input_audio_buffer.append"
        )


class FakeConnector:
    def __init__(self, socket: FakeRealtimeSocket | None = None, error: Exception | None = None) -> None:
        self.socket = socket or FakeRealtimeSocket()
        self.error = error
        self.calls: list[tuple[str, dict[str, str]]] = []

    async def __call__(self, url: str, *, headers: dict[str, str]) -> FakeRealtimeSocket:
        self.calls.append((url, headers))
        if self.error is not None:
            raise self.error
        return self.socket


class FakeUpstream:
    """Records the operations the inbound path issues."""

    def __init__(self, error: Exception | None = None) -> None:
        self.ops: list[tuple[str, bytes | None]] = []
        self.error = error
        self.response_active = False

    async def append_audio(self, audio: bytes) -> None:
        if self.error:
            raise self.error
        self.ops.append(("append", audio))

    async def commit(self) -> None:
        if self.error:
            raise self.error
        self.ops.append(("commit", None))

    async def request_response(self, instructions: str | None = None) -> None:
        if self.error:
            raise self.error
        self.ops.append(("response", None))
        self.response_active = True

    @property
    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.ops]


class FakeDownstream:
    """Records what the outbound path relays to the media stream."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, bytes | str]] = []

    async def send_media(self, stream_sid: str, audio: bytes) -> None:
        self.sent.append(("media", stream_sid, audio))

    async def send_mark(self, stream_sid: str, name: str) -> None:
        self.sent.append(("mark", stream_sid, name))
