"""Realtime speech protocol: event normalization and outgoing operations.

Protocol revisions renamed several events and payload fields. Every known
spelling maps onto one canonical event type; anything unrecognized becomes
``IgnoredEvent``.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Any

from bridge.errors import ProtocolParseError

AUDIO_DELTA_EVENTS = frozenset(
    {
        "response.audio.delta",
        "response.output_audio.delta",
        "response.audio",
        "response.output_audio",
        "response.audio_chunk",
    }
)
RESPONSE_COMPLETED_EVENTS = frozenset(
    {
        "response.done",
        "response.completed",
    }
)
ERROR_EVENTS = frozenset({"error", "response.error"})

_AUDIO_PAYLOAD_FIELDS = ("delta", "audio", "data", "chunk", "payload")


@dataclass(frozen=True, slots=True)
class AudioDelta:
    audio: bytes
    response_id: str | None = None


@dataclass(frozen=True, slots=True)
class ResponseCompleted:
    response_id: str | None = None
    event_type: str = "response.done"


@dataclass(frozen=True, slots=True)
class UpstreamErrorEvent:
    detail: str
    code: str | None = None


@dataclass(frozen=True, slots=True)
class IgnoredEvent:
    event_type: str
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


RealtimeEvent = AudioDelta | ResponseCompleted | UpstreamErrorEvent | IgnoredEvent


def _audio_payload(event: dict[str, Any]) -> str | None:
    for key in _AUDIO_PAYLOAD_FIELDS:
        value = event.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _response_id(event: dict[str, Any]) -> str | None:
    response = event.get("response")
    if isinstance(response, dict) and response.get("id"):
        return str(response["id"])
    value = event.get("response_id")
    return str(value) if value else None


def _error_detail(event: dict[str, Any]) -> tuple[str, str | None]:
    error = event.get("error")
    if isinstance(error, dict):
        message = error.get("message") or error.get("type") or json.dumps(error)
        return str(message), error.get("code")
    if error:
        return str(error), None
    return json.dumps(event), None


def normalize_event(event: dict[str, Any]) -> RealtimeEvent:
    event_type = str(event.get("type") or "")

    if event_type in AUDIO_DELTA_EVENTS:
        payload = _audio_payload(event)
        if payload is None:
            return IgnoredEvent(event_type, event)
        try:
            audio = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ProtocolParseError(f"{event_type} carries invalid base64") from exc
        return AudioDelta(audio=audio, response_id=_response_id(event))

    if event_type in RESPONSE_COMPLETED_EVENTS:
        return ResponseCompleted(response_id=_response_id(event), event_type=event_type)

    if event_type in ERROR_EVENTS:
        detail, code = _error_detail(event)
        return UpstreamErrorEvent(detail=detail, code=code)

    return IgnoredEvent(event_type, event)


def parse_realtime_message(text: str | bytes) -> RealtimeEvent:
    """Parse and normalize one upstream message.

    Raises:
        ProtocolParseError: if the message is not a JSON object.
    """

    try:
        event = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ProtocolParseError(f"invalid JSON: {exc}") from exc
    if not isinstance(event, dict):
        raise ProtocolParseError("event must be a JSON object")
    return normalize_event(event)


# Outgoing operations.


def session_update(
    *,
    input_audio_format: str,
    output_audio_format: str,
    instructions: str,
    voice: str,
    turn_detection: dict[str, Any] | None,
) -> dict[str, Any]:
    return {
        "type": "session.update",
        "session": {
            "modalities": ["audio", "text"],
            "input_audio_format": input_audio_format,
            "output_audio_format": output_audio_format,
            "instructions": instructions,
            "voice": voice,
            "turn_detection": turn_detection,
        },
    }


def input_audio_append(audio: bytes) -> dict[str, Any]:
    return {"type": "input_audio_buffer.append", "audio": base64.b64encode(audio).decode("ascii")}


def input_audio_commit() -> dict[str, Any]:
    return {"type": "input_audio_buffer.commit"}


def response_create(instructions: str | None = None) -> dict[str, Any]:
    response: dict[str, Any] = {"modalities": ["audio", "text"]}
    if instructions:
        response["instructions"] = instructions
    return {"type": "response.create", "response": response}


def response_cancel() -> dict[str, Any]:
    return {"type": "response.cancel"}
