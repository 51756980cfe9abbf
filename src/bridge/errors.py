"""Bridge exceptions.

Transport-level errors end the call; protocol-level ones are absorbed by the
component that sees them.
"""

from __future__ import annotations

# WebSocket close codes used on the downstream leg.
CLOSE_NORMAL = 1000
CLOSE_INTERNAL_ERROR = 1011


class BridgeError(Exception):
    close_code: int = CLOSE_INTERNAL_ERROR
    default_detail: str = "Bridge error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class ProtocolParseError(BridgeError):
    default_detail = "Malformed protocol message."


class UpstreamConnectError(BridgeError):
    default_detail = "Could not connect to the realtime speech service."


class UpstreamTransportError(BridgeError):
    default_detail = "Realtime speech connection is not open."


class UpstreamProtocolError(BridgeError):
    default_detail = "Realtime speech service reported an error."


class TranscoderFailure(BridgeError):
    default_detail = "Audio transcoder terminated unexpectedly."


class DownstreamTransportError(BridgeError):
    default_detail = "Media stream connection is closed."
