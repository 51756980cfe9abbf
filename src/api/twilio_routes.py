"""Twilio Voice integration.

This module provides:
- Voice webhook (TwiML) that connects the call to a bidirectional media stream.
- Media Streams WebSocket endpoint, handed to the session manager per call.
"""

from __future__ import annotations

import logging
from xml.sax.saxutils import escape

from fastapi import APIRouter, Depends, Request, Response, WebSocket

from api.dependencies import get_session_manager
from bridge.session import SessionManager
from config.settings import get_settings

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/twilio", tags=["twilio"])


def _twiml_response(xml: str) -> Response:
    # Twilio expects application/xml
    return Response(content=xml, media_type="application/xml")


def _to_ws_url(http_url: str) -> str:
    if http_url.startswith("https://"):
        return "wss://" + http_url.removeprefix("https://")
    if http_url.startswith("http://"):
        return "ws://" + http_url.removeprefix("http://")
    return http_url


def _stream_url(request: Request) -> str:
    settings = get_settings()
    if settings.public_base_url:
        return _to_ws_url(f"{settings.public_base_url.rstrip('/')}/api/twilio/media")
    # Fallback to request host. This may not work behind proxies; prefer PUBLIC_BASE_URL.
    return f"wss://{request.headers.get('host', request.url.netloc)}/api/twilio/media"


def _twiml_connect_stream(*, stream_url: str) -> str:
    stream = escape(stream_url, {'"': "&quot;"})
    return (
        "<?xml version=\"1.0\" encoding=\"UTF-8\"?>"
        "<Response>"
        "<Connect>"
        f"<Stream url=\"{stream}\" />"
        "</Connect>"
        "</Response>"
    )


@router.post("/voice")
async def twilio_voice_webhook(request: Request) -> Response:
    form = await request.form()
    call_sid = str(form.get("CallSid") or "").strip() or "unknown"
    stream_url = _stream_url(request)
    LOGGER.info("Incoming call %s; streaming to %s", call_sid, stream_url)
    return _twiml_response(_twiml_connect_stream(stream_url=stream_url))


@router.websocket("/media")
async def twilio_media_stream(
    websocket: WebSocket,
    manager: SessionManager = Depends(get_session_manager),
) -> None:
    await websocket.accept()
    handle = manager.accept(websocket)
    await handle.wait_closed()
