"""Per-call session lifecycle.

A ``CallSession`` wires one media-stream connection to one realtime
connection and runs a small group of asyncio tasks:

- downstream reader (Twilio envelopes -> inbound path / stream sid)
- upstream connect + reader (realtime events -> outbound path)
- inbound transcoder pump, append timer and commit timer
- outbound transcoder pump

Any leg ending or failing moves the session to STOPPING; teardown then runs
exactly once and the session ends TERMINATED.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections.abc import Callable, Coroutine
from enum import Enum
from typing import TYPE_CHECKING, Any

from bridge.errors import (
    CLOSE_INTERNAL_ERROR,
    CLOSE_NORMAL,
    BridgeError,
    TranscoderFailure,
    UpstreamConnectError,
    UpstreamProtocolError,
    UpstreamTransportError,
)
from bridge.inbound import InboundPath
from bridge.outbound import OutboundPath
from integrations.realtime_client import Connector, RealtimeClient
from integrations.realtime_events import AudioDelta, ResponseCompleted, UpstreamErrorEvent
from integrations.twilio_streaming import (
    MediaConnection,
    MediaMessage,
    StartMessage,
    StopMessage,
    TwilioMediaStream,
)
from telephony.transcoder import Transcoder, build_transcoders

if TYPE_CHECKING:  # pragma: no cover
    from config.settings import Settings

LOGGER = logging.getLogger(__name__)

TranscoderFactory = Callable[["Settings"], tuple[Transcoder, Transcoder]]


class SessionState(str, Enum):
    NEW = "new"
    UPSTREAM_CONNECTING = "upstream_connecting"
    ACTIVE = "active"
    STOPPING = "stopping"
    TERMINATED = "terminated"


class CallSession:
    def __init__(
        self,
        settings: Settings,
        connection: MediaConnection,
        *,
        transcoders: tuple[Transcoder, Transcoder],
        connector: Connector | None = None,
        call_id: str | None = None,
    ) -> None:
        self.call_id = call_id or uuid.uuid4().hex[:12]
        self.connection = connection
        self.state = SessionState.NEW
        self.stop_reason: str | None = None
        self._settings = settings
        self._close_code = CLOSE_NORMAL
        self._upstream_errors = 0

        self._inbound_transcoder, self._outbound_transcoder = transcoders
        self.downstream = TwilioMediaStream(connection, call_id=self.call_id)
        self.upstream = RealtimeClient(settings, connector=connector, call_id=self.call_id)
        self.inbound = InboundPath(settings, self._inbound_transcoder, self.upstream, call_id=self.call_id)
        self.outbound = OutboundPath(settings, self._outbound_transcoder, self.downstream, call_id=self.call_id)

        self._tasks: dict[str, asyncio.Task] = {}
        self._stop_requested = asyncio.Event()
        self._terminated = asyncio.Event()
        self._cleanup_started = False

    @property
    def stream_sid(self) -> str | None:
        return self.outbound.stream_sid

    def stop(self, reason: str, *, close_code: int = CLOSE_NORMAL) -> None:
        """Request teardown. Only the first call has any effect.

        ``close_code`` is sent to the media stream when it is closed.
        """

        if self.state in (SessionState.STOPPING, SessionState.TERMINATED):
            LOGGER.debug("[%s] Ignoring stop (%s); already %s", self.call_id, reason, self.state.value)
            return
        LOGGER.info("[%s] Stopping call: %s", self.call_id, reason)
        self.stop_reason = reason
        self._close_code = close_code
        self.state = SessionState.STOPPING
        self._stop_requested.set()

    async def wait_terminated(self) -> None:
        await self._terminated.wait()

    # Task supervision.

    def _spawn(self, name: str, coro: Coroutine[Any, Any, None]) -> None:
        self._tasks[name] = asyncio.create_task(self._guard(name, coro), name=f"call-{self.call_id}-{name}")

    async def _guard(self, name: str, coro: Coroutine[Any, Any, None]) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except TranscoderFailure as exc:
            LOGGER.error("[%s] Transcoder failed in %s: %s", self.call_id, name, exc.detail)
            self.stop("transcoder_failure", close_code=exc.close_code)
        except BridgeError as exc:
            LOGGER.warning("[%s] %s ended: %s", self.call_id, name, exc.detail)
            self.stop(f"{name}_error", close_code=exc.close_code)
        except Exception:
            LOGGER.exception("[%s] %s task crashed", self.call_id, name)
            self.stop(f"{name}_crashed", close_code=CLOSE_INTERNAL_ERROR)

    async def _cancel(self, name: str) -> None:
        task = self._tasks.get(name)
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _drain(self, name: str, timeout: float) -> None:
        task = self._tasks.get(name)
        if task is None or task.done():
            return
        _, pending = await asyncio.wait({task}, timeout=timeout)
        if pending:
            LOGGER.warning("[%s] %s did not drain within %.1fs", self.call_id, name, timeout)
            await self._cancel(name)

    # Legs.

    async def _read_downstream(self) -> None:
        async for message in self.downstream.messages():
            if isinstance(message, MediaMessage):
                if message.track and message.track != "inbound":
                    continue
                await self.inbound.push_frame(message.payload)
            elif isinstance(message, StartMessage):
                LOGGER.info("[%s] Media stream started: streamSid=%s", self.call_id, message.stream_sid)
                await self.outbound.set_stream_sid(message.stream_sid)
            elif isinstance(message, StopMessage):
                self.stop("downstream_stop")
                return
            else:
                LOGGER.debug("[%s] Media stream event: %s", self.call_id, message)
        self.stop("downstream_closed")

    async def _run_upstream(self) -> None:
        try:
            await self.upstream.connect()
        except UpstreamConnectError as exc:
            LOGGER.error("[%s] %s", self.call_id, exc.detail)
            self.stop("upstream_connect_failed", close_code=exc.close_code)
            return

        await self.upstream.configure(
            input_format=self._inbound_transcoder.output_format,
            output_format=self._outbound_transcoder.input_format,
        )
        if self._settings.greeting_enabled:
            await self.upstream.request_response(self._settings.greeting_instructions)
        await self.inbound.mark_upstream_ready()
        if self.state is SessionState.UPSTREAM_CONNECTING:
            self.state = SessionState.ACTIVE
            LOGGER.info("[%s] Call active", self.call_id)

        async for event in self.upstream.events():
            if isinstance(event, AudioDelta):
                self._upstream_errors = 0
                await self.outbound.handle_delta(event)
            elif isinstance(event, ResponseCompleted):
                self._upstream_errors = 0
                await self.outbound.handle_response_completed()
            elif isinstance(event, UpstreamErrorEvent):
                self._on_upstream_error(event)

        self.inbound.mark_upstream_lost()
        self.stop("upstream_closed", close_code=CLOSE_INTERNAL_ERROR)

    def _on_upstream_error(self, event: UpstreamErrorEvent) -> None:
        self._upstream_errors += 1
        LOGGER.warning(
            "[%s] Realtime service error #%s (%s): %s",
            self.call_id,
            self._upstream_errors,
            event.code,
            event.detail,
        )
        threshold = self._settings.upstream_error_threshold
        if threshold and self._upstream_errors >= threshold:
            error = UpstreamProtocolError(f"{self._upstream_errors} errors in a row, last: {event.detail}")
            LOGGER.error("[%s] %s", self.call_id, error.detail)
            self.stop("upstream_errors", close_code=error.close_code)

    # Lifecycle.

    async def run(self) -> None:
        if self.state is SessionState.NEW:
            # Upstream connect starts right away, not gated on the "start" event.
            self.state = SessionState.UPSTREAM_CONNECTING
            self._spawn("upstream", self._run_upstream())
            self._spawn("downstream", self._read_downstream())
            self._spawn("inbound", self.inbound.run())
            self._spawn("append_timer", self.inbound.run_append_timer())
            self._spawn("commit_timer", self.inbound.run_commit_timer())
            self._spawn("outbound", self.outbound.run())
        try:
            await self._stop_requested.wait()
        finally:
            await asyncio.shield(self.cleanup())

    async def _finish_upstream(self) -> None:
        if not self.upstream.connected:
            return
        if self.upstream.response_active:
            try:
                await self.upstream.cancel_response()
            except UpstreamTransportError as exc:
                LOGGER.debug("[%s] response.cancel failed: %s", self.call_id, exc)
        await self.inbound.final_flush(self._settings.stop_flush_policy)

    async def cleanup(self) -> None:
        """Tear down both legs. Safe to call repeatedly and concurrently."""

        if self._cleanup_started:
            await self._terminated.wait()
            return
        self._cleanup_started = True
        if self.state is not SessionState.STOPPING:
            self.stop(self.stop_reason or "cleanup")
        timeout = self._settings.shutdown_timeout_s

        # Stop feeding the transcoders, then let the inbound one drain.
        await self._cancel("downstream")
        self.inbound.finish()
        self.outbound.finish()
        await self._drain("inbound", timeout)
        await self._cancel("append_timer")
        await self._cancel("commit_timer")

        try:
            await asyncio.wait_for(self._finish_upstream(), timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("[%s] Final upstream flush timed out", self.call_id)
        await self._cancel("upstream")
        await self.upstream.close()

        await self._cancel("outbound")
        await self.downstream.close(self._close_code)

        for transcoder in (self._inbound_transcoder, self._outbound_transcoder):
            try:
                await transcoder.aclose()
            except OSError as exc:
                LOGGER.warning("[%s] Transcoder close failed: %s", self.call_id, exc)

        for name in list(self._tasks):
            await self._cancel(name)
        self.state = SessionState.TERMINATED
        LOGGER.info("[%s] Call terminated (%s)", self.call_id, self.stop_reason)
        self._terminated.set()


class SessionHandle:
    """Read-only view of a running call."""

    def __init__(self, session: CallSession) -> None:
        self._session = session

    @property
    def call_id(self) -> str:
        return self._session.call_id

    @property
    def state(self) -> SessionState:
        return self._session.state

    @property
    def stream_sid(self) -> str | None:
        return self._session.stream_sid

    @property
    def stop_reason(self) -> str | None:
        return self._session.stop_reason

    async def wait_closed(self) -> None:
        await self._session.wait_terminated()


class SessionManager:
    """Creates and tracks call sessions.

    ``settings`` is built once at startup and shared by reference; nothing
    below the manager reads global configuration.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transcoder_factory: TranscoderFactory = build_transcoders,
        upstream_connector: Connector | None = None,
    ) -> None:
        self._settings = settings
        self._transcoder_factory = transcoder_factory
        self._connector = upstream_connector
        # Keyed by id(): Starlette WebSocket objects are not hashable.
        self._sessions: dict[int, CallSession] = {}
        self._runners: set[asyncio.Task] = set()

    @property
    def active_sessions(self) -> list[SessionHandle]:
        return [SessionHandle(session) for session in self._sessions.values()]

    def accept(self, connection: MediaConnection) -> SessionHandle:
        key = id(connection)
        existing = self._sessions.get(key)
        if existing is not None:
            return SessionHandle(existing)

        session = CallSession(
            self._settings,
            connection,
            transcoders=self._transcoder_factory(self._settings),
            connector=self._connector,
        )
        self._sessions[key] = session
        LOGGER.info("[%s] Media stream accepted (%s active)", session.call_id, len(self._sessions))

        runner = asyncio.create_task(session.run(), name=f"call-{session.call_id}")
        self._runners.add(runner)

        def _done(task: asyncio.Task) -> None:
            self._runners.discard(task)
            if self._sessions.get(key) is session:
                del self._sessions[key]

        runner.add_done_callback(_done)
        return SessionHandle(session)

    async def shutdown(self) -> None:
        sessions = list(self._sessions.values())
        for session in sessions:
            session.stop("server_shutdown")
        if sessions:
            await asyncio.gather(*(session.wait_terminated() for session in sessions))
