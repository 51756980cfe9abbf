from __future__ import annotations

import asyncio
import contextlib

import pytest

from bridge.errors import UpstreamTransportError
from bridge.inbound import InboundPath
from fakes import FakeUpstream, make_settings
from telephony.transcoder import TELEPHONY_FORMAT, PassthroughTranscoder

# Passthrough mu-law: 8 bytes per millisecond.
FRAME_20MS = 160


def _frame(value: int) -> bytes:
    return bytes([value]) * FRAME_20MS


@contextlib.asynccontextmanager
async def running(path: InboundPath, *, timers: bool = False):
    pump = asyncio.create_task(path.run())
    timer = asyncio.create_task(path.run_append_timer()) if timers else None
    try:
        yield
    finally:
        if timer is not None:
            timer.cancel()
            await asyncio.gather(timer, return_exceptions=True)
        path.finish()
        await asyncio.wait_for(pump, timeout=1)


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


def _path(upstream: FakeUpstream, **overrides) -> InboundPath:
    return InboundPath(make_settings(**overrides), PassthroughTranscoder(TELEPHONY_FORMAT), upstream)


@pytest.mark.asyncio
async def test_pending_queue_drains_in_order_before_live_audio():
    upstream = FakeUpstream()
    path = _path(upstream)

    async with running(path):
        await path.push_frame(_frame(1))
        await path.push_frame(_frame(2))
        await _settle()
        await path.flush()
        await path.push_frame(_frame(3))
        await _settle()
        await path.flush()
        assert upstream.ops == []
        assert path.pending_chunks == 2

        await path.mark_upstream_ready()
        await path.push_frame(_frame(4))
        await _settle()
        await path.flush()

    assert upstream.ops == [
        ("append", _frame(1) + _frame(2)),
        ("append", _frame(3)),
        ("append", _frame(4)),
    ]
    assert path.pending_chunks == 0
    assert path.window_ms == pytest.approx(80)


@pytest.mark.asyncio
async def test_commit_waits_for_minimum_window():
    upstream = FakeUpstream()
    path = _path(upstream)
    await path.mark_upstream_ready()

    async with running(path):
        for value in range(5):
            await path.push_frame(_frame(value))
        await _settle()
        await path.flush()
        assert path.window_ms == pytest.approx(100)
        assert await path.maybe_commit() is False

        await path.push_frame(_frame(9))
        await _settle()
        await path.flush()
        assert await path.maybe_commit() is True

    assert upstream.kinds == ["append", "append", "commit", "response"]
    assert path.window_ms == 0
    assert path.commits == 1


@pytest.mark.asyncio
async def test_no_commit_while_upstream_not_ready():
    upstream = FakeUpstream()
    path = _path(upstream)
    path.window_ms = 500.0

    assert await path.maybe_commit() is False
    assert upstream.ops == []


@pytest.mark.asyncio
async def test_failed_commit_keeps_window():
    upstream = FakeUpstream()
    path = _path(upstream)
    await path.mark_upstream_ready()
    path.window_ms = 200.0
    upstream.error = UpstreamTransportError()

    with pytest.raises(UpstreamTransportError):
        await path.maybe_commit()
    assert path.window_ms == 200.0


@pytest.mark.asyncio
async def test_upstream_loss_discards_pending_and_window():
    upstream = FakeUpstream()
    path = _path(upstream)

    async with running(path):
        await path.push_frame(_frame(1))
        await _settle()
        await path.flush()
    path.window_ms = 60.0

    path.mark_upstream_lost()

    assert path.pending_chunks == 0
    assert path.window_ms == 0
    assert not path.ready


@pytest.mark.asyncio
async def test_append_cadence_batches_a_burst_into_one_append():
    upstream = FakeUpstream()
    path = _path(upstream, append_interval_ms=200)
    await path.mark_upstream_ready()

    async with running(path, timers=True):
        for value in range(10):
            await path.push_frame(_frame(value))
            await asyncio.sleep(0.015)
        await asyncio.sleep(0.3)

    assert upstream.kinds == ["append"]
    assert upstream.ops[0][1] == b"".join(_frame(value) for value in range(10))


@pytest.mark.asyncio
async def test_commit_timer_commits_once_window_is_full():
    upstream = FakeUpstream()
    path = _path(upstream, commit_interval_ms=20)
    await path.mark_upstream_ready()
    timer = asyncio.create_task(path.run_commit_timer())
    try:
        path.window_ms = 100.0
        await asyncio.sleep(0.07)
        assert upstream.ops == []

        path.window_ms = 140.0
        await asyncio.sleep(0.07)
    finally:
        timer.cancel()
        await asyncio.gather(timer, return_exceptions=True)

    assert upstream.kinds == ["commit", "response"]


@pytest.mark.asyncio
async def test_commit_during_active_response_does_not_request_another():
    upstream = FakeUpstream()
    path = _path(upstream)
    await path.mark_upstream_ready()

    for _ in range(3):
        path.window_ms = 200.0
        assert await path.maybe_commit() is True

    assert upstream.kinds == ["commit", "response", "commit", "commit"]
    assert path.window_ms == 0.0

    upstream.response_active = False
    path.window_ms = 200.0
    await path.maybe_commit()
    assert upstream.kinds[-2:] == ["commit", "response"]


@pytest.mark.asyncio
async def test_final_flush_commits_partial_window_when_policy_allows():
    upstream = FakeUpstream()
    path = _path(upstream)
    await path.mark_upstream_ready()

    async with running(path):
        for value in range(5):
            await path.push_frame(_frame(value))
    # The pump has drained by the time ``running`` exits.
    assert await path.final_flush("commit") is True

    assert upstream.kinds == ["append", "commit", "response"]
    assert len(upstream.ops[0][1]) == 5 * FRAME_20MS


@pytest.mark.asyncio
async def test_final_flush_discard_policy_never_commits():
    upstream = FakeUpstream()
    path = _path(upstream)
    await path.mark_upstream_ready()
    path.window_ms = 80.0

    assert await path.final_flush("discard") is False
    assert upstream.ops == []


@pytest.mark.asyncio
async def test_final_flush_swallows_transport_errors():
    upstream = FakeUpstream(error=UpstreamTransportError())
    path = _path(upstream)
    await path.mark_upstream_ready()
    path.window_ms = 150.0

    assert await path.final_flush("commit") is False
