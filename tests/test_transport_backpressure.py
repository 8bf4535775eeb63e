from __future__ import annotations

import asyncio
import base64
import json
from typing import Any, AsyncIterator

from linkvoice.clock import FakeClock
from linkvoice.metrics import VOICE, Metrics
from linkvoice.transport import (
    InboundAudio,
    MarkAck,
    TransportClosed,
    TransportConfig,
    TransportEvent,
    TransportStarted,
    TransportStopped,
)
from linkvoice.transport_http import HttpChunkTransport
from linkvoice.transport_telephony import TelephonyTransport

from tests.harness.voice_harness import InMemorySocket


START = {"event": "start", "streamSid": "MZ1", "start": {"streamSid": "MZ1", "callSid": "CA1"}}


async def _settle(rounds: int = 40) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


async def _next(it: AsyncIterator[TransportEvent]) -> TransportEvent:
    return await asyncio.wait_for(it.__anext__(), timeout=1.0)


async def _open(cfg: TransportConfig | None = None) -> tuple[InMemorySocket, TelephonyTransport, FakeClock, Metrics]:
    socket = InMemorySocket()
    clock = FakeClock()
    metrics = Metrics()
    t = TelephonyTransport(socket, clock=clock, metrics=metrics)
    await t.open(cfg or TransportConfig(session_id="s1"))
    return socket, t, clock, metrics


async def _push(socket: InMemorySocket, obj: Any) -> None:
    await socket.push_inbound(json.dumps(obj))


def test_inbound_frames_become_events() -> None:
    async def _run() -> None:
        socket, t, _, metrics = await _open()
        events = t.events().__aiter__()
        await _push(socket, START)
        await _push(socket, {"event": "media", "media": {"payload": base64.b64encode(b"\xff" * 4).decode(), "timestamp": "20"}})
        await _push(socket, {"event": "media", "media": {"payload": "AAAA", "timestamp": "40", "track": "outbound"}})
        await _push(socket, {"event": "media", "media": {"payload": "not base64!", "timestamp": "60"}})
        await _push(socket, {"event": "what"})
        await _push(socket, {"event": "mark", "mark": {"name": "responsePart"}})
        await _push(socket, {"event": "stop", "streamSid": "MZ1"})

        started = await _next(events)
        assert isinstance(started, TransportStarted) and started.call_id == "CA1"
        audio = await _next(events)
        assert isinstance(audio, InboundAudio)
        assert audio.frame.timestamp_ms == 20 and audio.frame.payload == b"\xff" * 4
        assert isinstance(await _next(events), MarkAck)
        assert isinstance(await _next(events), TransportStopped)
        assert metrics.get(VOICE["inbound_bad_schema_total"]) == 2
        assert t.stream_sid == "MZ1"
        await t.close()

    asyncio.run(_run())


def test_bad_json_and_oversized_frames_end_the_stream() -> None:
    async def _run() -> None:
        socket, t, _, _ = await _open()
        events = t.events().__aiter__()
        await socket.push_inbound("{not json")
        ev = await _next(events)
        assert isinstance(ev, TransportClosed) and ev.reason == "BAD_JSON"
        await t.close()

        socket, t, _, _ = await _open(TransportConfig(session_id="s1", max_frame_bytes=64))
        events = t.events().__aiter__()
        await _push(socket, {"event": "media", "media": {"payload": "A" * 200}})
        ev = await _next(events)
        assert isinstance(ev, TransportClosed) and ev.reason == "FRAME_TOO_LARGE"
        await t.close()

    asyncio.run(_run())


def test_clear_preempts_queued_speech() -> None:
    async def _run() -> None:
        socket, t, _, metrics = await _open()
        # The writer holds output until the stream has started.
        await t.send_audio(b"\x01" * 160)
        await t.send_audio(b"\x02" * 160)
        await t.send_mark("responsePart")
        await t.clear()
        await t.send_audio(b"\x03" * 160)
        await _push(socket, START)
        await _settle()

        out = socket.drain_outbound()
        assert [o["event"] for o in out] == ["clear", "media"]
        assert base64.b64decode(out[1]["media"]["payload"]) == b"\x03" * 160
        assert all(o["streamSid"] == "MZ1" for o in out)
        assert metrics.get(VOICE["stale_audio_dropped_total"]) == 3
        await t.close()

    asyncio.run(_run())


def test_control_events_are_not_written_to_carrier() -> None:
    async def _run() -> None:
        socket, t, _, _ = await _open()
        await _push(socket, START)
        await t.send_control({"type": "session.state", "state": "listening"})
        await t.send_mark("responsePart")
        await _settle()
        assert socket.drain_outbound() == [{"event": "mark", "mark": {"name": "responsePart"}, "streamSid": "MZ1"}]
        await t.close()

    asyncio.run(_run())


def test_write_timeouts_close_the_socket() -> None:
    async def _run() -> None:
        cfg = TransportConfig(session_id="s1", write_timeout_ms=400, max_consecutive_write_timeouts=2)
        socket, t, clock, metrics = await _open(cfg)
        events = t.events().__aiter__()
        await _push(socket, START)
        assert isinstance(await _next(events), TransportStarted)

        socket.send_allowed.clear()
        await t.send_audio(b"\x01" * 160)
        await t.send_audio(b"\x02" * 160)
        for _ in range(40):
            if socket.close_code is not None:
                break
            await _settle(5)
            await clock.advance(100)

        ev = await _next(events)
        assert isinstance(ev, TransportClosed) and ev.reason == "WRITE_TIMEOUT_BACKPRESSURE"
        assert socket.close_code == 1011
        assert metrics.get(VOICE["ws_write_timeout_total"]) == 2
        await t.close()

    asyncio.run(_run())


def test_http_transport_chunks_and_acks_marks_on_handoff() -> None:
    async def _run() -> None:
        metrics = Metrics()
        t = HttpChunkTransport(metrics=metrics, audio_format="pcm16", sample_rate_hz=8000, frame_ms=20)
        await t.open(TransportConfig(session_id="h1"))
        events = t.events().__aiter__()
        assert isinstance(await _next(events), TransportStarted)

        # 20 ms of 8 kHz PCM16 is 320 bytes.
        assert await t.push_chunk(b"\x00" * 800) == 3
        frames = [await _next(events) for _ in range(3)]
        assert [f.frame.timestamp_ms for f in frames if isinstance(f, InboundAudio)] == [0, 20, 40]
        assert await t.push_chunk(b"\x00" * 320) == 1
        nxt = await _next(events)
        assert isinstance(nxt, InboundAudio) and nxt.frame.timestamp_ms == 50

        await t.send_audio(b"abc")
        await t.send_mark("responsePart")
        out = t.stream_out().__aiter__()
        assert await asyncio.wait_for(out.__anext__(), timeout=1.0) == b"abc"
        assert t.reader_attached
        reader = asyncio.ensure_future(out.__anext__())
        ack = await _next(events)
        assert isinstance(ack, MarkAck) and ack.name == "responsePart"

        await t.finish()
        assert isinstance(await _next(events), TransportStopped)
        await t.close()
        await asyncio.gather(reader, return_exceptions=True)
        assert await t.push_chunk(b"\x00" * 320) == 0

    asyncio.run(_run())
