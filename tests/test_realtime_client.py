from __future__ import annotations

import asyncio
import dataclasses
import json
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import pytest

from linkvoice.errors import StageError, TruncationError
from linkvoice.metrics import VOICE, Metrics
from linkvoice.models import AgentProfile, AudioFrame
from linkvoice.pipeline import (
    PipelineEvent,
    PipelineSettings,
    ResponseAudio,
    ResponseDone,
    ResponseStarted,
    SpeechStarted,
    StageFailed,
    TranscriptUpdate,
)
from linkvoice.realtime_client import RealtimePipeline


FIX = Path(__file__).parent / "fixtures"

SETTINGS = PipelineSettings(
    profile=AgentProfile(),
    voice="verse",
    instructions="Be brief.",
    audio_format="g711_ulaw",
    sample_rate_hz=8000,
    credential="ek_1",
    model="rt-model",
    max_output_tokens=200,
)


class FakeServiceSocket:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.incoming: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self.closed = False
        self.fail_send = False

    async def send(self, message: str) -> None:
        if self.fail_send:
            raise OSError("broken pipe")
        self.sent.append(json.loads(message))

    async def recv(self) -> Any:
        raw = await self.incoming.get()
        if raw is None:
            raise ConnectionError("service hung up")
        return raw

    async def close(self) -> None:
        self.closed = True

    def push(self, obj: Any) -> None:
        self.incoming.put_nowait(json.dumps(obj))

    def push_fixture(self, name: str) -> None:
        self.incoming.put_nowait((FIX / name).read_text(encoding="utf-8"))


class Connector:
    def __init__(self) -> None:
        self.sockets: list[FakeServiceSocket] = []
        self.urls: list[str] = []
        self.headers: list[dict[str, str]] = []

    async def __call__(self, url: str, headers: dict[str, str]) -> FakeServiceSocket:
        sock = FakeServiceSocket()
        self.sockets.append(sock)
        self.urls.append(url)
        self.headers.append(headers)
        return sock


async def _next(events: AsyncIterator[PipelineEvent]) -> PipelineEvent:
    return await asyncio.wait_for(events.__anext__(), timeout=1.0)


async def _started() -> tuple[RealtimePipeline, Connector, Metrics]:
    connect = Connector()
    metrics = Metrics()
    p = RealtimePipeline(url="wss://rt.test/v1/realtime", metrics=metrics, connect=connect)
    await p.start(SETTINGS)
    return p, connect, metrics


def test_start_sends_session_update() -> None:
    async def _run() -> None:
        p, connect, _ = await _started()
        assert connect.urls == ["wss://rt.test/v1/realtime?model=rt-model"]
        assert connect.headers[0]["Authorization"] == "Bearer ek_1"
        update = connect.sockets[0].sent[0]
        assert update["type"] == "session.update"
        session = update["session"]
        assert session["voice"] == "verse"
        assert session["input_audio_format"] == "g711_ulaw"
        assert session["output_audio_format"] == "g711_ulaw"
        assert session["turn_detection"]["type"] == "server_vad"
        assert session["max_response_output_tokens"] == 200
        assert "tools" not in session and "tool_choice" not in session
        await p.stop()

    asyncio.run(_run())


def test_outbound_calls_map_to_client_events() -> None:
    async def _run() -> None:
        p, connect, _ = await _started()
        sock = connect.sockets[0]
        await p.feed_audio(AudioFrame(seq=1, timestamp_ms=20, payload=b"\xff\xff\xff\xff"))
        await p.request_response()
        await p.request_response(say="Goodbye!")
        await p.cancel_response()
        await p.truncate("item_1", 450)
        assert sock.sent[1] == {"type": "input_audio_buffer.append", "audio": "/////w=="}
        assert sock.sent[2] == {"type": "response.create"}
        assert sock.sent[3]["response"]["instructions"].endswith("Goodbye!")
        assert sock.sent[4] == {"type": "response.cancel"}
        assert sock.sent[5] == {"type": "conversation.item.truncate", "item_id": "item_1", "content_index": 0, "audio_end_ms": 450}

        sock.fail_send = True
        with pytest.raises(TruncationError):
            await p.truncate("item_1", 10)
        with pytest.raises(StageError):
            await p.request_response()
        await p.stop()

    asyncio.run(_run())


def test_server_events_become_pipeline_events() -> None:
    async def _run() -> None:
        p, connect, metrics = await _started()
        sock = connect.sockets[0]
        events = p.events().__aiter__()

        sock.push_fixture("rt_speech_started.json")
        sock.push_fixture("rt_transcription_completed.json")
        sock.push({"type": "response.created", "response": {"id": "resp_1"}})
        sock.push_fixture("rt_audio_delta.json")
        sock.push({"type": "response.audio_transcript.delta", "item_id": "item_1", "delta": "We open "})
        sock.push({"type": "response.audio_transcript.delta", "item_id": "item_1", "delta": "at nine."})
        sock.push({"type": "rate_limits.updated", "rate_limits": []})
        sock.incoming.put_nowait("{not json")
        sock.push_fixture("rt_error.json")
        sock.push_fixture("rt_response_done.json")

        started = await _next(events)
        assert isinstance(started, SpeechStarted) and started.audio_start_ms == 1000
        final = await _next(events)
        assert isinstance(final, TranscriptUpdate)
        assert final.segment.is_final and final.segment.text == "What are your opening hours?"
        resp = await _next(events)
        assert isinstance(resp, ResponseStarted) and resp.response_id == "resp_1"
        audio = await _next(events)
        assert isinstance(audio, ResponseAudio) and audio.item_id == "item_1"
        assert audio.payload == b"\x7f\x7f\x7f\x7f"

        seen = []
        while True:
            ev = await _next(events)
            seen.append(ev)
            if isinstance(ev, ResponseDone):
                break
        done = seen[-1]
        assert isinstance(done, ResponseDone)
        assert done.text == "We open at nine." and done.response_id == "resp_1" and not done.canceled
        # The benign cancel race is not surfaced as a failure.
        assert not any(isinstance(e, StageFailed) for e in seen)
        assert metrics.get(VOICE["inbound_bad_schema_total"]) == 1
        await p.stop()

    asyncio.run(_run())


def test_real_errors_and_lost_connection_surface_as_stage_failures() -> None:
    async def _run() -> None:
        p, connect, _ = await _started()
        sock = connect.sockets[0]
        events = p.events().__aiter__()
        sock.push({"type": "error", "error": {"type": "server_error", "code": "internal", "message": "boom"}})
        failed = await _next(events)
        assert isinstance(failed, StageFailed) and failed.error.stage == "realtime" and failed.error.cause == "internal"

        sock.incoming.put_nowait(None)
        lost = await _next(events)
        assert isinstance(lost, StageFailed) and "service hung up" in lost.error.cause

        await p.restart_stage("realtime")
        assert len(connect.sockets) == 2
        assert connect.sockets[1].sent[0]["type"] == "session.update"
        await p.stop()
        assert connect.sockets[1].closed

    asyncio.run(_run())


def test_pipeline_can_be_started_again_after_stop() -> None:
    async def _run() -> None:
        p, connect, _ = await _started()
        await p.stop()
        await p.start(SETTINGS)
        events = p.events().__aiter__()
        connect.sockets[1].push({"type": "input_audio_buffer.speech_started", "audio_start_ms": 5})
        assert isinstance(await _next(events), SpeechStarted)
        await p.stop()

    asyncio.run(_run())


TOOLS = (
    {"type": "function", "name": "lookup_hours", "parameters": {"type": "object", "properties": {"day": {"type": "string"}}}},
    {"type": "file_search", "vector_store_ids": ["vs_1"]},
)


def test_session_update_offers_agent_tools() -> None:
    async def _run() -> None:
        connect = Connector()
        p = RealtimePipeline(url="wss://rt.test/v1/realtime", metrics=Metrics(), connect=connect)
        await p.start(dataclasses.replace(SETTINGS, profile=AgentProfile(tools=TOOLS)))
        session = connect.sockets[0].sent[0]["session"]
        assert session["tool_choice"] == "auto"
        assert [t["type"] for t in session["tools"]] == ["function", "file_search"]
        assert session["tools"][1]["name"] == "file_search"
        assert "name" not in TOOLS[1]
        await p.stop()

    asyncio.run(_run())


async def _until_sent(sock: FakeServiceSocket, n: int) -> None:
    for _ in range(100):
        if len(sock.sent) >= n:
            return
        await asyncio.sleep(0)
    assert len(sock.sent) >= n


def test_tool_call_output_is_sent_and_reply_requested_after_response_ends() -> None:
    async def _run() -> None:
        calls: list[tuple[str, dict[str, Any]]] = []

        async def executor(name: str, arguments: dict[str, Any]) -> Any:
            calls.append((name, arguments))
            return {"open": "9am", "close": "5pm"}

        connect = Connector()
        metrics = Metrics()
        p = RealtimePipeline(url="wss://rt.test/v1/realtime", metrics=metrics, connect=connect, tool_executor=executor)
        await p.start(dataclasses.replace(SETTINGS, profile=AgentProfile(tools=TOOLS)))
        sock = connect.sockets[0]

        sock.push({"type": "response.created", "response": {"id": "resp_1"}})
        sock.push(
            {
                "type": "response.function_call_arguments.done",
                "response_id": "resp_1",
                "call_id": "call_1",
                "name": "lookup_hours",
                "arguments": '{"day": "monday"}',
            }
        )
        await _until_sent(sock, 2)
        assert calls == [("lookup_hours", {"day": "monday"})]
        item = sock.sent[1]
        assert item["type"] == "conversation.item.create"
        assert item["item"]["type"] == "function_call_output"
        assert item["item"]["call_id"] == "call_1"
        assert json.loads(item["item"]["output"]) == {"open": "9am", "close": "5pm"}
        # The response carrying the call is still open.
        assert len(sock.sent) == 2

        sock.push({"type": "response.done", "response": {"id": "resp_1", "status": "completed"}})
        await _until_sent(sock, 3)
        assert sock.sent[2] == {"type": "response.create"}
        assert metrics.get(VOICE["tool_calls_total"]) == 1
        await p.stop()

    asyncio.run(_run())


def test_failing_tool_call_reports_error_output() -> None:
    async def _run() -> None:
        async def executor(name: str, arguments: dict[str, Any]) -> Any:
            raise RuntimeError("calendar offline")

        connect = Connector()
        metrics = Metrics()
        p = RealtimePipeline(url="wss://rt.test/v1/realtime", metrics=metrics, connect=connect, tool_executor=executor)
        await p.start(SETTINGS)
        sock = connect.sockets[0]

        sock.push({"type": "response.function_call_arguments.done", "call_id": "call_2", "name": "book", "arguments": "[1]"})
        sock.push({"type": "response.function_call_arguments.done", "call_id": "call_3", "name": "book", "arguments": "{}"})
        await _until_sent(sock, 5)
        outputs = {
            m["item"]["call_id"]: json.loads(m["item"]["output"])
            for m in sock.sent
            if m["type"] == "conversation.item.create"
        }
        assert outputs == {
            "call_2": {"error": "tool arguments must be a JSON object"},
            "call_3": {"error": "calendar offline"},
        }
        # No response was open, so a reply is requested right away.
        assert [m for m in sock.sent if m["type"] == "response.create"] == [{"type": "response.create"}] * 2
        assert metrics.get(VOICE["tool_call_failed_total"]) == 2
        await p.stop()

    asyncio.run(_run())


def test_tool_calls_without_an_executor_answer_unavailable() -> None:
    async def _run() -> None:
        p, connect, _ = await _started()
        sock = connect.sockets[0]
        sock.push({"type": "response.function_call_arguments.done", "call_id": "call_4", "name": "weather"})
        await _until_sent(sock, 2)
        assert json.loads(sock.sent[1]["item"]["output"]) == {"error": "tool 'weather' is not available"}
        await p.stop()

    asyncio.run(_run())
