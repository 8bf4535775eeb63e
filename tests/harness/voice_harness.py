from __future__ import annotations

import asyncio
import base64
import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

from linkvoice.bounded_queue import BoundedDequeQueue, QueueClosed
from linkvoice.clock import FakeClock
from linkvoice.config import VoiceConfig
from linkvoice.errors import ProvisioningError, StageError, TruncationError
from linkvoice.metrics import Metrics
from linkvoice.models import AgentProfile, AudioFrame, SessionState
from linkvoice.orchestrator import SessionOrchestrator
from linkvoice.pipeline import PipelineEvent, PipelineSettings
from linkvoice.provisioning import Credentials
from linkvoice.transcripts import MemoryTranscriptSink, TranscriptWriter
from linkvoice.transport_telephony import TelephonyTransport


SILENCE = b"\xff" * 160
LOUD = bytes([0x00, 0x80] * 80)


class InMemorySocket:
    def __init__(self) -> None:
        self._in: asyncio.Queue[str] = asyncio.Queue()
        self._out: asyncio.Queue[str] = asyncio.Queue()
        self.closed = asyncio.Event()
        self.close_code: Optional[int] = None
        # Test-only latch to deterministically pause/resume writer output.
        self.send_allowed = asyncio.Event()
        self.send_allowed.set()

    async def recv_text(self) -> str:
        text = await self._in.get()
        if self.closed.is_set():
            raise ConnectionError("socket closed")
        return text

    async def send_text(self, text: str) -> None:
        await self.send_allowed.wait()
        await self._out.put(text)

    async def close(self, *, code: int = 1000, reason: str = "") -> None:
        if self.close_code is None:
            self.close_code = code
        self.closed.set()
        self.send_allowed.set()
        # Unblock recv if needed.
        await self._in.put("")

    async def push_inbound(self, raw_text: str) -> None:
        await self._in.put(raw_text)

    def drain_outbound(self) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        while not self._out.empty():
            out.append(json.loads(self._out.get_nowait()))
        return out


class ScriptedProvisioner:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls = 0
        self.closes = 0

    async def provision(self, *, session_id: str, profile: AgentProfile, voice: str) -> Credentials:
        self.calls += 1
        if self.fail:
            raise ProvisioningError("token endpoint returned 503")
        return Credentials(token="ek_test", model="test-model")

    async def aclose(self) -> None:
        self.closes += 1


class ScriptedPipeline:
    """Records every call from the session and lets the test push service events."""

    def __init__(self, *, auto_response: bool = True) -> None:
        self.auto_response = auto_response
        self._events: BoundedDequeQueue[PipelineEvent] = BoundedDequeQueue(maxsize=1024)
        self.settings: Optional[PipelineSettings] = None
        self.fed: list[AudioFrame] = []
        self.requests: list[Optional[str]] = []
        self.cancels = 0
        self.truncates: list[tuple[str, int]] = []
        self.restarts: list[str] = []
        self.stops = 0
        self.start_error: Optional[StageError] = None
        self.request_error: Optional[StageError] = None
        self.truncate_error = False

    async def start(self, settings: PipelineSettings) -> None:
        if self.start_error is not None:
            raise self.start_error
        if self._events.closed():
            self._events = BoundedDequeQueue(maxsize=1024)
        self.settings = settings

    async def feed_audio(self, frame: AudioFrame) -> None:
        self.fed.append(frame)

    async def request_response(self, *, say: Optional[str] = None) -> None:
        if self.request_error is not None:
            raise self.request_error
        self.requests.append(say)

    async def cancel_response(self) -> None:
        self.cancels += 1

    async def truncate(self, item_id: str, audio_end_ms: int) -> None:
        if self.truncate_error:
            raise TruncationError("item not found")
        self.truncates.append((item_id, audio_end_ms))

    async def restart_stage(self, stage: str) -> None:
        self.restarts.append(stage)

    async def events(self) -> AsyncIterator[PipelineEvent]:
        while True:
            try:
                yield await self._events.get()
            except QueueClosed:
                return

    async def stop(self) -> None:
        self.stops += 1
        await self._events.close()

    async def emit(self, ev: PipelineEvent) -> None:
        await self._events.put(ev)


@dataclass
class VoiceHarness:
    cfg: VoiceConfig
    clock: FakeClock
    metrics: Metrics
    socket: InMemorySocket
    transport: TelephonyTransport
    pipeline: ScriptedPipeline
    provisioner: ScriptedProvisioner
    sink: MemoryTranscriptSink
    orch: SessionOrchestrator
    run_task: asyncio.Task[None]

    @staticmethod
    async def start(
        *,
        cfg: Optional[VoiceConfig] = None,
        pipeline: Optional[ScriptedPipeline] = None,
        provisioner: Optional[ScriptedProvisioner] = None,
        profile: Optional[AgentProfile] = None,
        send_start: bool = True,
    ) -> "VoiceHarness":
        cfg = cfg or VoiceConfig(level_sample_interval_ms=0, max_call_duration_ms=0)
        clock = FakeClock(start_ms=0)
        metrics = Metrics()
        socket = InMemorySocket()
        transport = TelephonyTransport(socket, clock=clock, metrics=metrics)
        pipeline = pipeline or ScriptedPipeline()
        provisioner = provisioner or ScriptedProvisioner()
        sink = MemoryTranscriptSink()
        orch = SessionOrchestrator(
            session_id="s1",
            config=cfg,
            profile=profile or AgentProfile(agent_id="agent-1"),
            transport=transport,
            pipeline=pipeline,
            provisioner=provisioner,
            clock=clock,
            metrics=metrics,
            transcripts=TranscriptWriter(sink=sink, metrics=metrics, session_id="s1"),
        )
        run_task = asyncio.create_task(orch.run())
        h = VoiceHarness(
            cfg=cfg,
            clock=clock,
            metrics=metrics,
            socket=socket,
            transport=transport,
            pipeline=pipeline,
            provisioner=provisioner,
            sink=sink,
            orch=orch,
            run_task=run_task,
        )
        if send_start:
            await h.send_obj({"event": "connected", "protocol": "Call", "version": "1.0.0"})
            await h.send_obj(
                {
                    "event": "start",
                    "streamSid": "MZ1",
                    "start": {"streamSid": "MZ1", "callSid": "CA1", "tracks": ["inbound"]},
                }
            )
        await h.settle()
        return h

    async def settle(self, rounds: int = 40) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)

    async def send_obj(self, obj: dict[str, Any]) -> None:
        await self.socket.push_inbound(json.dumps(obj, separators=(",", ":")))

    async def send_media(self, timestamp_ms: int, payload: bytes = SILENCE) -> None:
        await self.send_obj(
            {
                "event": "media",
                "streamSid": "MZ1",
                "media": {"track": "inbound", "timestamp": str(timestamp_ms), "payload": base64.b64encode(payload).decode()},
            }
        )
        await self.settle()

    async def send_mark(self, name: str = "responsePart") -> None:
        await self.send_obj({"event": "mark", "streamSid": "MZ1", "mark": {"name": name}})
        await self.settle()

    async def emit(self, ev: PipelineEvent) -> None:
        await self.pipeline.emit(ev)
        await self.settle()

    def outbound(self) -> list[dict[str, Any]]:
        return self.socket.drain_outbound()

    async def wait_state(self, state: SessionState, *, rounds: int = 20) -> None:
        for _ in range(rounds):
            if self.orch.state == state:
                return
            await self.settle()
        assert self.orch.state == state

    async def stop(self) -> None:
        await self.orch.stop(reason="test_end")
        await asyncio.gather(self.run_task, return_exceptions=True)
