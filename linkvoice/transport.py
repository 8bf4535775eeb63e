from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal, Optional, Protocol, Union

from .bounded_queue import BoundedDequeQueue, QueueClosed
from .metrics import VOICE
from .models import AudioEncoding, AudioFrame, TransportKind


@dataclass(frozen=True, slots=True)
class TransportStarted:
    stream_id: str
    call_id: str = ""
    parameters: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class InboundAudio:
    frame: AudioFrame


@dataclass(frozen=True, slots=True)
class MarkAck:
    name: str


@dataclass(frozen=True, slots=True)
class ControlRequest:
    action: Literal["stop", "interrupt", "say"]
    text: str = ""


@dataclass(frozen=True, slots=True)
class TransportStopped:
    reason: str = "stop"


@dataclass(frozen=True, slots=True)
class TransportClosed:
    reason: str


@dataclass(frozen=True, slots=True)
class TransportFailed:
    """Audio capture could not be established (no line, no microphone track)."""

    cause: str


TransportEvent = Union[
    TransportStarted,
    InboundAudio,
    MarkAck,
    ControlRequest,
    TransportStopped,
    TransportClosed,
    TransportFailed,
]


@dataclass(frozen=True, slots=True)
class TransportConfig:
    session_id: str
    mark_name: str = "responsePart"
    write_timeout_ms: int = 400
    close_on_write_timeout: bool = True
    max_consecutive_write_timeouts: int = 3
    max_frame_bytes: int = 262_144


@dataclass(frozen=True, slots=True)
class OutboundEnvelope:
    """
    Internal-only unit of work for a transport's single writer. Speech-plane
    envelopes carry the clear generation they were queued under; the writer
    drops any whose generation is stale.
    """

    kind: Literal["audio", "mark", "clear", "control"]
    payload: bytes = b""
    name: str = ""
    text: str = ""
    gen: int = 0

    @property
    def plane(self) -> str:
        return "control" if self.kind in {"clear", "control"} else "speech"


def is_control(env: OutboundEnvelope) -> bool:
    return env.plane == "control"


class TransportAdapter(Protocol):
    kind: TransportKind
    audio_format: AudioEncoding
    sample_rate_hz: int

    async def open(self, config: TransportConfig) -> None: ...

    async def send_audio(self, payload: bytes) -> None: ...

    async def send_mark(self, name: str) -> None: ...

    async def send_control(self, obj: dict[str, Any]) -> None: ...

    async def clear(self) -> None: ...

    def events(self) -> AsyncIterator[TransportEvent]: ...

    async def close(self, *, reason: str = "") -> None: ...


class QueuedTransport:
    """
    Shared plumbing for every transport variant: one ordered event stream
    toward the session, and one bounded outbound queue drained by exactly one
    writer. clear() preempts queued speech.
    """

    kind: TransportKind = TransportKind.GENERIC
    audio_format: AudioEncoding = "pcm16"
    sample_rate_hz: int = 24000

    def __init__(self, *, metrics: Any, event_queue_max: int = 256, outbound_queue_max: int = 512) -> None:
        self._metrics = metrics
        self._events: BoundedDequeQueue[TransportEvent] = BoundedDequeQueue(maxsize=event_queue_max)
        self._outbound: BoundedDequeQueue[OutboundEnvelope] = BoundedDequeQueue(maxsize=outbound_queue_max)
        self._gen = 0
        self._closed = False
        self.config: Optional[TransportConfig] = None

    @property
    def gen(self) -> int:
        return self._gen

    def is_stale(self, env: OutboundEnvelope) -> bool:
        return env.plane == "speech" and env.gen != self._gen

    async def emit(self, ev: TransportEvent) -> bool:
        # Overflow drops the oldest queued audio; lifecycle events are never evicted.
        ok = await self._events.put(ev, evict=lambda x: isinstance(x, InboundAudio))
        if not ok:
            self._metrics.inc(VOICE["inbound_queue_dropped_total"], 1)
        return ok

    async def events(self) -> AsyncIterator[TransportEvent]:
        while True:
            try:
                ev = await self._events.get()
            except QueueClosed:
                return
            yield ev

    async def _enqueue(self, env: OutboundEnvelope) -> None:
        ok = await self._outbound.put(env, evict=lambda x: x.kind == "audio")
        if not ok:
            self._metrics.inc(VOICE["outbound_queue_dropped_total"], 1)

    async def send_audio(self, payload: bytes) -> None:
        await self._enqueue(OutboundEnvelope(kind="audio", payload=payload, gen=self._gen))

    async def send_mark(self, name: str) -> None:
        await self._enqueue(OutboundEnvelope(kind="mark", name=name, gen=self._gen))

    async def send_control(self, obj: dict[str, Any]) -> None:
        text = json.dumps(obj, separators=(",", ":"), sort_keys=True)
        await self._enqueue(OutboundEnvelope(kind="control", text=text, gen=self._gen))

    async def clear(self) -> None:
        self._gen += 1
        dropped = await self._outbound.drop_where(lambda e: e.plane == "speech")
        if dropped:
            self._metrics.inc(VOICE["stale_audio_dropped_total"], dropped)
        await self._enqueue(OutboundEnvelope(kind="clear", gen=self._gen))

    async def close(self, *, reason: str = "") -> None:
        if self._closed:
            return
        self._closed = True
        await self._outbound.close()
        await self._events.close()
