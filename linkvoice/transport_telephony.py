from __future__ import annotations

import asyncio
import base64
import binascii
import json
from json import JSONDecodeError
from typing import Any, Optional, Protocol

from pydantic import ValidationError

from .bounded_queue import QueueClosed
from .clock import Clock
from .logs import get_logger
from .metrics import VOICE
from .models import AudioFrame, TransportKind
from .protocol import (
    InboundMark,
    InboundMedia,
    InboundStart,
    InboundStop,
    MarkInfo,
    OutboundClear,
    OutboundMark,
    OutboundMedia,
    OutboundMediaPayload,
    dumps_telephony,
    parse_telephony_obj,
)
from .transport import (
    InboundAudio,
    MarkAck,
    OutboundEnvelope,
    QueuedTransport,
    TransportClosed,
    TransportConfig,
    TransportStarted,
    TransportStopped,
    is_control,
)


class TextSocket(Protocol):
    async def recv_text(self) -> str: ...

    async def send_text(self, text: str) -> None: ...

    async def close(self, *, code: int = 1000, reason: str = "") -> None: ...


class TelephonyTransport(QueuedTransport):
    """
    Carrier media-stream socket: JSON frames carrying base64 G.711 u-law at 8 kHz.

    The reader starts as soon as the transport opens so caller audio is
    captured while the AI service handshake is still in flight.
    """

    kind = TransportKind.TELEPHONY
    audio_format = "g711_ulaw"
    sample_rate_hz = 8000

    def __init__(
        self,
        socket: TextSocket,
        *,
        clock: Clock,
        metrics: Any,
        event_queue_max: int = 256,
        outbound_queue_max: int = 512,
    ) -> None:
        super().__init__(metrics=metrics, event_queue_max=event_queue_max, outbound_queue_max=outbound_queue_max)
        self._socket = socket
        self._clock = clock
        self.stream_sid: Optional[str] = None
        self._started = asyncio.Event()
        self._shutdown = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []
        self._log = get_logger("telephony")

    async def open(self, config: TransportConfig) -> None:
        self.config = config
        self._log = self._log.bind(session_id=config.session_id)
        self._tasks = [
            asyncio.create_task(self._reader()),
            asyncio.create_task(self._writer()),
        ]

    async def _reader(self) -> None:
        """
        Reads frames -> JSON decode -> schema validation -> event stream.
        Oversized frames and bad JSON end the stream; unknown events are skipped.
        """
        cfg = self.config
        assert cfg is not None
        seq = 0
        try:
            while not self._shutdown.is_set():
                raw = await self._socket.recv_text()
                if cfg.max_frame_bytes > 0 and len(raw.encode("utf-8")) > cfg.max_frame_bytes:
                    self._log.warning("frame_dropped", reason="frame_too_large")
                    await self.emit(TransportClosed(reason="FRAME_TOO_LARGE"))
                    return
                try:
                    obj = json.loads(raw)
                except JSONDecodeError:
                    self._log.warning("frame_dropped", reason="bad_json")
                    await self.emit(TransportClosed(reason="BAD_JSON"))
                    return

                try:
                    ev = parse_telephony_obj(obj)
                except ValidationError:
                    event = str(obj.get("event", "")) if isinstance(obj, dict) else ""
                    self._log.debug("frame_skipped", reason="bad_schema", event_name=event)
                    self._metrics.inc(VOICE["inbound_bad_schema_total"], 1)
                    continue

                if isinstance(ev, InboundStart):
                    self.stream_sid = ev.start.streamSid
                    self._started.set()
                    self._log.info("stream_started", stream_sid=self.stream_sid, call_sid=ev.start.callSid)
                    await self.emit(
                        TransportStarted(
                            stream_id=ev.start.streamSid,
                            call_id=ev.start.callSid,
                            parameters=dict(ev.start.customParameters),
                        )
                    )
                elif isinstance(ev, InboundMedia):
                    if ev.media.track not in {"inbound", "inbound_track"}:
                        continue
                    try:
                        payload = base64.b64decode(ev.media.payload, validate=True)
                    except (binascii.Error, ValueError):
                        self._metrics.inc(VOICE["inbound_bad_schema_total"], 1)
                        continue
                    seq += 1
                    frame = AudioFrame(
                        seq=seq,
                        timestamp_ms=int(ev.media.timestamp),
                        payload=payload,
                        encoding="g711_ulaw",
                        sample_rate_hz=8000,
                    )
                    await self.emit(InboundAudio(frame=frame))
                elif isinstance(ev, InboundMark):
                    await self.emit(MarkAck(name=ev.mark.name))
                elif isinstance(ev, InboundStop):
                    self._log.info("stream_stopped", stream_sid=self.stream_sid)
                    await self.emit(TransportStopped(reason="stop"))
                    return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log.info("socket_read_ended", error=type(e).__name__)
            await self.emit(TransportClosed(reason="transport_read_error"))

    def _serialize(self, env: OutboundEnvelope) -> Optional[str]:
        sid = self.stream_sid or ""
        if env.kind == "audio":
            payload = base64.b64encode(env.payload).decode("ascii")
            return dumps_telephony(OutboundMedia(streamSid=sid, media=OutboundMediaPayload(payload=payload)))
        if env.kind == "mark":
            return dumps_telephony(OutboundMark(streamSid=sid, mark=MarkInfo(name=env.name)))
        if env.kind == "clear":
            return dumps_telephony(OutboundClear(streamSid=sid))
        # Data-channel style control events have no carrier equivalent.
        return None

    async def _writer(self) -> None:
        """
        Single-writer rule: the only task that writes to the socket. Clear
        frames jump the queue; speech queued before a clear is dropped.
        """
        cfg = self.config
        assert cfg is not None
        consecutive_timeouts = 0
        try:
            await self._started.wait()
            while not self._shutdown.is_set():
                try:
                    env = await self._outbound.get_prefer(is_control)
                except QueueClosed:
                    return
                if self.is_stale(env):
                    self._metrics.inc(VOICE["stale_audio_dropped_total"], 1)
                    continue
                text = self._serialize(env)
                if text is None:
                    continue
                try:
                    await self._clock.run_with_timeout(
                        self._socket.send_text(text),
                        timeout_ms=max(1, cfg.write_timeout_ms),
                    )
                    consecutive_timeouts = 0
                except TimeoutError:
                    self._metrics.inc(VOICE["ws_write_timeout_total"], 1)
                    consecutive_timeouts += 1
                    if cfg.close_on_write_timeout and consecutive_timeouts >= max(
                        1, cfg.max_consecutive_write_timeouts
                    ):
                        self._log.warning("write_timeout_close", timeouts=consecutive_timeouts)
                        await self.emit(TransportClosed(reason="WRITE_TIMEOUT_BACKPRESSURE"))
                        self._shutdown.set()
                        await self._socket.close(code=1011, reason="WRITE_TIMEOUT_BACKPRESSURE")
                        return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log.info("socket_write_ended", error=type(e).__name__)
            await self.emit(TransportClosed(reason="transport_write_error"))

    async def close(self, *, reason: str = "") -> None:
        if self._closed:
            return
        self._shutdown.set()
        self._started.set()
        await super().close(reason=reason)
        current = asyncio.current_task()
        for t in self._tasks:
            if t is not current:
                t.cancel()
        await asyncio.gather(*(t for t in self._tasks if t is not current), return_exceptions=True)
        await self._socket.close(code=1000, reason=reason or "session_end")
