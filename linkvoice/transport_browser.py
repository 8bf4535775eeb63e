from __future__ import annotations

import asyncio
import fractions
import time
from collections import deque
from typing import Any, Deque, Optional, Union

from pydantic import ValidationError

from .bounded_queue import QueueClosed
from .logs import get_logger
from .models import AudioFrame, TransportKind
from .protocol import BrowserInterrupt, BrowserSay, BrowserStop, parse_browser_control_json
from .transport import (
    ControlRequest,
    InboundAudio,
    MarkAck,
    QueuedTransport,
    TransportClosed,
    TransportConfig,
    TransportFailed,
    TransportStarted,
    TransportStopped,
    is_control,
)


SAMPLE_RATE = 24000
FRAME_MS = 20
SAMPLES_PER_FRAME = SAMPLE_RATE * FRAME_MS // 1000
DATA_CHANNEL_LABEL = "oai-events"


def _require_aiortc() -> tuple[Any, Any]:
    try:
        import aiortc  # type: ignore[import-not-found]
        import av  # type: ignore[import-not-found]
    except Exception as e:
        raise RuntimeError(
            "BrowserTransport requires the optional dependency 'aiortc'. "
            "Install with: python3 -m pip install -e '.[webrtc]'"
        ) from e
    return aiortc, av


class PlaybackBuffer:
    """
    Outbound PCM16 buffer consumed at real-time pace by the local audio track.
    Marks are positions in the byte stream; one is acknowledged once playback
    passes it, which is what the far end would report on a carrier socket.
    """

    def __init__(self) -> None:
        self._pcm = bytearray()
        self._marks: Deque[tuple[int, str]] = deque()
        self._consumed = 0

    def push_audio(self, pcm16: bytes) -> None:
        self._pcm.extend(pcm16)

    def push_mark(self, name: str) -> None:
        self._marks.append((self._consumed + len(self._pcm), name))

    def flush(self) -> None:
        self._pcm.clear()
        self._marks.clear()

    def buffered_bytes(self) -> int:
        return len(self._pcm)

    def take(self, nbytes: int) -> tuple[bytes, list[str]]:
        """Pop up to nbytes of audio, padded with silence, plus marks now played."""
        chunk = bytes(self._pcm[:nbytes])
        del self._pcm[:nbytes]
        self._consumed += len(chunk)
        played: list[str] = []
        while self._marks and self._marks[0][0] <= self._consumed:
            played.append(self._marks.popleft()[1])
        if len(chunk) < nbytes:
            chunk += b"\x00" * (nbytes - len(chunk))
        return chunk, played


def _make_outbound_track(aiortc: Any, av: Any, buffer: PlaybackBuffer, on_marks: Any) -> Any:
    class OutboundAudioTrack(aiortc.MediaStreamTrack):
        kind = "audio"

        def __init__(self) -> None:
            super().__init__()
            self._pts = 0
            self._start: Optional[float] = None

        async def recv(self) -> Any:
            if self._start is None:
                self._start = time.monotonic()
            # Pace frames at real time; aiortc pulls as fast as we return.
            target = self._start + (self._pts / SAMPLE_RATE)
            delay = target - time.monotonic()
            if delay > 0:
                await asyncio.sleep(delay)
            pcm, played = buffer.take(SAMPLES_PER_FRAME * 2)
            if played:
                on_marks(played)
            frame = av.AudioFrame(format="s16", layout="mono", samples=SAMPLES_PER_FRAME)
            frame.planes[0].update(pcm)
            frame.sample_rate = SAMPLE_RATE
            frame.pts = self._pts
            frame.time_base = fractions.Fraction(1, SAMPLE_RATE)
            self._pts += SAMPLES_PER_FRAME
            return frame

    return OutboundAudioTrack()


class BrowserTransport(QueuedTransport):
    """
    WebRTC peer connection terminated in this process: remote microphone track
    in, a locally generated track out, and the "oai-events" data channel for
    JSON control and state events.
    """

    kind = TransportKind.BROWSER
    audio_format = "pcm16"
    sample_rate_hz = SAMPLE_RATE

    def __init__(self, *, metrics: Any, event_queue_max: int = 256, outbound_queue_max: int = 512) -> None:
        super().__init__(metrics=metrics, event_queue_max=event_queue_max, outbound_queue_max=outbound_queue_max)
        self._pc: Any = None
        self._channel: Any = None
        self._buffer = PlaybackBuffer()
        self._tasks: list[asyncio.Task[None]] = []
        self._log = get_logger("browser")

    async def open(self, config: TransportConfig) -> None:
        aiortc, av = _require_aiortc()
        self.config = config
        self._log = self._log.bind(session_id=config.session_id)
        pc = aiortc.RTCPeerConnection()
        self._pc = pc
        pc.addTrack(_make_outbound_track(aiortc, av, self._buffer, self._on_marks_played))

        @pc.on("track")
        def _on_track(track: Any) -> None:
            if track.kind == "audio":
                self._tasks.append(asyncio.create_task(self._pump_remote_audio(track, av)))

        @pc.on("datachannel")
        def _on_datachannel(channel: Any) -> None:
            if channel.label != DATA_CHANNEL_LABEL:
                return
            self._channel = channel

            @channel.on("message")
            def _on_message(message: Union[str, bytes]) -> None:
                if isinstance(message, bytes):
                    message = message.decode("utf-8", errors="replace")
                self._tasks.append(asyncio.create_task(self._on_control(message)))

        @pc.on("connectionstatechange")
        async def _on_state() -> None:
            state = pc.connectionState
            self._log.info("peer_state", state=state)
            if state == "failed":
                await self.emit(TransportClosed(reason="peer_connection_failed"))
            elif state == "closed":
                await self.emit(TransportStopped(reason="peer_closed"))

        self._tasks.append(asyncio.create_task(self._writer()))

    async def negotiate(self, offer_sdp: str, offer_type: str = "offer") -> str:
        """Apply the browser's SDP offer and return our SDP answer."""
        aiortc, _ = _require_aiortc()
        if self._pc is None:
            raise RuntimeError("BrowserTransport.negotiate() before open()")
        if "m=audio" not in offer_sdp:
            await self.emit(TransportFailed(cause="The browser offer carries no microphone audio track."))
            raise ValueError("offer has no audio section")
        await self._pc.setRemoteDescription(aiortc.RTCSessionDescription(sdp=offer_sdp, type=offer_type))
        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        session_id = self.config.session_id if self.config else ""
        await self.emit(TransportStarted(stream_id=session_id))
        return str(self._pc.localDescription.sdp)

    async def _pump_remote_audio(self, track: Any, av: Any) -> None:
        resampler = av.AudioResampler(format="s16", layout="mono", rate=SAMPLE_RATE)
        seq = 0
        total_samples = 0
        try:
            while True:
                frame = await track.recv()
                for out in resampler.resample(frame):
                    pcm = bytes(out.planes[0])[: out.samples * 2]
                    seq += 1
                    await self.emit(
                        InboundAudio(
                            frame=AudioFrame(
                                seq=seq,
                                timestamp_ms=(total_samples * 1000) // SAMPLE_RATE,
                                payload=pcm,
                                encoding="pcm16",
                                sample_rate_hz=SAMPLE_RATE,
                            )
                        )
                    )
                    total_samples += out.samples
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # aiortc raises MediaStreamError when the remote track ends.
            self._log.info("remote_track_ended", error=type(e).__name__)
            await self.emit(TransportStopped(reason="remote_track_ended"))

    async def _on_control(self, message: str) -> None:
        try:
            ev = parse_browser_control_json(message)
        except (ValidationError, ValueError):
            self._log.debug("control_skipped", size=len(message))
            return
        if isinstance(ev, BrowserStop):
            await self.emit(ControlRequest(action="stop"))
        elif isinstance(ev, BrowserInterrupt):
            await self.emit(ControlRequest(action="interrupt"))
        elif isinstance(ev, BrowserSay):
            await self.emit(ControlRequest(action="say", text=ev.text))

    def _on_marks_played(self, names: list[str]) -> None:
        self._tasks = [t for t in self._tasks if not t.done()]
        for name in names:
            self._tasks.append(asyncio.create_task(self.emit(MarkAck(name=name))))

    async def _writer(self) -> None:
        while True:
            try:
                env = await self._outbound.get_prefer(is_control)
            except QueueClosed:
                return
            if self.is_stale(env):
                continue
            if env.kind == "audio":
                self._buffer.push_audio(env.payload)
            elif env.kind == "mark":
                self._buffer.push_mark(env.name)
            elif env.kind == "clear":
                self._buffer.flush()
            elif env.kind == "control":
                channel = self._channel
                if channel is not None and channel.readyState == "open":
                    channel.send(env.text)

    async def close(self, *, reason: str = "") -> None:
        if self._closed:
            return
        await super().close(reason=reason)
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._pc is not None:
            await self._pc.close()
            self._pc = None
