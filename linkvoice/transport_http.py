from __future__ import annotations

from typing import Any, AsyncIterator, Optional

from .bounded_queue import QueueClosed
from .models import AudioEncoding, AudioFrame, TransportKind
from .transport import (
    InboundAudio,
    MarkAck,
    QueuedTransport,
    TransportConfig,
    TransportStarted,
    TransportStopped,
    is_control,
)


class HttpChunkTransport(QueuedTransport):
    """
    Generic transport for clients that can only do plain HTTP: audio is
    uploaded as chunks and synthesized audio is read back as one chunked
    streaming response. A mark is acknowledged once the audio queued before
    it has been handed to the streaming response.
    """

    kind = TransportKind.GENERIC

    def __init__(
        self,
        *,
        metrics: Any,
        audio_format: AudioEncoding = "pcm16",
        sample_rate_hz: int = 24000,
        frame_ms: int = 20,
        event_queue_max: int = 256,
        outbound_queue_max: int = 512,
    ) -> None:
        super().__init__(metrics=metrics, event_queue_max=event_queue_max, outbound_queue_max=outbound_queue_max)
        self.audio_format = audio_format
        self.sample_rate_hz = int(sample_rate_hz)
        self._bytes_per_ms = (1 if audio_format == "g711_ulaw" else 2) * self.sample_rate_hz / 1000.0
        self._frame_bytes = max(1, int(self._bytes_per_ms * frame_ms))
        self._seq = 0
        self._received_bytes = 0
        self._reader_attached = False

    async def open(self, config: TransportConfig) -> None:
        self.config = config
        await self.emit(TransportStarted(stream_id=config.session_id))

    async def push_chunk(self, data: bytes, *, timestamp_ms: Optional[int] = None) -> int:
        """Split an uploaded chunk into frames. Returns the number of frames accepted."""
        if self._closed:
            return 0
        base_ms = int(timestamp_ms) if timestamp_ms is not None else int(self._received_bytes / self._bytes_per_ms)
        accepted = 0
        for offset in range(0, len(data), self._frame_bytes):
            piece = data[offset : offset + self._frame_bytes]
            self._seq += 1
            frame = AudioFrame(
                seq=self._seq,
                timestamp_ms=base_ms + int(offset / self._bytes_per_ms),
                payload=piece,
                encoding=self.audio_format,
                sample_rate_hz=self.sample_rate_hz,
            )
            if await self.emit(InboundAudio(frame=frame)):
                accepted += 1
        self._received_bytes += len(data)
        return accepted

    @property
    def reader_attached(self) -> bool:
        return self._reader_attached

    async def finish(self) -> None:
        await self.emit(TransportStopped(reason="client_finished"))

    async def stream_out(self) -> AsyncIterator[bytes]:
        """
        The single writer for this transport. Only one reader may attach.
        """
        if self._reader_attached:
            raise RuntimeError("outbound stream already attached")
        self._reader_attached = True
        while True:
            try:
                env = await self._outbound.get_prefer(is_control)
            except QueueClosed:
                return
            if self.is_stale(env):
                continue
            if env.kind == "audio":
                yield env.payload
            elif env.kind == "mark":
                await self.emit(MarkAck(name=env.name))
