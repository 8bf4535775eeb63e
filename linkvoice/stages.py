from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Optional, Protocol
from urllib.parse import urlencode

import websockets

from .bounded_queue import BoundedDequeQueue, QueueClosed
from .errors import StageError
from .logs import get_logger
from .models import AudioEncoding, TranscriptSegment
from .realtime_client import Connector, RealtimeSocket, websockets_connect


class STTStage(Protocol):
    async def start(self, *, encoding: AudioEncoding, sample_rate_hz: int) -> None: ...

    async def feed(self, chunk: bytes) -> None: ...

    def results(self) -> AsyncIterator[TranscriptSegment]: ...

    async def stop(self) -> None: ...


class TTSStage(Protocol):
    sample_rate_hz: int

    def synthesize(self, text: str, *, voice: str) -> AsyncIterator[bytes]: ...

    async def aclose(self) -> None: ...


_FAIL = object()


class FakeSTT:
    """Scripted STT for tests: push() results, fail() to break the stream."""

    def __init__(self) -> None:
        self.fed: list[bytes] = []
        self.starts = 0
        self.stops = 0
        self._q: Optional[asyncio.Queue[Any]] = None

    async def start(self, *, encoding: AudioEncoding, sample_rate_hz: int) -> None:
        self.starts += 1
        self._q = asyncio.Queue()

    async def feed(self, chunk: bytes) -> None:
        self.fed.append(chunk)

    def push(self, text: str, *, is_final: bool, start_offset_ms: int = 0, utterance_id: str = "u1") -> None:
        assert self._q is not None
        self._q.put_nowait(TranscriptSegment(text=text, is_final=is_final, start_offset_ms=start_offset_ms, utterance_id=utterance_id))

    def fail(self) -> None:
        assert self._q is not None
        self._q.put_nowait(_FAIL)

    async def results(self) -> AsyncIterator[TranscriptSegment]:
        q = self._q
        if q is None:
            return
        while True:
            item = await q.get()
            if item is None:
                return
            if item is _FAIL:
                raise StageError("stt", "fake stt failure")
            yield item

    async def stop(self) -> None:
        self.stops += 1
        if self._q is not None:
            self._q.put_nowait(None)


class DeepgramSTT:
    """
    Streaming speech-to-text over the Deepgram-compatible /v1/listen socket.
    Audio is forwarded in its native encoding; interim results are partials.
    """

    def __init__(
        self,
        *,
        api_key: str,
        url: str = "wss://api.deepgram.com/v1/listen",
        model: str = "nova-2",
        language: str = "en",
        connect: Optional[Connector] = None,
        result_queue_max: int = 128,
    ) -> None:
        self._api_key = api_key
        self._url = url
        self._model = model
        self._language = language
        self._connect = connect or websockets_connect
        self._queue_max = result_queue_max
        self._ws: Optional[RealtimeSocket] = None
        self._results: Optional[BoundedDequeQueue[Any]] = None
        self._reader_task: Optional[asyncio.Task[None]] = None
        self._log = get_logger("stt")

    async def start(self, *, encoding: AudioEncoding, sample_rate_hz: int) -> None:
        params = {
            "model": self._model,
            "language": self._language,
            "encoding": "mulaw" if encoding == "g711_ulaw" else "linear16",
            "sample_rate": str(sample_rate_hz),
            "channels": "1",
            "interim_results": "true",
            "punctuate": "true",
        }
        try:
            self._ws = await self._connect(f"{self._url}?{urlencode(params)}", {"Authorization": f"Token {self._api_key}"})
        except (OSError, websockets.WebSocketException) as e:
            raise StageError("stt", "connect failed", cause=str(e)) from e
        self._results = BoundedDequeQueue(maxsize=self._queue_max)
        self._reader_task = asyncio.create_task(self._reader(self._ws, self._results))

    async def _reader(self, ws: RealtimeSocket, out: BoundedDequeQueue[Any]) -> None:
        try:
            while True:
                raw = await ws.recv()
                try:
                    obj = json.loads(raw)
                except ValueError:
                    continue
                if not isinstance(obj, dict) or obj.get("type") != "Results":
                    continue
                alts = (obj.get("channel") or {}).get("alternatives") or []
                text = str(alts[0].get("transcript", "")) if alts else ""
                if not text:
                    continue
                seg = TranscriptSegment(
                    text=text,
                    is_final=bool(obj.get("is_final", False)),
                    start_offset_ms=int(float(obj.get("start", 0.0)) * 1000),
                )
                # Partials are superseded; under pressure drop older partials first.
                await out.put(seg, evict=lambda x: isinstance(x, TranscriptSegment) and not x.is_final)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log.warning("stt_stream_lost", error=type(e).__name__)
            await out.put(StageError("stt", "stream lost", cause=str(e)), evict=lambda x: True)
        finally:
            await out.close()

    async def feed(self, chunk: bytes) -> None:
        if self._ws is None:
            return
        try:
            await self._ws.send(chunk)  # type: ignore[arg-type]
        except (OSError, websockets.WebSocketException) as e:
            raise StageError("stt", "send failed", cause=str(e)) from e

    async def results(self) -> AsyncIterator[TranscriptSegment]:
        q = self._results
        if q is None:
            return
        utterance = 0
        while True:
            try:
                item = await q.get()
            except QueueClosed:
                return
            if isinstance(item, StageError):
                raise item
            item.utterance_id = f"dg-{utterance}"
            if item.is_final:
                utterance += 1
            yield item

    async def stop(self) -> None:
        ws, task = self._ws, self._reader_task
        self._ws = None
        self._reader_task = None
        if ws is not None:
            try:
                await ws.send(json.dumps({"type": "CloseStream"}))
                await ws.close()
            except (OSError, websockets.WebSocketException):
                pass
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if self._results is not None:
            await self._results.close()


class FakeTTS:
    """Deterministic synthesis: ms_per_char of low-level PCM16 per character."""

    def __init__(self, *, sample_rate_hz: int = 24000, ms_per_char: int = 10, fail_times: int = 0) -> None:
        self.sample_rate_hz = sample_rate_hz
        self.ms_per_char = ms_per_char
        self.fail_times = fail_times
        self.spoken: list[str] = []

    async def synthesize(self, text: str, *, voice: str) -> AsyncIterator[bytes]:
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RuntimeError("fake tts failure")
        self.spoken.append(text)
        samples = len(text) * self.ms_per_char * self.sample_rate_hz // 1000
        yield (b"\x10\x00" * samples)

    async def aclose(self) -> None:
        return


class OpenAITTS:
    """
    OpenAI speech synthesis streamed as raw 24 kHz PCM16. Lazy-imports `openai`.
    """

    sample_rate_hz = 24000

    def __init__(self, *, api_key: Optional[str] = None, model: str = "tts-1", chunk_bytes: int = 4800) -> None:
        self._api_key = api_key
        self._model = model
        self._chunk_bytes = chunk_bytes
        self._client: Any = None

    def _ensure_client(self) -> Any:
        if self._client is None:
            try:
                from openai import AsyncOpenAI  # type: ignore[import-not-found]
            except Exception as e:
                raise RuntimeError("OpenAITTS requires the dependency 'openai'.") from e
            self._client = AsyncOpenAI(api_key=self._api_key)
        return self._client

    async def synthesize(self, text: str, *, voice: str) -> AsyncIterator[bytes]:
        client = self._ensure_client()
        async with client.audio.speech.with_streaming_response.create(
            model=self._model,
            voice=voice,
            input=text,
            response_format="pcm",
        ) as response:
            async for chunk in response.iter_bytes(self._chunk_bytes):
                if chunk:
                    yield chunk

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
