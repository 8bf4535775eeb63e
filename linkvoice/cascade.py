from __future__ import annotations

import asyncio
import re
from typing import Any, AsyncIterator, Optional

from .audio import ActivityDetector, pcm16_to_ulaw, resample_pcm16, ulaw_to_pcm16
from .bounded_queue import BoundedDequeQueue, QueueClosed
from .clock import Clock
from .errors import StageError, TruncationError
from .llm_client import LLMClient, Message
from .logs import get_logger
from .metrics import VOICE
from .models import AudioFrame, TranscriptSegment
from .pipeline import (
    PipelineEvent,
    PipelineReady,
    PipelineSettings,
    ResponseAudio,
    ResponseDone,
    ResponseStarted,
    ResponseText,
    SpeechStarted,
    SpeechStopped,
    StageFailed,
    TranscriptUpdate,
)
from .stages import STTStage, TTSStage


_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")


def split_speakable(buffer: str, *, max_chars: int = 220) -> tuple[list[str], str]:
    """
    Cut complete sentences off the front of buffer. Returns (sentences, rest).
    A run-on longer than max_chars is cut at the last space.
    """
    parts = _SENTENCE_END.split(buffer)
    done = [p.strip() for p in parts[:-1] if p.strip()]
    rest = parts[-1]
    while len(rest) > max_chars:
        cut = rest.rfind(" ", 0, max_chars)
        if cut <= 0:
            cut = max_chars
        done.append(rest[:cut].strip())
        rest = rest[cut:].lstrip()
    return done, rest


def truncate_text(text: str, *, played_ms: int, total_ms: int) -> str:
    """Keep the share of text the listener actually heard, cut at a word boundary."""
    if total_ms <= 0 or played_ms >= total_ms:
        return text
    keep = int(len(text) * max(0, played_ms) / total_ms)
    if keep <= 0:
        return ""
    cut = text.rfind(" ", 0, keep)
    return text[: cut if cut > 0 else keep].rstrip()


class CascadePipeline:
    """
    Streaming STT, LLM and TTS composed locally, with local energy-based
    speech activity detection standing in for server-side detection.
    """

    auto_response = False

    def __init__(
        self,
        *,
        stt: STTStage,
        llm: LLMClient,
        tts: TTSStage,
        clock: Clock,
        metrics: Any,
        min_partial_chars: int = 3,
        activity_sensitivity: float = 0.5,
        activity_hangover_frames: int = 8,
        chunk_ms: int = 100,
        prebuffer_chunks: int = 5,
        event_queue_max: int = 512,
        session_id: str = "",
    ) -> None:
        self._stt = stt
        self._llm = llm
        self._tts = tts
        self._clock = clock
        self._metrics = metrics
        self._min_partial_chars = int(min_partial_chars)
        self._detector = ActivityDetector(sensitivity=activity_sensitivity, hangover_frames=activity_hangover_frames)
        self._chunk_ms = int(chunk_ms)
        self._prebuffer_chunks = int(prebuffer_chunks)
        self._events: BoundedDequeQueue[PipelineEvent] = BoundedDequeQueue(maxsize=event_queue_max)
        self._settings: Optional[PipelineSettings] = None
        self._stt_task: Optional[asyncio.Task[None]] = None
        self._gen_task: Optional[asyncio.Task[None]] = None
        self._in_speech = False
        self._response_seq = 0
        self.history: list[Message] = []
        # item_id -> (history index, audio ms generated)
        self._items: dict[str, tuple[int, int]] = {}
        self._log = get_logger("cascade", session_id=session_id)

    async def _emit(self, ev: PipelineEvent) -> None:
        ok = await self._events.put(ev, evict=lambda x: isinstance(x, ResponseText))
        if not ok:
            self._metrics.inc(VOICE["events_dropped_total"], 1)

    async def start(self, settings: PipelineSettings) -> None:
        self._settings = settings
        if self._events.closed():
            self._events = BoundedDequeQueue(maxsize=self._events.maxsize)
        await self._start_stt()
        await self._emit(PipelineReady())

    async def _start_stt(self) -> None:
        settings = self._settings
        assert settings is not None
        await self._stt.start(encoding=settings.audio_format, sample_rate_hz=settings.sample_rate_hz)
        self._stt_task = asyncio.create_task(self._stt_reader())

    async def _stt_reader(self) -> None:
        try:
            async for seg in self._stt.results():
                text = seg.text.strip()
                if not seg.is_final and len(text) < self._min_partial_chars:
                    self._metrics.inc(VOICE["partial_suppressed_total"], 1)
                    continue
                if seg.is_final:
                    if len(text) < self._min_partial_chars:
                        self._metrics.inc(VOICE["partial_suppressed_total"], 1)
                        continue
                    self.history.append({"role": "user", "content": text})
                await self._emit(TranscriptUpdate(segment=seg))
        except asyncio.CancelledError:
            raise
        except StageError as e:
            await self._emit(StageFailed(e))
        except Exception as e:
            await self._emit(StageFailed(StageError("stt", "stream failed", cause=str(e))))

    async def feed_audio(self, frame: AudioFrame) -> None:
        pcm = ulaw_to_pcm16(frame.payload) if frame.encoding == "g711_ulaw" else frame.payload
        speech = self._detector.is_speech(pcm)
        if speech and not self._in_speech:
            self._in_speech = True
            await self._emit(SpeechStarted(audio_start_ms=frame.timestamp_ms, frame_timestamp_ms=frame.timestamp_ms))
        elif not speech and self._in_speech:
            self._in_speech = False
            await self._emit(SpeechStopped(audio_end_ms=frame.timestamp_ms))
        await self._stt.feed(frame.payload)

    def _encode_out(self, pcm16: bytes) -> bytes:
        settings = self._settings
        assert settings is not None
        pcm = resample_pcm16(pcm16, self._tts.sample_rate_hz, settings.sample_rate_hz)
        return pcm16_to_ulaw(pcm) if settings.audio_format == "g711_ulaw" else pcm

    def _chunk_bytes(self) -> int:
        settings = self._settings
        assert settings is not None
        width = 1 if settings.audio_format == "g711_ulaw" else 2
        return width * settings.sample_rate_hz * self._chunk_ms // 1000

    async def request_response(self, *, say: Optional[str] = None) -> None:
        if self._gen_task is not None and not self._gen_task.done():
            raise StageError("llm", "response already active")
        self._response_seq += 1
        item_id = f"resp_{self._response_seq}"
        self._gen_task = asyncio.create_task(self._generate(item_id, say))

    async def _generate(self, item_id: str, say: Optional[str]) -> None:
        settings = self._settings
        assert settings is not None
        spoken: list[str] = []
        # Sentence being synthesized and the audio buffered for it so far.
        current = ""
        buffered_ms = 0
        audio_ms = 0
        sent_chunks = 0
        stage = "llm"
        await self._emit(ResponseStarted(response_id=item_id))
        try:
            async def _speak(sentence: str) -> None:
                nonlocal audio_ms, sent_chunks, stage, current, buffered_ms
                stage = "tts"
                pending = b""
                size = self._chunk_bytes()
                async for pcm in self._tts.synthesize(sentence, voice=settings.voice):
                    pending += self._encode_out(pcm)
                    current = sentence
                    buffered_ms = len(pending) * self._chunk_ms // size
                    while len(pending) >= size:
                        chunk, pending = pending[:size], pending[size:]
                        buffered_ms = len(pending) * self._chunk_ms // size
                        await self._emit(ResponseAudio(item_id=item_id, payload=chunk))
                        audio_ms += self._chunk_ms
                        sent_chunks += 1
                        if sent_chunks > self._prebuffer_chunks:
                            await self._clock.sleep_ms(self._chunk_ms)
                if pending:
                    await self._emit(ResponseAudio(item_id=item_id, payload=pending))
                    audio_ms += len(pending) * self._chunk_ms // size
                spoken.append(sentence)
                current, buffered_ms = "", 0
                await self._emit(ResponseText(item_id=item_id, delta=sentence + " "))
                stage = "llm"

            if say:
                await _speak(say)
            else:
                buffer = ""
                async for token in self._llm.stream_reply(instructions=settings.instructions, history=list(self.history)):
                    buffer += token
                    sentences, buffer = split_speakable(buffer)
                    for s in sentences:
                        await _speak(s)
                if buffer.strip():
                    await _speak(buffer.strip())
        except asyncio.CancelledError:
            heard = spoken + [current] if current else spoken
            self._record(item_id, heard, audio_ms + buffered_ms)
            await self._emit(ResponseDone(response_id=item_id, text=" ".join(heard), canceled=True))
            raise
        except Exception as e:
            heard = spoken + [current] if current else spoken
            self._record(item_id, heard, audio_ms + buffered_ms)
            self._log.warning("generation_failed", stage=stage, error=type(e).__name__)
            await self._emit(StageFailed(StageError(stage, "generation failed", cause=str(e))))
            await self._emit(ResponseDone(response_id=item_id, text=" ".join(heard), canceled=True))
            return
        self._record(item_id, spoken, audio_ms)
        await self._emit(ResponseDone(response_id=item_id, text=" ".join(spoken)))

    def _record(self, item_id: str, spoken: list[str], audio_ms: int) -> None:
        if not spoken:
            return
        self.history.append({"role": "assistant", "content": " ".join(spoken)})
        self._items[item_id] = (len(self.history) - 1, audio_ms)

    async def cancel_response(self) -> None:
        task = self._gen_task
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def truncate(self, item_id: str, audio_end_ms: int) -> None:
        # Generation may still be unwinding from the cancel that preceded this.
        await self.cancel_response()
        entry = self._items.get(item_id)
        if entry is None:
            raise TruncationError(f"unknown item {item_id}")
        idx, total_ms = entry
        text = self.history[idx]["content"]
        self.history[idx] = {"role": "assistant", "content": truncate_text(text, played_ms=audio_end_ms, total_ms=total_ms)}

    async def restart_stage(self, stage: str) -> None:
        self._log.info("stage_restart", stage=stage)
        if stage == "stt":
            if self._stt_task is not None:
                self._stt_task.cancel()
                await asyncio.gather(self._stt_task, return_exceptions=True)
            await self._stt.stop()
            await self._start_stt()
        else:
            await self.cancel_response()

    async def events(self) -> AsyncIterator[PipelineEvent]:
        while True:
            try:
                ev = await self._events.get()
            except QueueClosed:
                return
            yield ev

    async def stop(self) -> None:
        await self.cancel_response()
        if self._stt_task is not None:
            self._stt_task.cancel()
            await asyncio.gather(self._stt_task, return_exceptions=True)
            self._stt_task = None
        await self._stt.stop()
        await self._llm.aclose()
        await self._tts.aclose()
        await self._events.close()
