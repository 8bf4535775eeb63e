from __future__ import annotations

import asyncio
import base64
import binascii
import json
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Protocol

import websockets
from pydantic import BaseModel, ValidationError

from .bounded_queue import BoundedDequeQueue, QueueClosed
from .errors import StageError, TruncationError
from .logs import get_logger
from .metrics import VOICE
from .models import AudioFrame, TranscriptSegment
from .pipeline import (
    AudioBufferDrained,
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
from .protocol import (
    FunctionCallOutputItem,
    InputAudioAppend,
    InputTranscription,
    ItemCreate,
    ItemTruncate,
    RealtimeSessionConfig,
    ResponseCancel,
    ResponseCreate,
    ResponseOptions,
    ServerAudioDelta,
    ServerAudioDone,
    ServerAudioTranscriptDelta,
    ServerError,
    ServerFunctionCallArgumentsDone,
    ServerOutputBufferStopped,
    ServerResponseCanceled,
    ServerResponseCreated,
    ServerResponseDone,
    ServerSessionCreated,
    ServerSpeechStarted,
    ServerSpeechStopped,
    ServerTranscriptionCompleted,
    ServerTranscriptionDelta,
    SessionUpdate,
    TurnDetection,
    dumps_realtime,
    parse_realtime_server_obj,
    session_tools,
)


# Errors the service reports for benign races (cancel after the response already ended).
_BENIGN_ERROR_CODES = frozenset({"response_cancel_not_active"})


class RealtimeSocket(Protocol):
    async def send(self, message: str) -> None: ...

    async def recv(self) -> Any: ...

    async def close(self) -> None: ...


Connector = Callable[[str, dict[str, str]], Awaitable[RealtimeSocket]]

# Runs one tool call: (name, parsed arguments) -> JSON-serializable result.
ToolExecutor = Callable[[str, dict[str, Any]], Awaitable[Any]]


async def unavailable_tool(name: str, arguments: dict[str, Any]) -> Any:
    return {"error": f"tool {name!r} is not available"}


async def websockets_connect(url: str, headers: dict[str, str]) -> RealtimeSocket:
    return await websockets.connect(url, additional_headers=headers, max_size=None)


class RealtimePipeline:
    """
    One socket to a realtime AI service that performs server-side speech
    detection, transcription, generation and synthesis.
    """

    auto_response = True

    def __init__(
        self,
        *,
        url: str,
        metrics: Any,
        connect: Optional[Connector] = None,
        vad_threshold: float = 0.5,
        vad_prefix_padding_ms: int = 300,
        vad_silence_duration_ms: int = 500,
        transcription_model: str = "whisper-1",
        event_queue_max: int = 512,
        session_id: str = "",
        tool_executor: Optional[ToolExecutor] = None,
    ) -> None:
        self._url = url
        self._metrics = metrics
        self._connect = connect or websockets_connect
        self._vad = TurnDetection(
            threshold=vad_threshold,
            prefix_padding_ms=vad_prefix_padding_ms,
            silence_duration_ms=vad_silence_duration_ms,
        )
        self._transcription_model = transcription_model
        self._events: BoundedDequeQueue[PipelineEvent] = BoundedDequeQueue(maxsize=event_queue_max)
        self._settings: Optional[PipelineSettings] = None
        self._ws: Optional[RealtimeSocket] = None
        self._reader_task: Optional[asyncio.Task[None]] = None
        self._stopping = False
        self._response_text: list[str] = []
        self._response_id = ""
        self._response_active = False
        self._tool_executor = tool_executor or unavailable_tool
        self._tool_tasks: list[asyncio.Task[None]] = []
        # A tool output arrived while its response was still open; ask for a reply once it ends.
        self._follow_up = False
        self._log = get_logger("realtime", session_id=session_id)

    def _session_update(self, settings: PipelineSettings) -> SessionUpdate:
        tools = session_tools(settings.profile.tools)
        return SessionUpdate(
            session=RealtimeSessionConfig(
                turn_detection=self._vad,
                input_audio_format=settings.audio_format,
                output_audio_format=settings.audio_format,
                voice=settings.voice,
                instructions=settings.instructions,
                temperature=settings.temperature,
                max_response_output_tokens=settings.max_output_tokens or None,
                input_audio_transcription=InputTranscription(model=self._transcription_model)
                if self._transcription_model
                else None,
                tools=tools or None,
                tool_choice="auto" if tools else None,
            )
        )

    async def start(self, settings: PipelineSettings) -> None:
        self._settings = settings
        if self._events.closed():
            self._events = BoundedDequeQueue(maxsize=self._events.maxsize)
        self._stopping = False
        await self._open()

    async def _open(self) -> None:
        settings = self._settings
        assert settings is not None
        headers = {
            "Authorization": f"Bearer {settings.credential}",
            "OpenAI-Beta": "realtime=v1",
        }
        url = f"{self._url}?model={settings.model}" if settings.model else self._url
        try:
            self._ws = await self._connect(url, headers)
            await self._send(self._session_update(settings))
        except (OSError, websockets.WebSocketException) as e:
            raise StageError("realtime", "connect failed", cause=str(e)) from e
        self._reader_task = asyncio.create_task(self._reader(self._ws))
        self._log.info("realtime_connected", model=settings.model)

    async def _send(self, event: BaseModel) -> None:
        ws = self._ws
        if ws is None:
            raise StageError("realtime", "not connected")
        await ws.send(dumps_realtime(event))

    async def _emit(self, ev: PipelineEvent) -> None:
        ok = await self._events.put(ev, evict=lambda x: isinstance(x, (ResponseText, SpeechStopped)))
        if not ok:
            self._metrics.inc(VOICE["events_dropped_total"], 1)

    async def _reader(self, ws: RealtimeSocket) -> None:
        try:
            while True:
                raw = await ws.recv()
                try:
                    obj = json.loads(raw)
                    ev = parse_realtime_server_obj(obj)
                except (ValueError, ValidationError):
                    self._metrics.inc(VOICE["inbound_bad_schema_total"], 1)
                    continue
                await self._dispatch(ev)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._stopping or ws is not self._ws:
                return
            self._log.warning("realtime_connection_lost", error=type(e).__name__)
            await self._emit(StageFailed(StageError("realtime", "connection lost", cause=str(e))))

    async def _dispatch(self, ev: Any) -> None:
        if isinstance(ev, ServerSessionCreated):
            if ev.type == "session.updated":
                await self._emit(PipelineReady())
        elif isinstance(ev, ServerSpeechStarted):
            await self._emit(SpeechStarted(audio_start_ms=ev.audio_start_ms))
        elif isinstance(ev, ServerSpeechStopped):
            await self._emit(SpeechStopped(audio_end_ms=ev.audio_end_ms))
        elif isinstance(ev, ServerTranscriptionDelta):
            if ev.delta:
                await self._emit(
                    TranscriptUpdate(TranscriptSegment(text=ev.delta, is_final=False, utterance_id=ev.item_id))
                )
        elif isinstance(ev, ServerTranscriptionCompleted):
            await self._emit(
                TranscriptUpdate(TranscriptSegment(text=ev.transcript.strip(), is_final=True, utterance_id=ev.item_id))
            )
        elif isinstance(ev, ServerResponseCreated):
            self._response_active = True
            self._response_text = []
            self._response_id = str(ev.response.get("id", ""))
            await self._emit(ResponseStarted(response_id=self._response_id))
        elif isinstance(ev, ServerAudioDelta):
            try:
                payload = base64.b64decode(ev.delta)
            except (binascii.Error, ValueError):
                self._metrics.inc(VOICE["inbound_bad_schema_total"], 1)
                return
            await self._emit(ResponseAudio(item_id=ev.item_id, payload=payload))
        elif isinstance(ev, ServerAudioTranscriptDelta):
            self._response_text.append(ev.delta)
            await self._emit(ResponseText(item_id=ev.item_id, delta=ev.delta))
        elif isinstance(ev, ServerAudioDone):
            return
        elif isinstance(ev, ServerResponseDone):
            status = str(ev.response.get("status", "completed"))
            await self._emit(
                ResponseDone(
                    response_id=self._response_id,
                    text="".join(self._response_text),
                    canceled=status == "cancelled",
                )
            )
            self._response_text = []
            self._response_active = False
            await self._follow_up_tools()
        elif isinstance(ev, ServerResponseCanceled):
            await self._emit(ResponseDone(response_id=self._response_id, text="".join(self._response_text), canceled=True))
            self._response_text = []
            self._response_active = False
            await self._follow_up_tools()
        elif isinstance(ev, ServerOutputBufferStopped):
            await self._emit(AudioBufferDrained())
        elif isinstance(ev, ServerFunctionCallArgumentsDone):
            self._metrics.inc(VOICE["tool_calls_total"], 1)
            self._log.info("tool_call", name=ev.name, call_id=ev.call_id)
            self._tool_tasks = [t for t in self._tool_tasks if not t.done()]
            self._tool_tasks.append(asyncio.create_task(self._run_tool(ev)))
        elif isinstance(ev, ServerError):
            if ev.error.code in _BENIGN_ERROR_CODES:
                self._log.debug("realtime_benign_error", code=ev.error.code)
                return
            self._log.warning("realtime_error", code=ev.error.code, message=ev.error.message)
            await self._emit(StageFailed(StageError("realtime", ev.error.message or "service error", cause=ev.error.code or "")))

    async def _run_tool(self, call: ServerFunctionCallArgumentsDone) -> None:
        try:
            arguments = json.loads(call.arguments or "{}")
            if not isinstance(arguments, dict):
                raise ValueError("tool arguments must be a JSON object")
            result = await self._tool_executor(call.name, arguments)
        except Exception as e:
            self._metrics.inc(VOICE["tool_call_failed_total"], 1)
            self._log.warning("tool_call_failed", name=call.name, call_id=call.call_id, error=str(e))
            result = {"error": str(e)}
        output = FunctionCallOutputItem(call_id=call.call_id, output=json.dumps(result, default=str))
        try:
            await self._send(ItemCreate(item=output))
            if self._response_active:
                self._follow_up = True
            else:
                await self._send(ResponseCreate())
        except (StageError, OSError, websockets.WebSocketException) as e:
            self._log.warning("tool_output_failed", call_id=call.call_id, error=str(e))

    async def _follow_up_tools(self) -> None:
        if not self._follow_up:
            return
        self._follow_up = False
        try:
            await self._send(ResponseCreate())
        except (StageError, OSError, websockets.WebSocketException) as e:
            self._log.warning("tool_follow_up_failed", error=str(e))


    async def feed_audio(self, frame: AudioFrame) -> None:
        if self._ws is None:
            return
        audio = base64.b64encode(frame.payload).decode("ascii")
        try:
            await self._send(InputAudioAppend(audio=audio))
        except (OSError, websockets.WebSocketException) as e:
            raise StageError("realtime", "audio append failed", cause=str(e)) from e

    async def request_response(self, *, say: Optional[str] = None) -> None:
        options = None
        if say:
            options = ResponseOptions(instructions=f"Say exactly the following and nothing else: {say}")
        try:
            await self._send(ResponseCreate(response=options))
        except (OSError, websockets.WebSocketException) as e:
            raise StageError("realtime", "response.create failed", cause=str(e)) from e

    async def cancel_response(self) -> None:
        try:
            await self._send(ResponseCancel())
        except (OSError, websockets.WebSocketException) as e:
            raise StageError("realtime", "response.cancel failed", cause=str(e)) from e

    async def truncate(self, item_id: str, audio_end_ms: int) -> None:
        try:
            await self._send(ItemTruncate(item_id=item_id, content_index=0, audio_end_ms=int(audio_end_ms)))
        except (StageError, OSError, websockets.WebSocketException) as e:
            raise TruncationError("truncate failed", cause=str(e)) from e

    async def restart_stage(self, stage: str) -> None:
        self._log.info("realtime_restart", stage=stage)
        await self._close_socket()
        await self._open()

    async def events(self) -> AsyncIterator[PipelineEvent]:
        while True:
            try:
                ev = await self._events.get()
            except QueueClosed:
                return
            yield ev

    async def _close_socket(self) -> None:
        ws, task = self._ws, self._reader_task
        self._ws = None
        self._reader_task = None
        tools, self._tool_tasks = self._tool_tasks, []
        for t in tools:
            t.cancel()
        await asyncio.gather(*tools, return_exceptions=True)
        self._response_active = False
        self._follow_up = False
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if ws is not None:
            try:
                await ws.close()
            except (OSError, websockets.WebSocketException):
                pass

    async def stop(self) -> None:
        self._stopping = True
        await self._close_socket()
        await self._events.close()
