from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


# ---------------------------------------------------------------------------
# Telephony media stream (carrier -> us)
# ---------------------------------------------------------------------------


class MediaFormat(BaseModel):
    model_config = ConfigDict(extra="ignore")
    encoding: str = "audio/x-mulaw"
    sampleRate: int = 8000
    channels: int = 1


class StartInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")
    streamSid: str
    callSid: str = ""
    accountSid: str = ""
    tracks: list[str] = Field(default_factory=list)
    customParameters: dict[str, str] = Field(default_factory=dict)
    mediaFormat: Optional[MediaFormat] = None


class MediaInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")
    payload: str
    timestamp: int = 0
    track: str = "inbound"
    chunk: Optional[int] = None


class MarkInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")
    name: str


class InboundConnected(BaseModel):
    model_config = ConfigDict(extra="ignore")
    event: Literal["connected"]


class InboundStart(BaseModel):
    model_config = ConfigDict(extra="ignore")
    event: Literal["start"]
    start: StartInfo
    streamSid: str = ""


class InboundMedia(BaseModel):
    model_config = ConfigDict(extra="ignore")
    event: Literal["media"]
    media: MediaInfo
    streamSid: str = ""


class InboundMark(BaseModel):
    model_config = ConfigDict(extra="ignore")
    event: Literal["mark"]
    mark: MarkInfo
    streamSid: str = ""


class InboundStop(BaseModel):
    model_config = ConfigDict(extra="ignore")
    event: Literal["stop"]
    streamSid: str = ""


class InboundDtmf(BaseModel):
    model_config = ConfigDict(extra="ignore")
    event: Literal["dtmf"]
    dtmf: dict[str, Any] = Field(default_factory=dict)
    streamSid: str = ""


TelephonyInbound = Annotated[
    Union[InboundConnected, InboundStart, InboundMedia, InboundMark, InboundStop, InboundDtmf],
    Field(discriminator="event"),
]

_telephony_in = TypeAdapter(TelephonyInbound)


# ---------------------------------------------------------------------------
# Telephony media stream (us -> carrier)
# ---------------------------------------------------------------------------


class OutboundMediaPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")
    payload: str


class OutboundMedia(BaseModel):
    model_config = ConfigDict(extra="forbid")
    event: Literal["media"] = "media"
    streamSid: str
    media: OutboundMediaPayload


class OutboundClear(BaseModel):
    model_config = ConfigDict(extra="forbid")
    event: Literal["clear"] = "clear"
    streamSid: str


class OutboundMark(BaseModel):
    model_config = ConfigDict(extra="forbid")
    event: Literal["mark"] = "mark"
    streamSid: str
    mark: MarkInfo


TelephonyOutbound = Annotated[
    Union[OutboundMedia, OutboundClear, OutboundMark],
    Field(discriminator="event"),
]

_telephony_out = TypeAdapter(TelephonyOutbound)


def parse_telephony_obj(obj: Any) -> TelephonyInbound:
    return _telephony_in.validate_python(obj)


def parse_telephony_outbound_json(raw_text: str) -> TelephonyOutbound:
    return _telephony_out.validate_python(json.loads(raw_text))


def dumps_telephony(msg: BaseModel) -> str:
    return json.dumps(msg.model_dump(exclude_none=True), separators=(",", ":"), sort_keys=True)


# ---------------------------------------------------------------------------
# Realtime AI service: client events
# ---------------------------------------------------------------------------


class TurnDetection(BaseModel):
    model_config = ConfigDict(extra="forbid")
    type: Literal["server_vad"] = "server_vad"
    threshold: Optional[float] = None
    prefix_padding_ms: Optional[int] = None
    silence_duration_ms: Optional[int] = None


class InputTranscription(BaseModel):
    model_config = ConfigDict(extra="forbid")
    model: str


class RealtimeSessionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    turn_detection: TurnDetection
    input_audio_format: Literal["g711_ulaw", "pcm16"] = "g711_ulaw"
    output_audio_format: Literal["g711_ulaw", "pcm16"] = "g711_ulaw"
    voice: str
    instructions: str
    modalities: list[str] = Field(default_factory=lambda: ["text", "audio"])
    temperature: float = 0.8
    max_response_output_tokens: Optional[int] = None
    input_audio_transcription: Optional[InputTranscription] = None
    tools: Optional[list[dict[str, Any]]] = None
    tool_choice: Optional[str] = None


class SessionUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")
    type: Literal["session.update"] = "session.update"
    session: RealtimeSessionConfig


class InputAudioAppend(BaseModel):
    model_config = ConfigDict(extra="forbid")
    type: Literal["input_audio_buffer.append"] = "input_audio_buffer.append"
    audio: str


class ItemTruncate(BaseModel):
    model_config = ConfigDict(extra="forbid")
    type: Literal["conversation.item.truncate"] = "conversation.item.truncate"
    item_id: str
    content_index: int = 0
    audio_end_ms: int


class ContentPart(BaseModel):
    model_config = ConfigDict(extra="forbid")
    type: Literal["input_text", "text"] = "input_text"
    text: str


class ConversationItem(BaseModel):
    model_config = ConfigDict(extra="forbid")
    type: Literal["message"] = "message"
    role: Literal["user", "assistant", "system"] = "user"
    content: list[ContentPart]


class FunctionCallOutputItem(BaseModel):
    model_config = ConfigDict(extra="forbid")
    type: Literal["function_call_output"] = "function_call_output"
    call_id: str
    output: str


class ItemCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")
    type: Literal["conversation.item.create"] = "conversation.item.create"
    item: Annotated[Union[ConversationItem, FunctionCallOutputItem], Field(discriminator="type")]


class ResponseOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")
    instructions: Optional[str] = None
    modalities: Optional[list[str]] = None


class ResponseCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")
    type: Literal["response.create"] = "response.create"
    response: Optional[ResponseOptions] = None


class ResponseCancel(BaseModel):
    model_config = ConfigDict(extra="forbid")
    type: Literal["response.cancel"] = "response.cancel"


RealtimeClientEvent = Annotated[
    Union[SessionUpdate, InputAudioAppend, ItemTruncate, ItemCreate, ResponseCreate, ResponseCancel],
    Field(discriminator="type"),
]

_realtime_client = TypeAdapter(RealtimeClientEvent)


def session_tools(tools: Any) -> list[dict[str, Any]]:
    """Tool definitions for session.update. The service rejects a file_search tool without a name."""
    out: list[dict[str, Any]] = []
    for tool in tools or ():
        tool = dict(tool)
        if tool.get("type") == "file_search" and not tool.get("name"):
            tool["name"] = "file_search"
        out.append(tool)
    return out


def dumps_realtime(event: BaseModel) -> str:
    return json.dumps(event.model_dump(exclude_none=True), separators=(",", ":"))


def parse_realtime_client_json(raw_text: str) -> RealtimeClientEvent:
    return _realtime_client.validate_python(json.loads(raw_text))


# ---------------------------------------------------------------------------
# Realtime AI service: server events
# ---------------------------------------------------------------------------


class ServerSessionCreated(BaseModel):
    model_config = ConfigDict(extra="ignore")
    type: Literal["session.created", "session.updated"]


class ServerSpeechStarted(BaseModel):
    model_config = ConfigDict(extra="ignore")
    type: Literal["input_audio_buffer.speech_started"]
    audio_start_ms: int = 0
    item_id: str = ""


class ServerSpeechStopped(BaseModel):
    model_config = ConfigDict(extra="ignore")
    type: Literal["input_audio_buffer.speech_stopped"]
    audio_end_ms: int = 0
    item_id: str = ""


class ServerTranscriptionDelta(BaseModel):
    model_config = ConfigDict(extra="ignore")
    type: Literal["conversation.item.input_audio_transcription.delta"]
    item_id: str = ""
    delta: str = ""


class ServerTranscriptionCompleted(BaseModel):
    model_config = ConfigDict(extra="ignore")
    type: Literal["conversation.item.input_audio_transcription.completed"]
    item_id: str = ""
    transcript: str = ""


class ServerResponseCreated(BaseModel):
    model_config = ConfigDict(extra="ignore")
    type: Literal["response.created"]
    response: dict[str, Any] = Field(default_factory=dict)


class ServerAudioDelta(BaseModel):
    model_config = ConfigDict(extra="ignore")
    type: Literal["response.audio.delta"]
    item_id: str
    delta: str
    response_id: str = ""


class ServerAudioDone(BaseModel):
    model_config = ConfigDict(extra="ignore")
    type: Literal["response.audio.done"]
    item_id: str = ""


class ServerAudioTranscriptDelta(BaseModel):
    model_config = ConfigDict(extra="ignore")
    type: Literal["response.audio_transcript.delta"]
    item_id: str = ""
    delta: str = ""


class ServerAudioTranscriptDone(BaseModel):
    model_config = ConfigDict(extra="ignore")
    type: Literal["response.audio_transcript.done"]
    item_id: str = ""
    transcript: str = ""


class ServerResponseDone(BaseModel):
    model_config = ConfigDict(extra="ignore")
    type: Literal["response.done"]
    response: dict[str, Any] = Field(default_factory=dict)


class ServerResponseCanceled(BaseModel):
    model_config = ConfigDict(extra="ignore")
    type: Literal["response.canceled", "response.cancelled"]


class ServerOutputBufferStopped(BaseModel):
    model_config = ConfigDict(extra="ignore")
    type: Literal["output_audio_buffer.stopped"]


class ServerFunctionCallArgumentsDone(BaseModel):
    model_config = ConfigDict(extra="ignore")
    type: Literal["response.function_call_arguments.done"]
    call_id: str
    name: str = ""
    arguments: str = ""
    item_id: str = ""
    response_id: str = ""


class ErrorDetail(BaseModel):
    model_config = ConfigDict(extra="ignore")
    type: str = ""
    code: Optional[str] = None
    message: str = ""


class ServerError(BaseModel):
    model_config = ConfigDict(extra="ignore")
    type: Literal["error"]
    error: ErrorDetail = Field(default_factory=ErrorDetail)


class ServerOther(BaseModel):
    """Any server event this service does not act on."""

    model_config = ConfigDict(extra="ignore")
    type: str


RealtimeServerEvent = Annotated[
    Union[
        ServerSessionCreated,
        ServerSpeechStarted,
        ServerSpeechStopped,
        ServerTranscriptionDelta,
        ServerTranscriptionCompleted,
        ServerResponseCreated,
        ServerAudioDelta,
        ServerAudioDone,
        ServerAudioTranscriptDelta,
        ServerAudioTranscriptDone,
        ServerResponseDone,
        ServerResponseCanceled,
        ServerOutputBufferStopped,
        ServerFunctionCallArgumentsDone,
        ServerError,
    ],
    Field(discriminator="type"),
]

_realtime_server = TypeAdapter(RealtimeServerEvent)

_KNOWN_SERVER_TYPES = frozenset(
    {
        "session.created",
        "session.updated",
        "input_audio_buffer.speech_started",
        "input_audio_buffer.speech_stopped",
        "conversation.item.input_audio_transcription.delta",
        "conversation.item.input_audio_transcription.completed",
        "response.created",
        "response.audio.delta",
        "response.audio.done",
        "response.audio_transcript.delta",
        "response.audio_transcript.done",
        "response.done",
        "response.canceled",
        "response.cancelled",
        "output_audio_buffer.stopped",
        "response.function_call_arguments.done",
        "error",
    }
)


def parse_realtime_server_obj(obj: Any) -> RealtimeServerEvent | ServerOther:
    if isinstance(obj, dict) and obj.get("type") not in _KNOWN_SERVER_TYPES:
        return ServerOther.model_validate(obj)
    return _realtime_server.validate_python(obj)


# ---------------------------------------------------------------------------
# Browser data channel ("oai-events")
# ---------------------------------------------------------------------------


class BrowserStop(BaseModel):
    model_config = ConfigDict(extra="ignore")
    type: Literal["session.stop"]


class BrowserInterrupt(BaseModel):
    model_config = ConfigDict(extra="ignore")
    type: Literal["response.interrupt"]


class BrowserSay(BaseModel):
    model_config = ConfigDict(extra="ignore")
    type: Literal["conversation.say"]
    text: str


BrowserControl = Annotated[
    Union[BrowserStop, BrowserInterrupt, BrowserSay],
    Field(discriminator="type"),
]

_browser_control = TypeAdapter(BrowserControl)


def parse_browser_control_json(raw_text: str) -> BrowserControl:
    return _browser_control.validate_python(json.loads(raw_text))
