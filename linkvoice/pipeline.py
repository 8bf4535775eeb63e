from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Optional, Protocol, Union

from .errors import StageError
from .models import AgentProfile, AudioEncoding, AudioFrame, TranscriptSegment


@dataclass(frozen=True, slots=True)
class PipelineReady:
    pass


@dataclass(frozen=True, slots=True)
class SpeechStarted:
    audio_start_ms: int = 0
    # Transport timeline stamp of the detecting frame; None for service-side VAD.
    frame_timestamp_ms: Optional[int] = None


@dataclass(frozen=True, slots=True)
class SpeechStopped:
    audio_end_ms: int = 0


@dataclass(frozen=True, slots=True)
class TranscriptUpdate:
    segment: TranscriptSegment


@dataclass(frozen=True, slots=True)
class ResponseStarted:
    response_id: str = ""


@dataclass(frozen=True, slots=True)
class ResponseAudio:
    item_id: str
    payload: bytes


@dataclass(frozen=True, slots=True)
class ResponseText:
    item_id: str
    delta: str


@dataclass(frozen=True, slots=True)
class ResponseDone:
    response_id: str = ""
    text: str = ""
    canceled: bool = False


@dataclass(frozen=True, slots=True)
class AudioBufferDrained:
    """The service reports it has no more output audio for this response."""


@dataclass(frozen=True, slots=True)
class StageFailed:
    error: StageError


PipelineEvent = Union[
    PipelineReady,
    SpeechStarted,
    SpeechStopped,
    TranscriptUpdate,
    ResponseStarted,
    ResponseAudio,
    ResponseText,
    ResponseDone,
    AudioBufferDrained,
    StageFailed,
]


@dataclass(frozen=True, slots=True)
class PipelineSettings:
    """Per-session pipeline parameters resolved from config, profile and credentials."""

    profile: AgentProfile
    voice: str
    instructions: str
    audio_format: AudioEncoding
    sample_rate_hz: int
    credential: str = ""
    model: str = ""
    temperature: float = 0.8
    max_output_tokens: Optional[int] = None


class VoicePipeline(Protocol):
    """
    STT -> LLM -> TTS behind one contract. Output audio is always in
    settings.audio_format so the transport can send it unchanged.
    """

    auto_response: bool

    async def start(self, settings: PipelineSettings) -> None: ...

    async def feed_audio(self, frame: AudioFrame) -> None: ...

    async def request_response(self, *, say: Optional[str] = None) -> None: ...

    async def cancel_response(self) -> None: ...

    async def truncate(self, item_id: str, audio_end_ms: int) -> None: ...

    async def restart_stage(self, stage: str) -> None: ...

    def events(self) -> AsyncIterator[PipelineEvent]: ...

    async def stop(self) -> None: ...
