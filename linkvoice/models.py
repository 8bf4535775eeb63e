from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Optional


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"
    USER_SPEAKING = "user_speaking"
    ERROR = "error"
    DISCONNECTED = "disconnected"


ACTIVE_STATES = frozenset(
    {
        SessionState.CONNECTING,
        SessionState.LISTENING,
        SessionState.PROCESSING,
        SessionState.SPEAKING,
        SessionState.USER_SPEAKING,
    }
)


class TransportKind(str, Enum):
    TELEPHONY = "telephony"
    BROWSER = "browser"
    GENERIC = "generic"


class TurnStatus(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    SPEAKING = "speaking"
    DONE = "done"
    CANCELED = "canceled"


AudioEncoding = Literal["g711_ulaw", "pcm16"]


@dataclass(frozen=True, slots=True)
class AudioFrame:
    seq: int
    timestamp_ms: int
    payload: bytes
    encoding: AudioEncoding = "g711_ulaw"
    sample_rate_hz: int = 8000
    speech: bool = False

    def duration_ms(self) -> int:
        bytes_per_sample = 1 if self.encoding == "g711_ulaw" else 2
        samples = len(self.payload) // bytes_per_sample
        return (samples * 1000) // max(1, self.sample_rate_hz)


@dataclass(slots=True)
class TranscriptSegment:
    text: str
    is_final: bool
    start_offset_ms: int = 0
    utterance_id: str = ""


@dataclass(slots=True)
class ResponseTurn:
    turn_id: str
    source_transcript_id: str = ""
    status: TurnStatus = TurnStatus.PENDING
    start_playback_offset_ms: Optional[int] = None
    last_assistant_audio_item_id: Optional[str] = None
    text: str = ""
    audio_ms: int = 0

    def active(self) -> bool:
        return self.status in {TurnStatus.PENDING, TurnStatus.STREAMING, TurnStatus.SPEAKING}


@dataclass(frozen=True, slots=True)
class MarkEvent:
    name: str
    sent_at_inbound_ms: int


@dataclass(frozen=True, slots=True)
class TranscriptRecord:
    thread_id: str
    role: Literal["user", "assistant", "system"]
    content: str
    timestamp: int

    def to_wire(self) -> dict[str, object]:
        return {
            "threadId": self.thread_id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True, slots=True)
class AgentProfile:
    agent_id: str = "default"
    instructions: str = ""
    voice: str = ""
    voice_preference: str = ""
    model: str = ""
    temperature: Optional[float] = None
    max_output_tokens: Optional[int] = None
    welcome_message: str = ""
    apology_message: str = ""
    closing_message: str = ""
    language: str = "en"
    # Realtime service tool definitions (function, file_search, ...).
    tools: tuple[dict[str, Any], ...] = ()


@dataclass(slots=True)
class Session:
    session_id: str
    agent_id: str
    voice: str
    transport_kind: TransportKind
    created_ms: int
    last_activity_ms: int
    state: SessionState = SessionState.IDLE
    call_id: str = ""
    error_cause: str = ""
    turns: list[ResponseTurn] = field(default_factory=list)

    @property
    def thread_id(self) -> str:
        return f"voice_{self.call_id or self.session_id}"

    def age_ms(self, now_ms: int) -> int:
        return max(0, now_ms - self.created_ms)
