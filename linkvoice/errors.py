from __future__ import annotations


class VoiceError(Exception):
    """Base class for session-level failures. Every instance is published on the event stream."""

    kind = "voice"

    def __init__(self, message: str, *, cause: str = "") -> None:
        super().__init__(message)
        self.cause = cause or message


class TransportError(VoiceError):
    """The audio channel to the human is gone. Fatal: the session disconnects."""

    kind = "transport"


class ProvisioningError(VoiceError):
    """Credentials for the AI service could not be obtained. The session never leaves connecting."""

    kind = "provisioning"


class StageError(VoiceError):
    """A recoverable STT, LLM, TTS or realtime-service failure."""

    kind = "stage"

    def __init__(self, stage: str, message: str, *, cause: str = "") -> None:
        super().__init__(f"{stage}: {message}", cause=cause)
        self.stage = stage


class TruncationError(VoiceError):
    kind = "truncation"


class InvalidTransition(VoiceError):
    kind = "state"

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"invalid transition {current} -> {target}")
        self.current = current
        self.target = target
