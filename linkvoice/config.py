from __future__ import annotations

import os
from dataclasses import dataclass


def _getenv_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _getenv_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _getenv_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw


def _getenv_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


VALID_VOICES = frozenset({"alloy", "ash", "ballad", "coral", "echo", "sage", "shimmer", "verse"})

DEFAULT_APOLOGY = "I apologize, but I encountered an error processing your request."
DEFAULT_CLOSING = "It seems you've gone quiet, so I'll end the call now. Goodbye!"
DEFAULT_UNAVAILABLE = "The voice service is unavailable right now. Please try again later."


@dataclass(frozen=True, slots=True)
class VoiceConfig:
    # Pipeline back-end
    pipeline_mode: str = "realtime"  # realtime | cascade
    stt_provider: str = "fake"  # fake | deepgram
    llm_provider: str = "fake"  # fake | openai | gemini
    tts_provider: str = "fake"  # fake | openai
    provisioner: str = "static"  # static | openai | http

    # Queues
    inbound_queue_max: int = 256
    outbound_queue_max: int = 2048
    audio_queue_max: int = 64
    event_queue_max: int = 256
    transcript_queue_max: int = 128

    # Timers
    silence_timeout_ms: int = 15_000
    max_call_duration_ms: int = 600_000
    speech_debounce_ms: int = 800
    level_sample_interval_ms: int = 100
    closing_timeout_ms: int = 8000
    # How long a browser session that ended on its own stays registered for a reconnect.
    reconnect_window_ms: int = 30_000

    # Local activity detection (cascade / browser level sampling)
    activity_sensitivity: float = 0.5
    activity_hangover_frames: int = 8
    stt_min_partial_chars: int = 3
    stage_retry_limit: int = 1

    # Telephony socket
    ws_max_frame_bytes: int = 262_144
    ws_write_timeout_ms: int = 400
    ws_close_on_write_timeout: bool = True
    ws_max_consecutive_write_timeouts: int = 3
    mark_name: str = "responsePart"
    structured_logging: bool = False
    log_level: str = "INFO"

    # Agent defaults (overridden per session by AgentProfile)
    default_voice: str = "alloy"
    default_instructions: str = "You are a helpful, concise voice assistant."
    welcome_message: str = ""
    apology_message: str = DEFAULT_APOLOGY
    closing_message: str = DEFAULT_CLOSING
    unavailable_message: str = DEFAULT_UNAVAILABLE
    temperature: float = 0.8
    max_output_tokens: int = 0

    # Realtime AI service
    openai_api_key: str = ""
    realtime_url: str = "wss://api.openai.com/v1/realtime"
    realtime_model: str = "gpt-4o-mini-realtime-preview-2024-12-17"
    realtime_sessions_url: str = "https://api.openai.com/v1/realtime/sessions"
    vad_threshold: float = 0.5
    vad_prefix_padding_ms: int = 300
    vad_silence_duration_ms: int = 500
    transcription_model: str = "whisper-1"

    # Cascade stages
    deepgram_api_key: str = ""
    deepgram_url: str = "wss://api.deepgram.com/v1/listen"
    deepgram_model: str = "nova-2"
    openai_model: str = "gpt-4o-mini"
    openai_tts_model: str = "tts-1"
    openai_timeout_ms: int = 8000
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.0-flash"

    # Provisioning
    provision_url: str = ""
    provision_timeout_ms: int = 5000
    provision_poll_max_attempts: int = 6
    provision_poll_base_ms: int = 250
    provision_poll_max_ms: int = 4000

    # Transcript persistence
    transcript_sink_url: str = ""
    transcript_sink_timeout_ms: int = 3000

    @staticmethod
    def from_env() -> "VoiceConfig":
        pipeline_mode = _getenv_str("VOICE_PIPELINE_MODE", "realtime").strip().lower()
        if pipeline_mode not in {"realtime", "cascade"}:
            pipeline_mode = "realtime"
        stt_provider = _getenv_str("STT_PROVIDER", "fake").strip().lower()
        if stt_provider not in {"fake", "deepgram"}:
            stt_provider = "fake"
        llm_provider = _getenv_str("LLM_PROVIDER", "fake").strip().lower()
        if llm_provider not in {"fake", "openai", "gemini"}:
            llm_provider = "fake"
        tts_provider = _getenv_str("TTS_PROVIDER", "fake").strip().lower()
        if tts_provider not in {"fake", "openai"}:
            tts_provider = "fake"
        provisioner = _getenv_str("VOICE_PROVISIONER", "static").strip().lower()
        if provisioner not in {"static", "openai", "http"}:
            provisioner = "static"
        default_voice = _getenv_str("VOICE_DEFAULT_VOICE", "alloy").strip().lower()
        if default_voice not in VALID_VOICES:
            default_voice = "alloy"
        log_level = _getenv_str("VOICE_LOG_LEVEL", "INFO").strip().upper()
        if log_level not in {"DEBUG", "INFO", "WARNING", "ERROR"}:
            log_level = "INFO"

        return VoiceConfig(
            pipeline_mode=pipeline_mode,
            stt_provider=stt_provider,
            llm_provider=llm_provider,
            tts_provider=tts_provider,
            provisioner=provisioner,
            inbound_queue_max=_getenv_int("VOICE_INBOUND_QUEUE_MAX", 256),
            outbound_queue_max=_getenv_int("VOICE_OUTBOUND_QUEUE_MAX", 2048),
            audio_queue_max=_getenv_int("VOICE_AUDIO_QUEUE_MAX", 64),
            event_queue_max=_getenv_int("VOICE_EVENT_QUEUE_MAX", 256),
            transcript_queue_max=_getenv_int("VOICE_TRANSCRIPT_QUEUE_MAX", 128),
            silence_timeout_ms=_getenv_int("VOICE_SILENCE_TIMEOUT_MS", 15_000),
            max_call_duration_ms=_getenv_int("VOICE_MAX_CALL_DURATION_MS", 600_000),
            speech_debounce_ms=_getenv_int("VOICE_SPEECH_DEBOUNCE_MS", 800),
            level_sample_interval_ms=_getenv_int("VOICE_LEVEL_SAMPLE_INTERVAL_MS", 100),
            closing_timeout_ms=_getenv_int("VOICE_CLOSING_TIMEOUT_MS", 8000),
            reconnect_window_ms=max(0, _getenv_int("VOICE_RECONNECT_WINDOW_MS", 30_000)),
            activity_sensitivity=max(0.0, min(1.0, _getenv_float("VOICE_ACTIVITY_SENSITIVITY", 0.5))),
            activity_hangover_frames=_getenv_int("VOICE_ACTIVITY_HANGOVER_FRAMES", 8),
            stt_min_partial_chars=_getenv_int("STT_MIN_PARTIAL_CHARS", 3),
            stage_retry_limit=max(0, _getenv_int("VOICE_STAGE_RETRY_LIMIT", 1)),
            ws_max_frame_bytes=_getenv_int("WS_MAX_FRAME_BYTES", 262_144),
            ws_write_timeout_ms=_getenv_int("WS_WRITE_TIMEOUT_MS", 400),
            ws_close_on_write_timeout=_getenv_bool("WS_CLOSE_ON_WRITE_TIMEOUT", True),
            ws_max_consecutive_write_timeouts=_getenv_int("WS_MAX_CONSECUTIVE_WRITE_TIMEOUTS", 3),
            mark_name=_getenv_str("VOICE_MARK_NAME", "responsePart"),
            structured_logging=_getenv_bool("VOICE_STRUCTURED_LOGGING", False),
            log_level=log_level,
            default_voice=default_voice,
            default_instructions=_getenv_str(
                "VOICE_DEFAULT_INSTRUCTIONS", "You are a helpful, concise voice assistant."
            ),
            welcome_message=_getenv_str("VOICE_WELCOME_MESSAGE", ""),
            apology_message=_getenv_str("VOICE_APOLOGY_MESSAGE", DEFAULT_APOLOGY),
            closing_message=_getenv_str("VOICE_CLOSING_MESSAGE", DEFAULT_CLOSING),
            unavailable_message=_getenv_str("VOICE_UNAVAILABLE_MESSAGE", DEFAULT_UNAVAILABLE),
            temperature=_getenv_float("VOICE_TEMPERATURE", 0.8),
            max_output_tokens=max(0, _getenv_int("VOICE_MAX_OUTPUT_TOKENS", 0)),
            openai_api_key=_getenv_str("OPENAI_API_KEY", ""),
            realtime_url=_getenv_str("OPENAI_REALTIME_URL", "wss://api.openai.com/v1/realtime"),
            realtime_model=_getenv_str(
                "OPENAI_REALTIME_MODEL", "gpt-4o-mini-realtime-preview-2024-12-17"
            ),
            realtime_sessions_url=_getenv_str(
                "OPENAI_REALTIME_SESSIONS_URL", "https://api.openai.com/v1/realtime/sessions"
            ),
            vad_threshold=_getenv_float("OPENAI_VAD_THRESHOLD", 0.5),
            vad_prefix_padding_ms=_getenv_int("OPENAI_VAD_PREFIX_PADDING_MS", 300),
            vad_silence_duration_ms=_getenv_int("OPENAI_VAD_SILENCE_DURATION_MS", 500),
            transcription_model=_getenv_str("OPENAI_TRANSCRIPTION_MODEL", "whisper-1"),
            deepgram_api_key=_getenv_str("DEEPGRAM_API_KEY", ""),
            deepgram_url=_getenv_str("DEEPGRAM_URL", "wss://api.deepgram.com/v1/listen"),
            deepgram_model=_getenv_str("DEEPGRAM_MODEL", "nova-2"),
            openai_model=_getenv_str("OPENAI_MODEL", "gpt-4o-mini"),
            openai_tts_model=_getenv_str("OPENAI_TTS_MODEL", "tts-1"),
            openai_timeout_ms=_getenv_int("OPENAI_TIMEOUT_MS", 8000),
            gemini_api_key=_getenv_str("GEMINI_API_KEY", ""),
            gemini_model=_getenv_str("GEMINI_MODEL", "gemini-2.0-flash"),
            provision_url=_getenv_str("VOICE_PROVISION_URL", ""),
            provision_timeout_ms=_getenv_int("VOICE_PROVISION_TIMEOUT_MS", 5000),
            provision_poll_max_attempts=max(1, _getenv_int("VOICE_PROVISION_POLL_MAX_ATTEMPTS", 6)),
            provision_poll_base_ms=_getenv_int("VOICE_PROVISION_POLL_BASE_MS", 250),
            provision_poll_max_ms=_getenv_int("VOICE_PROVISION_POLL_MAX_MS", 4000),
            transcript_sink_url=_getenv_str("VOICE_TRANSCRIPT_SINK_URL", ""),
            transcript_sink_timeout_ms=_getenv_int("VOICE_TRANSCRIPT_SINK_TIMEOUT_MS", 3000),
        )
