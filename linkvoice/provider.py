from __future__ import annotations

import os
from typing import Any

from .cascade import CascadePipeline
from .clock import Clock
from .config import VoiceConfig
from .llm_client import FakeLLMClient, GeminiLLMClient, LLMClient, OpenAILLMClient
from .pipeline import VoicePipeline
from .provisioning import (
    HttpCredentialProvisioner,
    OpenAIRealtimeProvisioner,
    SessionProvisioner,
    StaticProvisioner,
)
from .realtime_client import RealtimePipeline
from .stages import DeepgramSTT, FakeSTT, FakeTTS, OpenAITTS, STTStage, TTSStage
from .transcripts import HttpTranscriptSink, MemoryTranscriptSink, TranscriptSink


def build_llm_client(cfg: VoiceConfig, *, clock: Clock) -> LLMClient:
    if cfg.llm_provider == "gemini":
        return GeminiLLMClient(
            api_key=cfg.gemini_api_key or os.getenv("GEMINI_API_KEY", ""),
            model=cfg.gemini_model,
            max_tokens=cfg.max_output_tokens or 150,
        )
    if cfg.llm_provider == "openai":
        return OpenAILLMClient(
            api_key=cfg.openai_api_key or os.getenv("OPENAI_API_KEY", ""),
            model=cfg.openai_model,
            max_tokens=cfg.max_output_tokens or 150,
            temperature=cfg.temperature,
            timeout_ms=cfg.openai_timeout_ms,
        )
    return FakeLLMClient(clock=clock, tokens=["Sure.", " How", " can", " I", " help?"])


def build_stt(cfg: VoiceConfig) -> STTStage:
    if cfg.stt_provider == "deepgram":
        return DeepgramSTT(
            api_key=cfg.deepgram_api_key or os.getenv("DEEPGRAM_API_KEY", ""),
            url=cfg.deepgram_url,
            model=cfg.deepgram_model,
            result_queue_max=cfg.transcript_queue_max,
        )
    return FakeSTT()


def build_tts(cfg: VoiceConfig) -> TTSStage:
    if cfg.tts_provider == "openai":
        return OpenAITTS(api_key=cfg.openai_api_key or None, model=cfg.openai_tts_model)
    return FakeTTS()


def build_pipeline(cfg: VoiceConfig, *, clock: Clock, metrics: Any, session_id: str = "") -> VoicePipeline:
    if cfg.pipeline_mode == "cascade":
        return CascadePipeline(
            stt=build_stt(cfg),
            llm=build_llm_client(cfg, clock=clock),
            tts=build_tts(cfg),
            clock=clock,
            metrics=metrics,
            min_partial_chars=cfg.stt_min_partial_chars,
            activity_sensitivity=cfg.activity_sensitivity,
            activity_hangover_frames=cfg.activity_hangover_frames,
            event_queue_max=cfg.event_queue_max,
            session_id=session_id,
        )
    return RealtimePipeline(
        url=cfg.realtime_url,
        metrics=metrics,
        vad_threshold=cfg.vad_threshold,
        vad_prefix_padding_ms=cfg.vad_prefix_padding_ms,
        vad_silence_duration_ms=cfg.vad_silence_duration_ms,
        transcription_model=cfg.transcription_model,
        event_queue_max=cfg.event_queue_max,
        session_id=session_id,
    )


def build_provisioner(cfg: VoiceConfig, *, clock: Clock) -> SessionProvisioner:
    if cfg.provisioner == "openai":
        return OpenAIRealtimeProvisioner(
            api_key=cfg.openai_api_key,
            url=cfg.realtime_sessions_url,
            model=cfg.realtime_model,
            clock=clock,
            vad_threshold=cfg.vad_threshold,
            vad_prefix_padding_ms=cfg.vad_prefix_padding_ms,
            vad_silence_duration_ms=cfg.vad_silence_duration_ms,
            transcription_model=cfg.transcription_model,
            timeout_ms=cfg.provision_timeout_ms,
        )
    if cfg.provisioner == "http" and cfg.provision_url:
        return HttpCredentialProvisioner(
            url=cfg.provision_url,
            clock=clock,
            timeout_ms=cfg.provision_timeout_ms,
            poll_base_ms=cfg.provision_poll_base_ms,
            poll_max_ms=cfg.provision_poll_max_ms,
            poll_max_attempts=cfg.provision_poll_max_attempts,
        )
    return StaticProvisioner(api_key=cfg.openai_api_key, model=cfg.realtime_model)


def build_transcript_sink(cfg: VoiceConfig) -> TranscriptSink:
    if cfg.transcript_sink_url:
        return HttpTranscriptSink(url=cfg.transcript_sink_url, timeout_ms=cfg.transcript_sink_timeout_ms)
    return MemoryTranscriptSink()
