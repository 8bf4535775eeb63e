from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Optional

from .audio import ActivityDetector, normalized_level, ulaw_to_pcm16
from .bounded_queue import BoundedDequeQueue, QueueClosed
from .cascade import truncate_text
from .clock import Clock
from .config import VoiceConfig
from .errors import ProvisioningError, StageError, TransportError, VoiceError
from .events import SessionEventStream
from .interruption import InterruptionController
from .logs import get_logger
from .metrics import GLOBAL_PROM, VOICE
from .models import (
    AgentProfile,
    AudioFrame,
    ResponseTurn,
    Session,
    SessionState,
    TranscriptRecord,
    TurnStatus,
)
from .pipeline import (
    AudioBufferDrained,
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
    VoicePipeline,
)
from .provisioning import SessionProvisioner, resolve_voice
from .relay import AudioRelay
from .transcripts import TranscriptWriter
from .transport import (
    ControlRequest,
    InboundAudio,
    MarkAck,
    TransportAdapter,
    TransportClosed,
    TransportConfig,
    TransportFailed,
    TransportStarted,
    TransportStopped,
)
from .turn_fsm import TurnStateMachine, can_transition


S = SessionState


# Actor inbox items produced by the session's own timers and tasks.


@dataclass(frozen=True, slots=True)
class _Connected:
    settings: PipelineSettings


@dataclass(frozen=True, slots=True)
class _ConnectFailed:
    error: VoiceError


@dataclass(frozen=True, slots=True)
class _SilenceCheck:
    gen: int


@dataclass(frozen=True, slots=True)
class _DebounceExpired:
    gen: int


@dataclass(frozen=True, slots=True)
class _CallDurationExceeded:
    pass


@dataclass(frozen=True, slots=True)
class _ClosingDeadline:
    pass


@dataclass(frozen=True, slots=True)
class _LevelTick:
    pass


@dataclass(frozen=True, slots=True)
class StopRequested:
    reason: str = "stop"


@dataclass(frozen=True, slots=True)
class ResponseRequested:
    say: Optional[str] = None


def _is_priority(item: Any) -> bool:
    return isinstance(item, (StopRequested, TransportClosed, TransportStopped, TransportFailed))


def _is_evictable(item: Any) -> bool:
    return isinstance(item, (InboundAudio, _LevelTick, ResponseText))


class SessionOrchestrator:
    """
    The session actor. One task runs run(); it alone mutates the session:
    state machine, timing counters, mark queue and active turn. Transports,
    the pipeline and timers only post items to the bounded inbox.
    """

    def __init__(
        self,
        *,
        session_id: str,
        config: VoiceConfig,
        profile: AgentProfile,
        transport: TransportAdapter,
        pipeline: VoicePipeline,
        provisioner: SessionProvisioner,
        clock: Clock,
        metrics: Any,
        transcripts: Optional[TranscriptWriter] = None,
        events: Optional[SessionEventStream] = None,
    ) -> None:
        self._cfg = config
        self._profile = profile
        self._transport = transport
        self._pipeline = pipeline
        self._provisioner = provisioner
        self._clock = clock
        self._metrics = metrics
        self._transcripts = transcripts
        now = clock.now_ms()
        self.session = Session(
            session_id=session_id,
            agent_id=profile.agent_id,
            voice=resolve_voice(profile.voice, profile.voice_preference, default=config.default_voice),
            transport_kind=transport.kind,
            created_ms=now,
            last_activity_ms=now,
        )
        self.events = events or SessionEventStream(
            session_id=session_id, metrics=metrics, subscriber_queue_max=config.event_queue_max
        )
        self.relay = AudioRelay(metrics=metrics, frame_queue_max=config.audio_queue_max)
        self.fsm = TurnStateMachine(metrics=metrics)
        self.fsm.on_change(self._on_state_change)
        self._interruption = InterruptionController(
            relay=self.relay,
            transport=transport,
            pipeline=pipeline,
            fsm=self.fsm,
            metrics=metrics,
            session_id=session_id,
        )
        self._detector = ActivityDetector(
            sensitivity=config.activity_sensitivity, hangover_frames=config.activity_hangover_frames
        )
        self._log = get_logger("session", session_id=session_id)
        self._reset_runtime()

    def _reset_runtime(self) -> None:
        self._inbox: BoundedDequeQueue[Any] = BoundedDequeQueue(maxsize=self._cfg.inbound_queue_max)
        self._ended = asyncio.Event()
        self._transport_opened = asyncio.Event()
        self._ending = False
        self._stopped = False
        self._actor_task: Optional[asyncio.Task[Any]] = None
        self._tasks: dict[str, asyncio.Task[Any]] = {}
        self._pipeline_live = False
        self._pipeline_started = False
        self._provision_error: Optional[ProvisioningError] = None
        self._closing: Optional[tuple[SessionState, str]] = None
        self.turn: Optional[ResponseTurn] = None
        self._response_done = False
        self._turn_recorded = False
        self._stage_failures: dict[str, int] = {}
        self._state_changes: list[tuple[SessionState, SessionState, str, int]] = []
        self._silence_gen = 0
        self._debounce_gen = 0
        self._listening_since_ms = 0
        self._last_speech_ms = 0
        self._peak_level = 0.0
        self._turn_started_ms = 0
        self._counted_active = False

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self.fsm.state

    @property
    def transport(self) -> TransportAdapter:
        return self._transport

    @property
    def stopped(self) -> bool:
        return self._stopped

    async def wait_transport_open(self) -> None:
        await self._transport_opened.wait()

    async def wait_ended(self) -> None:
        await self._ended.wait()

    async def request_response(self, *, say: Optional[str] = None) -> bool:
        return await self._post(ResponseRequested(say=say))

    async def run(self) -> None:
        """Drive the session until it disconnects, errors or is stopped."""
        self._actor_task = asyncio.current_task()
        await self._begin_connect()
        try:
            while not self._ended.is_set():
                try:
                    item = await self._inbox.get_prefer(_is_priority)
                except QueueClosed:
                    break
                await self._dispatch(item)
                await self._flush_state_events()
        finally:
            if not self._ended.is_set():
                await self._disconnect(S.DISCONNECTED, "actor_exit")
        if self._provision_error is not None:
            raise self._provision_error

    async def stop(self, *, reason: str = "stop") -> None:
        """Idempotent teardown: timers, transport, pipeline and the event stream."""
        if self._stopped:
            return
        actor = self._actor_task
        if actor is not None and not actor.done() and asyncio.current_task() is not actor:
            if not self._ended.is_set():
                await self._post(StopRequested(reason=reason))
                await self._ended.wait()
        else:
            await self._disconnect(S.DISCONNECTED, reason)
        if self._stopped:
            return
        self._stopped = True
        if self._transcripts is not None:
            await self._transcripts.close()
        await self._provisioner.aclose()
        await self.events.publish("closed", self._clock.now_ms(), reason=reason, state=self.state.value)
        await self.events.close()

    async def reconnect(self, transport: TransportAdapter) -> None:
        """
        Re-arm a disconnected or errored session on a new transport. The
        caller then awaits run() again; credentials are provisioned afresh.
        """
        if self._stopped:
            raise RuntimeError("session already stopped")
        if self.state not in {S.DISCONNECTED, S.ERROR}:
            raise TransportError(f"cannot reconnect from {self.state.value}")
        self._transport = transport
        self._interruption.rebind(transport=transport)
        self.relay.reset_response()
        self.relay.frames.drain_nowait()
        self.relay.latest_inbound_timestamp_ms = 0
        self._detector.reset()
        self.session.error_cause = ""
        self.session.transport_kind = transport.kind
        self._reset_runtime()

    # ------------------------------------------------------------------
    # Inbox plumbing
    # ------------------------------------------------------------------

    async def _post(self, item: Any) -> bool:
        ok = await self._inbox.put(item, evict=_is_evictable)
        if not ok and not self._inbox.closed():
            self._metrics.inc(VOICE["inbound_queue_dropped_total"], 1)
        return ok

    def _spawn(self, name: str, coro: Any) -> None:
        old = self._tasks.pop(name, None)
        if old is not None:
            old.cancel()
        self._tasks[name] = asyncio.create_task(coro)

    def _cancel(self, name: str) -> None:
        task = self._tasks.pop(name, None)
        if task is not None:
            task.cancel()

    def _schedule(self, name: str, ms: int, item: Any) -> None:
        async def _fire() -> None:
            await self._clock.sleep_ms(ms)
            await self._post(item)

        self._spawn(name, _fire())

    async def _pump(self, source: AsyncIterator[Any], on_end: Any) -> None:
        async for ev in source:
            await self._post(ev)
        if not self._ending:
            await self._post(on_end)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _begin_connect(self) -> None:
        self.fsm.transition(S.CONNECTING, reason="connect")
        self._metrics.inc(VOICE["sessions_started_total"], 1)
        GLOBAL_PROM.add(VOICE["sessions_active"], 1)
        self._counted_active = True
        try:
            await self._transport.open(
                TransportConfig(
                    session_id=self.session.session_id,
                    mark_name=self._cfg.mark_name,
                    write_timeout_ms=self._cfg.ws_write_timeout_ms,
                    close_on_write_timeout=self._cfg.ws_close_on_write_timeout,
                    max_consecutive_write_timeouts=self._cfg.ws_max_consecutive_write_timeouts,
                    max_frame_bytes=self._cfg.ws_max_frame_bytes,
                )
            )
        except (RuntimeError, OSError) as e:
            self._log.error("transport_open_failed", error=str(e))
            await self._post(TransportFailed(cause=str(e)))
            self._transport_opened.set()
            return
        self._transport_opened.set()
        if self._transcripts is not None:
            self._transcripts.start()
        # Caller audio is captured from here on, before the AI service is ready.
        self._spawn("transport_pump", self._pump(self._transport.events(), TransportClosed("transport_events_ended")))
        self._spawn("connect", self._connect_flow())
        if self._cfg.max_call_duration_ms > 0:
            self._schedule("call_duration", self._cfg.max_call_duration_ms, _CallDurationExceeded())
        if self._cfg.level_sample_interval_ms > 0:
            self._spawn("levels", self._level_loop())
        await self._flush_state_events()

    async def _connect_flow(self) -> None:
        profile = self._profile
        try:
            self._metrics.inc(VOICE["provision_attempts_total"], 1)
            creds = await self._provisioner.provision(
                session_id=self.session.session_id, profile=profile, voice=self.session.voice
            )
        except ProvisioningError as e:
            self._metrics.inc(VOICE["provision_failed_total"], 1)
            await self._post(_ConnectFailed(e))
            return
        settings = PipelineSettings(
            profile=profile,
            voice=self.session.voice,
            instructions=profile.instructions or self._cfg.default_instructions,
            audio_format=self._transport.audio_format,
            sample_rate_hz=self._transport.sample_rate_hz,
            credential=creds.token,
            model=creds.model or profile.model or self._cfg.realtime_model,
            temperature=profile.temperature if profile.temperature is not None else self._cfg.temperature,
            max_output_tokens=profile.max_output_tokens or self._cfg.max_output_tokens or None,
        )
        # Set before start so a stop that lands mid-start still releases the pipeline.
        self._pipeline_started = True
        try:
            await self._pipeline.start(settings)
        except StageError as e:
            await self._post(_ConnectFailed(e))
            return
        await self._post(_Connected(settings))

    async def _level_loop(self) -> None:
        while True:
            await self._clock.sleep_ms(self._cfg.level_sample_interval_ms)
            await self._post(_LevelTick())

    async def _disconnect(self, final_state: Optional[SessionState], reason: str) -> None:
        """End this connection. final_state None keeps the current state (provisioning failure)."""
        if self._ending:
            return
        self._ending = True
        for name in list(self._tasks):
            self._cancel(name)
        if final_state is not None and self.fsm.state != final_state and can_transition(self.fsm.state, final_state):
            self.fsm.transition(final_state, reason=reason)
        if self.turn is not None and self.turn.active():
            self.turn.status = TurnStatus.CANCELED
            await self._record_assistant(self.turn, heard_ms=self.relay.elapsed_playback_ms())
        await self._flush_state_events()
        safe_reason = "".join(ch if (ch.isalnum() or ch in "._-") else "_" for ch in str(reason))
        self._metrics.inc(f"{VOICE['session_close_reason_total']}.{safe_reason}", 1)
        if self._counted_active:
            GLOBAL_PROM.add(VOICE["sessions_active"], -1)
            self._counted_active = False
        self._pipeline_live = False
        if self._pipeline_started:
            await self._pipeline.stop()
            self._pipeline_started = False
        await self._transport.close(reason=reason)
        self._log.info("session_ended", reason=reason, state=self.fsm.state.value)
        self._ended.set()
        await self._inbox.close()

    # ------------------------------------------------------------------
    # State bookkeeping
    # ------------------------------------------------------------------

    def _on_state_change(self, old: SessionState, new: SessionState, reason: str) -> None:
        now = self._clock.now_ms()
        self.session.state = new
        self._state_changes.append((old, new, reason, now))
        if new == S.LISTENING:
            self._listening_since_ms = now
            self._arm_silence(self._cfg.silence_timeout_ms)
        else:
            self._cancel("silence")
        if new != S.USER_SPEAKING:
            self._cancel("debounce")

    async def _flush_state_events(self) -> None:
        changes, self._state_changes = self._state_changes, []
        for old, new, reason, at in changes:
            data: dict[str, Any] = {"state": new.value, "previous": old.value, "reason": reason}
            if new == S.ERROR and self.session.error_cause:
                data["cause"] = self.session.error_cause
            await self.events.publish("state", at, **data)
            if new not in {S.DISCONNECTED, S.ERROR}:
                await self._transport.send_control({"type": "session.state", **data})
            self._log.info("state_changed", previous=old.value, state=new.value, reason=reason)

    def _arm_silence(self, ms: int) -> None:
        if self._cfg.silence_timeout_ms <= 0 or self._closing is not None:
            return
        self._silence_gen += 1
        self._schedule("silence", max(1, ms), _SilenceCheck(self._silence_gen))

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch(self, item: Any) -> None:
        if isinstance(item, InboundAudio):
            await self._on_inbound_audio(item.frame)
        elif isinstance(item, MarkAck):
            self.relay.ack_mark()
            await self._maybe_finish_turn()
        elif isinstance(item, (SpeechStarted, SpeechStopped, TranscriptUpdate)):
            await self._on_speech_event(item)
        elif isinstance(item, (ResponseStarted, ResponseAudio, ResponseText, ResponseDone, AudioBufferDrained)):
            await self._on_response_event(item)
        elif isinstance(item, StageFailed):
            await self._on_stage_error(item.error)
        elif isinstance(item, _Connected):
            await self._on_connected(item)
        elif isinstance(item, _ConnectFailed):
            await self._on_connect_failed(item.error)
        elif isinstance(item, TransportStarted):
            self.session.call_id = item.call_id or self.session.call_id
            self._log.info("transport_started", stream_id=item.stream_id, call_id=item.call_id)
        elif isinstance(item, _SilenceCheck):
            await self._on_silence_check(item)
        elif isinstance(item, _DebounceExpired):
            if item.gen == self._debounce_gen and self.fsm.state == S.USER_SPEAKING:
                self.fsm.transition(S.LISTENING, reason="speech_debounce")
        elif isinstance(item, _CallDurationExceeded):
            self._log.info("call_duration_exceeded", max_ms=self._cfg.max_call_duration_ms)
            await self._begin_closing(self._closing_message(), S.DISCONNECTED, "max_duration")
        elif isinstance(item, _ClosingDeadline):
            if self._closing is not None:
                await self._finalize_closing()
        elif isinstance(item, _LevelTick):
            if self._pipeline_live:
                await self.events.publish("level", self._clock.now_ms(), level=round(self._peak_level, 3))
            self._peak_level = 0.0
        elif isinstance(item, ResponseRequested):
            await self._start_response(say=item.say)
        elif isinstance(item, ControlRequest):
            await self._on_control(item)
        elif isinstance(item, TransportFailed):
            self.session.error_cause = item.cause
            await self.events.publish("error", self._clock.now_ms(), source="transport", message=item.cause, fatal=True)
            await self._disconnect(S.ERROR, "transport_failed")
        elif isinstance(item, (TransportStopped, TransportClosed)):
            await self._disconnect(S.DISCONNECTED, item.reason)
        elif isinstance(item, StopRequested):
            await self._disconnect(S.DISCONNECTED, item.reason)
        elif isinstance(item, PipelineReady):
            return

    async def _on_connected(self, item: _Connected) -> None:
        self._pipeline_started = True
        self._pipeline_live = True
        self._spawn(
            "pipeline_pump",
            self._pump(self._pipeline.events(), StageFailed(StageError("pipeline", "event stream ended"))),
        )
        self.fsm.transition(S.LISTENING, reason="connected")
        self._log.info("pipeline_connected", voice=item.settings.voice, format=item.settings.audio_format)
        for frame in self.relay.frames.drain_nowait():
            if not await self._feed(frame):
                return
        greeting = self._profile.welcome_message or self._cfg.welcome_message
        if greeting:
            await self._start_response(say=greeting)

    async def _on_connect_failed(self, error: VoiceError) -> None:
        if isinstance(error, ProvisioningError):
            self._provision_error = error
            await self.events.publish(
                "error",
                self._clock.now_ms(),
                source="provisioning",
                message=self._cfg.unavailable_message,
                fatal=True,
            )
            self._log.error("provisioning_failed", error=str(error))
            await self._disconnect(None, "provisioning_failed")
            return
        self._pipeline_started = True
        self.session.error_cause = error.cause
        await self.events.publish("error", self._clock.now_ms(), source=error.kind, message=str(error), fatal=True)
        await self._disconnect(S.ERROR, f"{error.kind}_connect_failed")

    async def _on_control(self, item: ControlRequest) -> None:
        if item.action == "stop":
            await self._disconnect(S.DISCONNECTED, "client_stop")
        elif item.action == "interrupt":
            await self._barge_in()
        elif item.action == "say" and item.text:
            await self._start_response(say=item.text)

    # ------------------------------------------------------------------
    # Audio in
    # ------------------------------------------------------------------

    async def _on_inbound_audio(self, frame: AudioFrame) -> None:
        now = self._clock.now_ms()
        self.session.last_activity_ms = now
        pcm = ulaw_to_pcm16(frame.payload) if frame.encoding == "g711_ulaw" else frame.payload
        speech = self._detector.is_speech(pcm)
        self._peak_level = max(self._peak_level, normalized_level(pcm))
        if speech:
            self._last_speech_ms = now
        await self.relay.ingest(replace(frame, speech=speech))
        if not self._pipeline_live:
            return
        for queued in self.relay.frames.drain_nowait():
            if not await self._feed(queued):
                return

    async def _feed(self, frame: AudioFrame) -> bool:
        try:
            await self._pipeline.feed_audio(frame)
            return True
        except StageError as e:
            await self._on_stage_error(e)
            return False

    async def _on_silence_check(self, item: _SilenceCheck) -> None:
        if item.gen != self._silence_gen or self.fsm.state != S.LISTENING:
            return
        timeout = self._cfg.silence_timeout_ms
        quiet_for = self._clock.now_ms() - max(self._listening_since_ms, self._last_speech_ms)
        if quiet_for < timeout:
            self._arm_silence(timeout - quiet_for)
            return
        self._log.info("silence_timeout", quiet_ms=quiet_for)
        await self._begin_closing(self._closing_message(), S.DISCONNECTED, "silence_timeout")

    # ------------------------------------------------------------------
    # Speech and transcripts
    # ------------------------------------------------------------------

    async def _on_speech_event(self, item: Any) -> None:
        state = self.fsm.state
        if isinstance(item, SpeechStarted):
            self._last_speech_ms = self._clock.now_ms()
            if self._closing is not None:
                return
            if state == S.SPEAKING:
                await self._barge_in(detected_at_ms=item.frame_timestamp_ms)
            elif state == S.LISTENING:
                self.fsm.transition(S.USER_SPEAKING, reason="speech_started")
            elif state == S.PROCESSING:
                await self._abandon_turn(reason="speech_during_processing")
                self.fsm.transition(S.USER_SPEAKING, reason="speech_started")
            self._debounce_gen += 1
            self._cancel("debounce")
        elif isinstance(item, SpeechStopped):
            if state == S.USER_SPEAKING:
                self._debounce_gen += 1
                self._schedule("debounce", self._cfg.speech_debounce_ms, _DebounceExpired(self._debounce_gen))
        elif isinstance(item, TranscriptUpdate):
            seg = item.segment
            await self.events.publish(
                "transcript",
                self._clock.now_ms(),
                role="user",
                text=seg.text,
                isFinal=seg.is_final,
                utteranceId=seg.utterance_id,
            )
            await self._transport.send_control(
                {"type": "transcript", "role": "user", "text": seg.text, "isFinal": seg.is_final}
            )
            if not seg.is_final or not seg.text:
                return
            await self._record("user", seg.text)
            if self._closing is not None:
                return
            if self._pipeline.auto_response:
                if state == S.USER_SPEAKING:
                    self.fsm.transition(S.PROCESSING, reason="final_transcript")
            elif state in {S.USER_SPEAKING, S.LISTENING}:
                await self._start_response(source_id=seg.utterance_id)

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    async def _start_response(self, *, say: Optional[str] = None, source_id: str = "") -> bool:
        if self.turn is not None and self.turn.active():
            self._metrics.inc(VOICE["response_rejected_active_total"], 1)
            self._log.info("response_rejected", reason="turn_active", turn_id=self.turn.turn_id)
            return False
        if self.fsm.state not in {S.LISTENING, S.USER_SPEAKING}:
            self._metrics.inc(VOICE["response_rejected_active_total"], 1)
            return False
        self.turn = ResponseTurn(turn_id=uuid.uuid4().hex[:12], source_transcript_id=source_id)
        self._turn_started_ms = self._clock.now_ms()
        self._response_done = False
        self._turn_recorded = False
        self.fsm.transition(S.PROCESSING, reason="scripted" if say else "response_requested")
        try:
            await self._pipeline.request_response(say=say)
        except StageError as e:
            self.turn.status = TurnStatus.CANCELED
            if self._closing is not None:
                self._log.info("closing_message_failed", error=str(e))
                await self._finalize_closing()
                return False
            await self._on_stage_error(e)
            return False
        return True

    async def _on_response_event(self, item: Any) -> None:
        if isinstance(item, ResponseStarted):
            turn = self.turn
            if turn is None or not turn.active() or self._response_done:
                if self._closing is not None:
                    return
                if self.fsm.state == S.SPEAKING:
                    # A new response supersedes the one still draining at the far end.
                    await self._finish_turn()
                # The service started a response on its own (server-side turn detection).
                turn = self.turn = ResponseTurn(turn_id=uuid.uuid4().hex[:12])
                self._turn_started_ms = self._clock.now_ms()
                self._response_done = False
                self._turn_recorded = False
            if turn.status != TurnStatus.PENDING:
                return
            turn.status = TurnStatus.STREAMING
            if self.fsm.state in {S.LISTENING, S.USER_SPEAKING}:
                self.fsm.transition(S.PROCESSING, reason="response_started")
            await self.events.publish("turn", self._clock.now_ms(), status="streaming", turnId=turn.turn_id)
        elif isinstance(item, ResponseAudio):
            turn = self.turn
            if turn is None or turn.status not in {TurnStatus.STREAMING, TurnStatus.SPEAKING}:
                self._metrics.inc(VOICE["stale_audio_dropped_total"], 1)
                return
            if self.relay.note_outbound(item.item_id):
                turn.start_playback_offset_ms = self.relay.response_start_timestamp_ms
                self._metrics.observe(VOICE["turn_first_audio_ms"], self._clock.now_ms() - self._turn_started_ms)
                turn.status = TurnStatus.SPEAKING
                if self.fsm.state == S.PROCESSING:
                    self.fsm.transition(S.SPEAKING, reason="first_audio")
            turn.last_assistant_audio_item_id = item.item_id
            turn.audio_ms += self._payload_ms(item.payload)
            await self._transport.send_audio(item.payload)
            self.relay.push_mark(self._cfg.mark_name)
            await self._transport.send_mark(self._cfg.mark_name)
        elif isinstance(item, ResponseText):
            if self.turn is not None and self.turn.active():
                self.turn.text += item.delta
                await self.events.publish("response_text", self._clock.now_ms(), delta=item.delta, turnId=self.turn.turn_id)
        elif isinstance(item, ResponseDone):
            turn = self.turn
            if turn is None:
                return
            if item.text:
                turn.text = item.text
            self._response_done = True
            if item.canceled and turn.active():
                turn.status = TurnStatus.CANCELED
            if self.fsm.state == S.PROCESSING:
                # Nothing was played: hand the floor straight back.
                await self._finish_turn()
                return
            await self._maybe_finish_turn()
        elif isinstance(item, AudioBufferDrained):
            await self._maybe_finish_turn()

    def _payload_ms(self, payload: bytes) -> int:
        width = 1 if self._transport.audio_format == "g711_ulaw" else 2
        return (len(payload) * 1000) // (width * max(1, self._transport.sample_rate_hz))

    async def _maybe_finish_turn(self) -> None:
        if self.fsm.state != S.SPEAKING or not self._response_done:
            return
        # Speaking ends only after the far end has played every queued chunk.
        if not self.relay.playback_drained():
            return
        await self._finish_turn()

    async def _finish_turn(self) -> None:
        turn = self.turn
        if turn is not None:
            if turn.status != TurnStatus.CANCELED:
                turn.status = TurnStatus.DONE
                self._stage_failures.clear()
                self._metrics.inc(VOICE["turns_completed_total"], 1)
            await self._record_assistant(turn, heard_ms=None)
            self.session.turns.append(turn)
            await self.events.publish("turn", self._clock.now_ms(), status=turn.status.value, turnId=turn.turn_id)
        self.relay.reset_response()
        self._response_done = False
        if self._closing is not None:
            await self._finalize_closing()
            return
        if self.fsm.state in {S.SPEAKING, S.PROCESSING}:
            self.fsm.transition(S.LISTENING, reason="turn_complete")

    async def _barge_in(self, detected_at_ms: Optional[int] = None) -> None:
        turn = self.turn
        active = turn is not None and turn.status in {TurnStatus.STREAMING, TurnStatus.SPEAKING} and not self._response_done
        result = await self._interruption.interrupt(response_active=active, detected_at_ms=detected_at_ms)
        if result is None or turn is None:
            return
        turn.status = TurnStatus.CANCELED
        await self._record_assistant(turn, heard_ms=result.elapsed_ms)
        self.session.turns.append(turn)
        self._response_done = False
        await self.events.publish(
            "turn", self._clock.now_ms(), status="canceled", turnId=turn.turn_id, audioEndMs=result.elapsed_ms
        )

    async def _abandon_turn(self, *, reason: str) -> None:
        turn = self.turn
        if turn is None or not turn.active():
            return
        turn.status = TurnStatus.CANCELED
        try:
            await self._pipeline.cancel_response()
        except StageError as e:
            self._log.info("cancel_failed", error=str(e))
        heard = self.relay.elapsed_playback_ms()
        if self.relay.response_start_timestamp_ms is not None:
            await self._transport.clear()
        self.relay.reset_response()
        await self._record_assistant(turn, heard_ms=heard)
        self.session.turns.append(turn)
        self._response_done = False
        self._log.info("turn_abandoned", reason=reason, turn_id=turn.turn_id)

    # ------------------------------------------------------------------
    # Errors and closing
    # ------------------------------------------------------------------

    async def _on_stage_error(self, err: StageError) -> None:
        self._metrics.inc(f"{VOICE['stage_error_total']}.{err.stage}", 1)
        if self._ending:
            return
        if self._closing is not None:
            await self._finalize_closing()
            return
        failures = self._stage_failures.get(err.stage, 0)
        fatal = failures >= self._cfg.stage_retry_limit
        await self.events.publish(
            "error", self._clock.now_ms(), source="stage", stage=err.stage, message=str(err), fatal=fatal
        )
        if fatal:
            await self._fail(err)
            return
        self._stage_failures[err.stage] = failures + 1
        self._log.warning("stage_failed", stage=err.stage, error=str(err), attempt=failures + 1)
        await self._abandon_turn(reason="stage_error")
        try:
            await self._pipeline.restart_stage(err.stage)
            self._metrics.inc(VOICE["stage_restart_total"], 1)
        except StageError as e:
            await self._fail(e)
            return
        if self.fsm.state in {S.PROCESSING, S.SPEAKING, S.USER_SPEAKING}:
            self.fsm.transition(S.LISTENING, reason="stage_restarted")

    async def _fail(self, err: VoiceError) -> None:
        self.session.error_cause = err.cause or str(err)
        self._log.error("session_failed", kind=err.kind, error=str(err))
        apology = self._profile.apology_message or self._cfg.apology_message
        await self._begin_closing(apology, S.ERROR, f"{err.kind}_error")

    def _closing_message(self) -> str:
        return self._profile.closing_message or self._cfg.closing_message

    async def _begin_closing(self, message: str, final_state: SessionState, reason: str) -> None:
        """Say a last message where an audio channel is still open, then end in final_state."""
        if self._closing is not None or self._ending:
            return
        self._closing = (final_state, reason)
        self._cancel("silence")
        self._cancel("call_duration")
        if not message or not self._pipeline_live:
            await self._finalize_closing()
            return
        if self.turn is not None and self.turn.active():
            await self._abandon_turn(reason=reason)
        if self.fsm.state in {S.PROCESSING, S.SPEAKING, S.USER_SPEAKING}:
            self.fsm.transition(S.LISTENING, reason=reason)
        self._schedule("closing", self._cfg.closing_timeout_ms, _ClosingDeadline())
        await self._start_response(say=message)

    async def _finalize_closing(self) -> None:
        if self._closing is None:
            return
        final_state, reason = self._closing
        await self._disconnect(final_state, reason)

    # ------------------------------------------------------------------
    # Transcripts
    # ------------------------------------------------------------------

    async def _record(self, role: str, content: str) -> None:
        if self._transcripts is None or not content.strip():
            return
        await self._transcripts.submit(
            TranscriptRecord(
                thread_id=self.session.thread_id,
                role=role,  # type: ignore[arg-type]
                content=content.strip(),
                timestamp=self._clock.wall_ms(),
            )
        )

    async def _record_assistant(self, turn: ResponseTurn, *, heard_ms: Optional[int]) -> None:
        if self._turn_recorded:
            return
        self._turn_recorded = True
        text = turn.text.strip()
        if heard_ms is not None:
            text = truncate_text(text, played_ms=heard_ms, total_ms=turn.audio_ms)
        await self._record("assistant", text)
