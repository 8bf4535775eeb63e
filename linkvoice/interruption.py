from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from .errors import StageError, TruncationError
from .logs import get_logger
from .metrics import VOICE
from .models import SessionState
from .pipeline import VoicePipeline
from .relay import AudioRelay
from .transport import TransportAdapter
from .turn_fsm import TurnStateMachine


@dataclass(frozen=True, slots=True)
class Interruption:
    elapsed_ms: int
    item_id: Optional[str]
    truncated: bool


class InterruptionController:
    """
    Barge-in: the caller started talking over synthesized speech. The
    assistant item is truncated at what was actually heard, queued audio is
    flushed at the far end, and the turn passes to the caller.
    """

    def __init__(
        self,
        *,
        relay: AudioRelay,
        transport: TransportAdapter,
        pipeline: VoicePipeline,
        fsm: TurnStateMachine,
        metrics: Any,
        session_id: str = "",
    ) -> None:
        self._relay = relay
        self._transport = transport
        self._pipeline = pipeline
        self._fsm = fsm
        self._metrics = metrics
        self._log = get_logger("interruption", session_id=session_id)

    def rebind(self, *, transport: TransportAdapter) -> None:
        self._transport = transport

    async def interrupt(
        self, *, response_active: bool, detected_at_ms: Optional[int] = None
    ) -> Optional[Interruption]:
        """
        Returns None when nothing was playing, so there was nothing to interrupt.
        detected_at_ms is the transport stamp of the frame that triggered the
        barge-in; frames relayed after it do not count as heard.
        """
        if self._fsm.state != SessionState.SPEAKING:
            return None

        elapsed = self._relay.elapsed_playback_ms(detected_at_ms)
        item_id = self._relay.last_assistant_item_id
        self._metrics.inc(VOICE["barge_in_total"], 1)

        if response_active:
            try:
                await self._pipeline.cancel_response()
            except StageError as e:
                self._log.info("cancel_failed", error=str(e))

        truncated = False
        if item_id and self._relay.response_start_timestamp_ms is not None:
            try:
                await self._pipeline.truncate(item_id, elapsed)
                truncated = True
                self._metrics.inc(VOICE["truncate_sent_total"], 1)
                self._metrics.observe(VOICE["truncate_audio_end_ms"], elapsed)
            except TruncationError as e:
                self._metrics.inc(VOICE["truncate_failed_total"], 1)
                self._log.warning("truncate_failed", item_id=item_id, error=str(e))

        await self._transport.clear()
        self._relay.reset_response()
        self._fsm.transition(SessionState.USER_SPEAKING, reason="barge_in")
        self._log.info("barge_in", elapsed_ms=elapsed, item_id=item_id, truncated=truncated)
        return Interruption(elapsed_ms=elapsed, item_id=item_id, truncated=truncated)
