from __future__ import annotations

import asyncio

from linkvoice.errors import StageError
from linkvoice.interruption import InterruptionController
from linkvoice.metrics import VOICE, Metrics
from linkvoice.models import SessionState
from linkvoice.relay import AudioRelay
from linkvoice.turn_fsm import TurnStateMachine

from tests.harness.voice_harness import ScriptedPipeline


S = SessionState


class ClearRecorder:
    def __init__(self) -> None:
        self.clears = 0

    async def clear(self) -> None:
        self.clears += 1


def _make(state: SessionState = S.SPEAKING) -> tuple[InterruptionController, AudioRelay, ScriptedPipeline, ClearRecorder, TurnStateMachine, Metrics]:
    metrics = Metrics()
    relay = AudioRelay(metrics=metrics)
    pipeline = ScriptedPipeline(auto_response=False)
    transport = ClearRecorder()
    fsm = TurnStateMachine(metrics=metrics, initial=state)
    ctl = InterruptionController(
        relay=relay,
        transport=transport,  # type: ignore[arg-type]
        pipeline=pipeline,
        fsm=fsm,
        metrics=metrics,
        session_id="s1",
    )
    return ctl, relay, pipeline, transport, fsm, metrics


def test_nothing_to_interrupt_unless_speaking() -> None:
    async def _run() -> None:
        ctl, _, pipeline, transport, fsm, metrics = _make(S.LISTENING)
        assert await ctl.interrupt(response_active=True) is None
        assert pipeline.cancels == 0
        assert transport.clears == 0
        assert fsm.state == S.LISTENING
        assert metrics.get(VOICE["barge_in_total"]) == 0

    asyncio.run(_run())


def test_truncates_at_heard_position_and_hands_turn_to_caller() -> None:
    async def _run() -> None:
        ctl, relay, pipeline, transport, fsm, metrics = _make()
        relay.note_inbound(1000)
        relay.note_outbound("item_1")
        relay.push_mark("responsePart")
        relay.note_inbound(1450)

        result = await ctl.interrupt(response_active=True)
        assert result is not None
        assert (result.elapsed_ms, result.item_id, result.truncated) == (450, "item_1", True)
        assert pipeline.cancels == 1
        assert pipeline.truncates == [("item_1", 450)]
        assert transport.clears == 1
        assert fsm.state == S.USER_SPEAKING
        assert relay.response_start_timestamp_ms is None
        assert relay.playback_drained()
        assert metrics.get(VOICE["barge_in_total"]) == 1
        assert metrics.get(VOICE["truncate_sent_total"]) == 1
        assert metrics.get_hist(VOICE["truncate_audio_end_ms"]) == [450]

    asyncio.run(_run())


def test_finished_response_is_not_canceled_but_still_truncated() -> None:
    async def _run() -> None:
        ctl, relay, pipeline, _, _, _ = _make()
        relay.note_outbound("item_2")
        relay.note_inbound(300)
        result = await ctl.interrupt(response_active=False)
        assert result is not None and result.truncated
        assert pipeline.cancels == 0
        assert pipeline.truncates == [("item_2", 300)]

    asyncio.run(_run())


def test_without_item_id_only_clears() -> None:
    async def _run() -> None:
        ctl, relay, pipeline, transport, fsm, metrics = _make()
        relay.note_outbound(None)
        result = await ctl.interrupt(response_active=True)
        assert result is not None
        assert result.item_id is None and not result.truncated
        assert pipeline.truncates == []
        assert transport.clears == 1
        assert fsm.state == S.USER_SPEAKING
        assert metrics.get(VOICE["truncate_sent_total"]) == 0

    asyncio.run(_run())


def test_failed_truncate_and_cancel_do_not_block_barge_in() -> None:
    async def _run() -> None:
        ctl, relay, pipeline, transport, fsm, metrics = _make()
        relay.note_outbound("item_3")
        pipeline.truncate_error = True

        async def cancel_fails() -> None:
            raise StageError("realtime", "not connected")

        pipeline.cancel_response = cancel_fails  # type: ignore[method-assign]
        result = await ctl.interrupt(response_active=True)
        assert result is not None and not result.truncated
        assert transport.clears == 1
        assert fsm.state == S.USER_SPEAKING
        assert metrics.get(VOICE["truncate_failed_total"]) == 1

    asyncio.run(_run())
