from __future__ import annotations

import asyncio

from linkvoice.metrics import VOICE, Metrics
from linkvoice.models import AudioFrame
from linkvoice.relay import AudioRelay


def _frame(seq: int, ts: int) -> AudioFrame:
    return AudioFrame(seq=seq, timestamp_ms=ts, payload=b"\xff" * 160)


def test_latest_inbound_timestamp_never_moves_backwards() -> None:
    async def _run() -> None:
        metrics = Metrics()
        relay = AudioRelay(metrics=metrics)
        for seq, ts in enumerate([20, 40, 30, 60, 59]):
            await relay.ingest(_frame(seq, ts))
        assert relay.latest_inbound_timestamp_ms == 60
        assert metrics.get(VOICE["inbound_out_of_order_total"]) == 2
        # Out-of-order frames are still relayed.
        assert relay.frames.qsize() == 5

    asyncio.run(_run())


def test_frame_queue_drops_oldest_when_full() -> None:
    async def _run() -> None:
        metrics = Metrics()
        relay = AudioRelay(metrics=metrics, frame_queue_max=3)
        for seq in range(5):
            await relay.ingest(_frame(seq, seq * 20))
        assert [f.seq for f in relay.frames.drain_nowait()] == [2, 3, 4]
        assert metrics.get(VOICE["audio_frames_dropped_total"]) == 2

    asyncio.run(_run())


def test_response_start_set_by_first_outbound_frame_only() -> None:
    relay = AudioRelay(metrics=Metrics())
    relay.note_inbound(1000)
    assert relay.note_outbound("item_1") is True
    relay.note_inbound(1200)
    assert relay.note_outbound("item_1") is False
    assert relay.response_start_timestamp_ms == 1000
    relay.note_inbound(1450)
    assert relay.elapsed_playback_ms() == 450


def test_elapsed_at_detection_frame_is_capped_by_latest_inbound() -> None:
    relay = AudioRelay(metrics=Metrics())
    relay.note_inbound(1000)
    relay.note_outbound("item_1")
    for ts in (1450, 1470, 1490):
        relay.note_inbound(ts)
    assert relay.elapsed_playback_ms() == 490
    assert relay.elapsed_playback_ms(1450) == 450
    assert relay.elapsed_playback_ms(2000) == 490
    assert relay.elapsed_playback_ms(900) == 0


def test_elapsed_is_zero_without_response() -> None:
    relay = AudioRelay(metrics=Metrics())
    relay.note_inbound(5000)
    assert relay.elapsed_playback_ms() == 0


def test_marks_ack_in_order_and_reset_clears_everything() -> None:
    metrics = Metrics()
    relay = AudioRelay(metrics=metrics)
    relay.note_inbound(100)
    relay.note_outbound("item_1")
    relay.push_mark("responsePart")
    relay.note_inbound(120)
    relay.push_mark("responsePart")
    assert not relay.playback_drained()

    first = relay.ack_mark()
    assert first is not None and first.sent_at_inbound_ms == 100
    relay.ack_mark()
    assert relay.playback_drained()
    # Surplus acks are harmless.
    assert relay.ack_mark() is None

    relay.push_mark("responsePart")
    relay.reset_response()
    assert relay.playback_drained()
    assert relay.response_start_timestamp_ms is None
    assert relay.last_assistant_item_id is None
    assert metrics.get(VOICE["marks_sent_total"]) == 3
    assert metrics.get(VOICE["marks_acked_total"]) == 2
