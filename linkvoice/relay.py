from __future__ import annotations

from collections import deque
from typing import Any, Deque, Optional

from .bounded_queue import BoundedDequeQueue
from .metrics import VOICE
from .models import AudioFrame, MarkEvent


class AudioRelay:
    """
    Per-session timing bookkeeping plus the bounded inbound frame queue.

    latest_inbound_timestamp_ms is monotonic: out-of-order frames are still
    relayed but never move it backwards. response_start_timestamp_ms is set
    by the first outbound frame of a response and cleared when the response
    ends or is interrupted. Only the session actor mutates this object.
    """

    def __init__(self, *, metrics: Any, frame_queue_max: int = 64) -> None:
        self._metrics = metrics
        self.frames: BoundedDequeQueue[AudioFrame] = BoundedDequeQueue(maxsize=frame_queue_max)
        self.latest_inbound_timestamp_ms = 0
        self.response_start_timestamp_ms: Optional[int] = None
        self.pending_marks: Deque[MarkEvent] = deque()
        self.last_assistant_item_id: Optional[str] = None

    async def ingest(self, frame: AudioFrame) -> None:
        self.note_inbound(frame.timestamp_ms)
        dropped = await self.frames.put_drop_oldest(frame)
        if dropped > 0:
            self._metrics.inc(VOICE["audio_frames_dropped_total"], dropped)
        self._metrics.inc(VOICE["audio_frames_in_total"], 1)

    def note_inbound(self, timestamp_ms: int) -> None:
        if timestamp_ms < self.latest_inbound_timestamp_ms:
            self._metrics.inc(VOICE["inbound_out_of_order_total"], 1)
            return
        self.latest_inbound_timestamp_ms = int(timestamp_ms)

    def note_outbound(self, item_id: Optional[str]) -> bool:
        """Record an outbound frame. True when it is the first frame of the response."""
        first = self.response_start_timestamp_ms is None
        if first:
            self.response_start_timestamp_ms = self.latest_inbound_timestamp_ms
        if item_id:
            self.last_assistant_item_id = item_id
        self._metrics.inc(VOICE["audio_frames_out_total"], 1)
        return first

    def push_mark(self, name: str) -> MarkEvent:
        mark = MarkEvent(name=name, sent_at_inbound_ms=self.latest_inbound_timestamp_ms)
        self.pending_marks.append(mark)
        self._metrics.inc(VOICE["marks_sent_total"], 1)
        return mark

    def ack_mark(self) -> Optional[MarkEvent]:
        if not self.pending_marks:
            return None
        self._metrics.inc(VOICE["marks_acked_total"], 1)
        return self.pending_marks.popleft()

    def playback_drained(self) -> bool:
        return not self.pending_marks

    def elapsed_playback_ms(self, at_ms: Optional[int] = None) -> int:
        """Playback elapsed up to at_ms (capped at the latest inbound frame) or the latest frame."""
        if self.response_start_timestamp_ms is None:
            return 0
        end = self.latest_inbound_timestamp_ms
        if at_ms is not None:
            end = min(end, at_ms)
        return max(0, end - self.response_start_timestamp_ms)

    def reset_response(self) -> None:
        self.response_start_timestamp_ms = None
        self.pending_marks.clear()
        self.last_assistant_item_id = None
