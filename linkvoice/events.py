from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal, Optional

from .bounded_queue import BoundedDequeQueue, QueueClosed
from .metrics import VOICE


EventKind = Literal["state", "transcript", "response_text", "error", "level", "turn", "closed"]


@dataclass(frozen=True, slots=True)
class SessionEvent:
    seq: int
    session_id: str
    kind: EventKind
    at_ms: int
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"seq": self.seq, "sessionId": self.session_id, "kind": self.kind, "atMs": self.at_ms, **self.data}


class Subscription:
    def __init__(self, stream: "SessionEventStream", maxsize: int) -> None:
        self._stream = stream
        self.queue: BoundedDequeQueue[SessionEvent] = BoundedDequeQueue(maxsize=maxsize)

    def __aiter__(self) -> AsyncIterator[SessionEvent]:
        return self._iter()

    async def _iter(self) -> AsyncIterator[SessionEvent]:
        while True:
            try:
                yield await self.queue.get()
            except QueueClosed:
                return

    async def close(self) -> None:
        self._stream.unsubscribe(self)
        await self.queue.close()


class SessionEventStream:
    """
    The one ordered event stream of a session. Only the session actor
    publishes, so sequence numbers are gap-free and ordering is total.
    A slow subscriber loses its oldest events, never blocks the actor.
    """

    def __init__(self, *, session_id: str, metrics: Any, subscriber_queue_max: int = 256) -> None:
        self._session_id = session_id
        self._metrics = metrics
        self._maxsize = subscriber_queue_max
        self._subs: list[Subscription] = []
        self._seq = 0
        self._last_state: Optional[SessionEvent] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def subscribe(self) -> Subscription:
        """New subscribers first receive the latest state event, then live events."""
        sub = Subscription(self, self._maxsize)
        if self._last_state is not None:
            await sub.queue.put(self._last_state)
        if self._closed:
            await sub.queue.close()
            return sub
        self._subs.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subs:
            self._subs.remove(sub)

    async def publish(self, kind: EventKind, at_ms: int, **data: Any) -> SessionEvent:
        self._seq += 1
        ev = SessionEvent(seq=self._seq, session_id=self._session_id, kind=kind, at_ms=at_ms, data=data)
        if kind == "state":
            self._last_state = ev
        for sub in list(self._subs):
            dropped = await sub.queue.put_drop_oldest(ev)
            if dropped > 0:
                self._metrics.inc(VOICE["events_dropped_total"], dropped)
        return ev

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for sub in list(self._subs):
            await sub.queue.close()
        self._subs.clear()
