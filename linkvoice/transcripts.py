from __future__ import annotations

import asyncio
from typing import Any, Optional, Protocol

import aiohttp

from .bounded_queue import BoundedDequeQueue, QueueClosed
from .logs import get_logger
from .metrics import VOICE
from .models import TranscriptRecord


class TranscriptSink(Protocol):
    async def write(self, record: TranscriptRecord) -> None: ...

    async def aclose(self) -> None: ...


class MemoryTranscriptSink:
    def __init__(self) -> None:
        self.records: list[TranscriptRecord] = []

    async def write(self, record: TranscriptRecord) -> None:
        self.records.append(record)

    async def aclose(self) -> None:
        return


class HttpTranscriptSink:
    """POSTs each record as {threadId, role, content, timestamp} to the persistence service."""

    def __init__(self, *, url: str, timeout_ms: int = 3000) -> None:
        self._url = url
        self._timeout = aiohttp.ClientTimeout(total=max(1, timeout_ms) / 1000.0)
        self._session: Optional[aiohttp.ClientSession] = None

    async def write(self, record: TranscriptRecord) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        async with self._session.post(self._url, json=record.to_wire()) as resp:
            resp.raise_for_status()

    async def aclose(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None


class TranscriptWriter:
    """
    Background delivery so a slow persistence service never stalls the
    session actor. Failed writes are counted and logged, not retried.
    """

    def __init__(self, *, sink: TranscriptSink, metrics: Any, queue_max: int = 128, session_id: str = "") -> None:
        self._sink = sink
        self._metrics = metrics
        self._q: BoundedDequeQueue[TranscriptRecord] = BoundedDequeQueue(maxsize=queue_max)
        self._task: Optional[asyncio.Task[None]] = None
        self._log = get_logger("transcripts", session_id=session_id)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def submit(self, record: TranscriptRecord) -> None:
        dropped = await self._q.put_drop_oldest(record)
        if dropped > 0:
            self._metrics.inc(VOICE["transcript_write_failed_total"], dropped)

    async def _run(self) -> None:
        while True:
            try:
                record = await self._q.get()
            except QueueClosed:
                return
            try:
                await self._sink.write(record)
                self._metrics.inc(VOICE["transcript_records_total"], 1)
            except (aiohttp.ClientError, TimeoutError) as e:
                self._metrics.inc(VOICE["transcript_write_failed_total"], 1)
                self._log.warning("transcript_write_failed", role=record.role, error=str(e))

    async def close(self, *, flush_timeout_s: float = 2.0) -> None:
        """Flush what is queued, then stop."""
        await self._q.close()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=flush_timeout_s)
            except (asyncio.TimeoutError, TimeoutError):
                self._task.cancel()
                await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        await self._sink.aclose()
