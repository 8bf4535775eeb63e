from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from starlette.websockets import WebSocketDisconnect

from .clock import RealClock
from .config import VoiceConfig
from .errors import ProvisioningError, TransportError
from .logs import configure_logging, get_logger
from .metrics import GLOBAL_PROM, CompositeMetrics, Metrics
from .models import AgentProfile
from .orchestrator import SessionOrchestrator
from .provider import build_pipeline, build_provisioner, build_transcript_sink
from .registry import SessionRegistry
from .transcripts import TranscriptWriter
from .transport import TransportAdapter
from .transport_browser import BrowserTransport
from .transport_http import HttpChunkTransport
from .transport_telephony import TelephonyTransport


class StarletteSocket:
    def __init__(self, ws: WebSocket) -> None:
        self._ws = ws

    async def recv_text(self) -> str:
        try:
            return await self._ws.receive_text()
        except WebSocketDisconnect as e:
            raise ConnectionError(f"client disconnected ({e.code})") from e

    async def send_text(self, text: str) -> None:
        await self._ws.send_text(text)

    async def close(self, *, code: int = 1000, reason: str = "") -> None:
        try:
            await self._ws.close(code=code, reason=reason)
        except RuntimeError:
            # Already closed by the peer.
            return


app = FastAPI()
registry = SessionRegistry()
_tasks: dict[str, asyncio.Task[None]] = {}
_clock = RealClock()
_log = get_logger("server")


@app.on_event("startup")
async def _startup() -> None:
    cfg = VoiceConfig.from_env()
    configure_logging(level=cfg.log_level, json_output=cfg.structured_logging)


@app.on_event("shutdown")
async def _shutdown() -> None:
    await registry.stop_all(reason="shutdown")


def _profile_from(params: dict[str, Any], cfg: VoiceConfig) -> AgentProfile:
    return AgentProfile(
        agent_id=str(params.get("agentId") or "default"),
        instructions=str(params.get("instructions") or cfg.default_instructions),
        voice=str(params.get("voice") or ""),
        voice_preference=str(params.get("voicePreference") or ""),
        welcome_message=str(params.get("welcomeMessage") or ""),
        tools=tuple(t for t in params.get("tools") or () if isinstance(t, dict)),
    )


def _build_session(
    session_id: str, cfg: VoiceConfig, profile: AgentProfile, transport: TransportAdapter
) -> SessionOrchestrator:
    clock = RealClock()
    metrics = CompositeMetrics(Metrics(), GLOBAL_PROM)
    return SessionOrchestrator(
        session_id=session_id,
        config=cfg,
        profile=profile,
        transport=transport,
        pipeline=build_pipeline(cfg, clock=clock, metrics=metrics, session_id=session_id),
        provisioner=build_provisioner(cfg, clock=clock),
        clock=clock,
        metrics=metrics,
        transcripts=TranscriptWriter(
            sink=build_transcript_sink(cfg),
            metrics=metrics,
            queue_max=cfg.transcript_queue_max,
            session_id=session_id,
        ),
    )


async def _run_to_end(orch: SessionOrchestrator) -> None:
    """Run one connection of a session."""
    try:
        await orch.run()
    except ProvisioningError as e:
        _log.warning("session_provisioning_failed", session_id=orch.session.session_id, error=str(e))


async def _supervise(orch: SessionOrchestrator, linger_ms: int) -> None:
    """
    Run one connection, then keep the ended session registered for linger_ms
    so a client can reconnect. A reconnect spawns a new supervisor, which
    makes this one stand down.
    """
    sid = orch.session.session_id
    await _run_to_end(orch)
    if linger_ms > 0:
        await _clock.sleep_ms(linger_ms)
    if _tasks.get(sid) is not asyncio.current_task() or registry.get(sid) is not orch:
        return
    _tasks.pop(sid, None)
    _log.info("session_reaped", session_id=sid, state=orch.state.value)
    await _teardown(orch, reason="session_end")


def _spawn_session(orch: SessionOrchestrator, *, linger_ms: int = 0) -> None:
    sid = orch.session.session_id
    _tasks[sid] = asyncio.create_task(_supervise(orch, linger_ms))


async def _teardown(orch: SessionOrchestrator, *, reason: str) -> None:
    await orch.stop(reason=reason)
    registry.remove(orch.session.session_id)
    task = _tasks.pop(orch.session.session_id, None)
    if task is not None and not task.done():
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


@app.get("/healthz")
async def healthz() -> dict[str, Any]:
    return {"ok": True, "sessions": len(registry)}


@app.get("/metrics")
async def metrics() -> PlainTextResponse:
    return PlainTextResponse(GLOBAL_PROM.render())


@app.websocket("/telephony/media-stream")
async def telephony_media_stream(ws: WebSocket) -> None:
    cfg = VoiceConfig.from_env()
    await ws.accept()
    session_id = str(ws.query_params.get("sessionId") or uuid.uuid4().hex)
    clock = RealClock()
    transport = TelephonyTransport(
        StarletteSocket(ws),
        clock=clock,
        metrics=CompositeMetrics(Metrics(), GLOBAL_PROM),
        event_queue_max=cfg.inbound_queue_max,
        outbound_queue_max=cfg.outbound_queue_max,
    )
    orch = _build_session(session_id, cfg, _profile_from(dict(ws.query_params), cfg), transport)
    registry.add(orch)
    try:
        await _run_to_end(orch)
    finally:
        await _teardown(orch, reason="session_end")


@app.post("/browser/sessions/{session_id}/offer")
async def browser_offer(session_id: str, request: Request) -> JSONResponse:
    cfg = VoiceConfig.from_env()
    body = await request.json()
    sdp = str(body.get("sdp") or "")
    transport = BrowserTransport(
        metrics=CompositeMetrics(Metrics(), GLOBAL_PROM),
        event_queue_max=cfg.inbound_queue_max,
        outbound_queue_max=cfg.outbound_queue_max,
    )
    orch = registry.get(session_id)
    if orch is None:
        orch = _build_session(session_id, cfg, _profile_from(body, cfg), transport)
        registry.add(orch)
    else:
        try:
            await orch.reconnect(transport)
        except (TransportError, RuntimeError) as e:
            return JSONResponse({"error": str(e)}, status_code=409)
    _spawn_session(orch, linger_ms=cfg.reconnect_window_ms)
    await orch.wait_transport_open()
    try:
        answer = await transport.negotiate(sdp, str(body.get("type") or "offer"))
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    return JSONResponse({"sessionId": session_id, "type": "answer", "sdp": answer})


def _http_transport(orch: SessionOrchestrator) -> Optional[HttpChunkTransport]:
    transport = orch.transport
    return transport if isinstance(transport, HttpChunkTransport) else None


@app.post("/http/sessions/{session_id}/audio")
async def http_audio_in(session_id: str, request: Request) -> JSONResponse:
    orch = registry.get(session_id)
    if orch is None:
        cfg = VoiceConfig.from_env()
        transport = HttpChunkTransport(
            metrics=CompositeMetrics(Metrics(), GLOBAL_PROM),
            audio_format="g711_ulaw" if request.query_params.get("format") == "g711_ulaw" else "pcm16",
            sample_rate_hz=8000 if request.query_params.get("format") == "g711_ulaw" else 24000,
            event_queue_max=cfg.inbound_queue_max,
            outbound_queue_max=cfg.outbound_queue_max,
        )
        orch = _build_session(session_id, cfg, _profile_from(dict(request.query_params), cfg), transport)
        registry.add(orch)
        _spawn_session(orch)
        await orch.wait_transport_open()
    transport = _http_transport(orch)
    if transport is None:
        return JSONResponse({"error": "not an http session"}, status_code=409)
    ts_header = request.headers.get("x-timestamp-ms")
    data = await request.body()
    accepted = await transport.push_chunk(data, timestamp_ms=int(ts_header) if ts_header else None)
    return JSONResponse({"sessionId": session_id, "frames": accepted, "state": orch.state.value})


@app.get("/http/sessions/{session_id}/audio")
async def http_audio_out(session_id: str) -> Response:
    orch = registry.get(session_id)
    transport = _http_transport(orch) if orch is not None else None
    if transport is None:
        return JSONResponse({"error": "unknown session"}, status_code=404)
    if transport.reader_attached:
        return JSONResponse({"error": "outbound stream already attached"}, status_code=409)
    return StreamingResponse(transport.stream_out(), media_type="application/octet-stream")


@app.delete("/http/sessions/{session_id}/audio")
async def http_audio_end(session_id: str) -> JSONResponse:
    orch = registry.get(session_id)
    transport = _http_transport(orch) if orch is not None else None
    if orch is None or transport is None:
        return JSONResponse({"error": "unknown session"}, status_code=404)
    await transport.finish()
    await orch.wait_ended()
    await _teardown(orch, reason="client_finished")
    return JSONResponse({"sessionId": session_id, "state": orch.state.value})


@app.get("/sessions/{session_id}/events")
async def session_events(session_id: str) -> Response:
    orch = registry.get(session_id)
    if orch is None:
        return JSONResponse({"error": "unknown session"}, status_code=404)
    sub = await orch.events.subscribe()

    async def _sse() -> AsyncIterator[str]:
        try:
            async for ev in sub:
                yield f"event: {ev.kind}\ndata: {json.dumps(ev.to_dict(), separators=(',', ':'))}\n\n"
        finally:
            await sub.close()

    return StreamingResponse(_sse(), media_type="text/event-stream")


@app.post("/sessions/{session_id}/stop")
async def session_stop(session_id: str) -> JSONResponse:
    orch = registry.get(session_id)
    if orch is None:
        return JSONResponse({"error": "unknown session"}, status_code=404)
    await _teardown(orch, reason="client_stop")
    return JSONResponse({"sessionId": session_id, "state": orch.state.value, "stopped": orch.stopped})
