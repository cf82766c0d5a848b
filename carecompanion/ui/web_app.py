"""
carecompanion/ui/web_app.py — FastAPI web server for CareCompanion.

Serves the senior's single-page companion at http://localhost:<port>/ and
carries both UI events and browser speech events over a WebSocket at /ws.

REST endpoints
--------------
GET  /                          HTML page
GET  /health                    JSON health check
GET  /state                     Conversation state, messages, alerts
POST /start                     Begin listening for the activation phrase
POST /stop                      Stop everything
POST /end                       End the current conversation with a farewell
POST /language                  {"language": "en" | "ml"}
GET  /medications               Today's medications
POST /medications               {"name", "dosage", "frequency", "instructions", "time"}
POST /medications/{id}/taken    {"taken": true | false}
POST /medications/reset         Clear today's intake state
GET  /alerts                    Alerts raised this session
POST /alerts                    {"quick": "check_in"} or {"message": "...", "is_emergency": false}
POST /alerts/{id}/resolve       Mark an alert resolved

WebSocket
---------
ws://<host>:<port>/ws

Messages pushed by server (JSON):
  {"type": "state",       "state": "LISTENING", "from": "SPEAKING", "reason": "..."}
  {"type": "interim",     "text": "..."}
  {"type": "user",        "text": "...", "turn": 3}
  {"type": "assistant",   "text": "...", "language": "en", "intent": "general"}
  {"type": "speaking",    "text": "...", "purpose": "REPLY"}
  {"type": "notice",      "message": "..."}
  {"type": "alert",       "id": "...", "message": "...", "is_emergency": true, ...}
  {"type": "recognition", "action": "start" | "stop", "lang": "en-US"}
  {"type": "speak",       "id": 4, "text": "...", "lang": "en-US"}
  {"type": "tick",        "timestamp_ms": ..., "state": "..."}   ← heartbeat every second

Messages accepted from the page: the speech events documented in
:mod:`carecompanion.speech.browser`, plus ``{"action": "start" | "stop" | "end"}``.
"""

from __future__ import annotations

import asyncio
import json
import threading
import time
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, field_validator

from carecompanion.core.logger import get_logger
from carecompanion.pipeline.companion import (
    ON_ALERT,
    ON_ASSISTANT_MESSAGE,
    ON_INTERIM,
    ON_LANGUAGE,
    ON_NOTICE,
    ON_SPEAKING,
    ON_STATE_CHANGE,
    ON_USER_MESSAGE,
    CompanionPipeline,
)
from carecompanion.store.client import DataStoreError

_log = get_logger()

# ── Static file path ──────────────────────────────────────────────────────────
_STATIC_DIR = Path(__file__).parent / "static"

# ── FastAPI app ───────────────────────────────────────────────────────────────
app = FastAPI(title="CareCompanion", version="1.0")
app.mount("/static", StaticFiles(directory=str(_STATIC_DIR)), name="static")

# ── Shared state ──────────────────────────────────────────────────────────────
_pipeline: Optional[CompanionPipeline] = None
_connected_clients: Set[WebSocket] = set()
_clients_lock = threading.Lock()

# asyncio event loop running in the uvicorn thread
_loop: Optional[asyncio.AbstractEventLoop] = None
_heartbeat_task: Optional[asyncio.Task] = None


# ── Request bodies ────────────────────────────────────────────────────────────

class LanguageIn(BaseModel):
    language: str


class MedicationIn(BaseModel):
    name: str
    dosage: str = ""
    frequency: str = ""
    instructions: str = ""
    time: str = "08:00"

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("name must not be empty")
        return v.strip()


class TakenIn(BaseModel):
    taken: bool = True


class AlertIn(BaseModel):
    quick: Optional[str] = None
    message: Optional[str] = None
    is_emergency: bool = False


# ── WebSocket helpers ─────────────────────────────────────────────────────────

def send_to_browser(msg: Dict[str, Any]) -> bool:
    """
    Thread-safe push of a JSON message to every connected page.

    Returns:
        False if no page is connected (the message is dropped), True otherwise.
    """
    if _loop is None or _loop.is_closed():
        return False
    with _clients_lock:
        if not _connected_clients:
            return False
    asyncio.run_coroutine_threadsafe(_broadcast(msg), _loop)
    return True


def _push(msg: Dict[str, Any]) -> None:
    send_to_browser(msg)


async def _broadcast(msg: Dict[str, Any]) -> None:
    text = json.dumps(msg, ensure_ascii=False)
    with _clients_lock:
        clients = list(_connected_clients)
    dead: List[WebSocket] = []
    for ws in clients:
        try:
            await ws.send_text(text)
        except Exception:  # noqa: BLE001
            dead.append(ws)
    if dead:
        with _clients_lock:
            for ws in dead:
                _connected_clients.discard(ws)


# ── EventBus → WebSocket bridge ───────────────────────────────────────────────

def wire_pipeline(pipeline: CompanionPipeline) -> None:
    """Register EventBus callbacks so *pipeline* feeds the WS stream."""
    global _pipeline
    _pipeline = pipeline
    pipeline.subscribe(ON_STATE_CHANGE, lambda d: _push({"type": "state", **d}))
    pipeline.subscribe(ON_INTERIM, lambda d: _push({"type": "interim", **d}))
    pipeline.subscribe(ON_USER_MESSAGE, lambda d: _push({"type": "user", **d}))
    pipeline.subscribe(ON_ASSISTANT_MESSAGE, lambda d: _push({"type": "assistant", **d}))
    pipeline.subscribe(ON_SPEAKING, lambda d: _push({"type": "speaking", **d}))
    pipeline.subscribe(ON_NOTICE, lambda d: _push({"type": "notice", **d}))
    pipeline.subscribe(ON_LANGUAGE, lambda d: _push({"type": "language", **d}))
    pipeline.subscribe(ON_ALERT, lambda d: _push({"type": "alert", **d}))
    _log.info("web_app", "pipeline_wired", {"mode": pipeline.mode})


def _require_pipeline() -> CompanionPipeline:
    if _pipeline is None:
        raise HTTPException(status_code=503, detail="pipeline not ready")
    return _pipeline


# ── Heartbeat ─────────────────────────────────────────────────────────────────

async def _heartbeat() -> None:
    """Push a tick message every second so the page can detect disconnects."""
    while True:
        await asyncio.sleep(1.0)
        state = _pipeline.controller.state.value if _pipeline else "IDLE"
        _push({"type": "tick", "timestamp_ms": round(time.time() * 1000), "state": state})


# ── App lifecycle ─────────────────────────────────────────────────────────────

@app.on_event("startup")
async def _on_startup() -> None:
    global _loop, _heartbeat_task
    _loop = asyncio.get_running_loop()
    _heartbeat_task = asyncio.create_task(_heartbeat())
    _log.info("web_app", "startup", {})


@app.on_event("shutdown")
async def _on_shutdown() -> None:
    global _loop, _heartbeat_task
    if _heartbeat_task is not None:
        _heartbeat_task.cancel()
        _heartbeat_task = None
    _loop = None
    _log.info("web_app", "shutdown", {})


# ── Routes: page and state ────────────────────────────────────────────────────

@app.get("/", response_class=HTMLResponse)
async def index() -> HTMLResponse:
    """Serve the single-page companion."""
    html_path = _STATIC_DIR / "index.html"
    return HTMLResponse(html_path.read_text(encoding="utf-8"))


@app.get("/health")
async def health() -> JSONResponse:
    ready = _pipeline is not None
    return JSONResponse({
        "status": "ok" if ready else "pipeline_not_ready",
        "state": _pipeline.controller.state.value if ready else None,
        "clients": len(_connected_clients),
    })


@app.get("/state")
async def state() -> JSONResponse:
    return JSONResponse(_require_pipeline().snapshot())


# ── Routes: conversation control ──────────────────────────────────────────────

@app.post("/start")
def start() -> JSONResponse:
    pipeline = _require_pipeline()
    pipeline.controller.start()
    return JSONResponse({"ok": True, "state": pipeline.controller.state.value})


@app.post("/stop")
def stop() -> JSONResponse:
    pipeline = _require_pipeline()
    pipeline.controller.stop()
    return JSONResponse({"ok": True, "state": pipeline.controller.state.value})


@app.post("/end")
def end() -> JSONResponse:
    pipeline = _require_pipeline()
    pipeline.controller.end_conversation()
    return JSONResponse({"ok": True, "state": pipeline.controller.state.value})


@app.post("/language")
def language(body: LanguageIn) -> JSONResponse:
    pipeline = _require_pipeline()
    try:
        lang = pipeline.set_language(body.language)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from None
    return JSONResponse({"ok": True, "language": lang.value})


# ── Routes: medications ───────────────────────────────────────────────────────

@app.get("/medications")
def list_medications() -> JSONResponse:
    pipeline = _require_pipeline()
    try:
        meds = pipeline.repository.list_medications()
    except DataStoreError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from None
    return JSONResponse([asdict(m) for m in meds])


@app.post("/medications", status_code=201)
def add_medication(body: MedicationIn) -> JSONResponse:
    pipeline = _require_pipeline()
    try:
        med = pipeline.repository.add_medication(
            body.name, body.dosage, body.frequency, body.instructions, body.time,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from None
    except DataStoreError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from None
    return JSONResponse(asdict(med), status_code=201)


@app.post("/medications/reset")
def reset_medications() -> JSONResponse:
    _require_pipeline().repository.reset_daily()
    return JSONResponse({"ok": True})


@app.post("/medications/{medication_id}/taken")
def mark_taken(medication_id: str, body: TakenIn = TakenIn()) -> JSONResponse:
    pipeline = _require_pipeline()
    if pipeline.repository.get_medication(medication_id) is None:
        raise HTTPException(status_code=404, detail="medication not found")
    pipeline.repository.mark_taken(medication_id, body.taken)
    return JSONResponse({"ok": True, "id": medication_id, "taken": body.taken})


# ── Routes: alerts ────────────────────────────────────────────────────────────

@app.get("/alerts")
def list_alerts() -> JSONResponse:
    return JSONResponse([a.to_dict() for a in _require_pipeline().notifier.session_log])


@app.post("/alerts", status_code=201)
def send_alert(body: AlertIn) -> JSONResponse:
    pipeline = _require_pipeline()
    try:
        if body.quick:
            event = pipeline.notifier.send_quick_alert(body.quick)
        else:
            event = pipeline.notifier.send_custom_alert(body.message or "", body.is_emergency)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from None
    return JSONResponse(event.to_dict(), status_code=201)


@app.post("/alerts/{alert_id}/resolve")
def resolve_alert(alert_id: str) -> JSONResponse:
    if not _require_pipeline().notifier.resolve(alert_id):
        raise HTTPException(status_code=404, detail="alert not found")
    return JSONResponse({"ok": True, "id": alert_id})


# ── WebSocket ─────────────────────────────────────────────────────────────────

@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket) -> None:
    await ws.accept()
    with _clients_lock:
        _connected_clients.add(ws)

    snapshot = _pipeline.snapshot() if _pipeline else {}
    await ws.send_text(json.dumps({"type": "snapshot", **snapshot}, ensure_ascii=False))
    _log.info("web_app", "ws_connected", {"total": len(_connected_clients)})
    loop = asyncio.get_running_loop()
    if _pipeline is not None and _pipeline.bridge is not None:
        await loop.run_in_executor(None, _pipeline.bridge.reconnected)

    try:
        while True:
            msg = await ws.receive_text()
            try:
                data = json.loads(msg)
            except ValueError:
                _log.warn("web_app", "ws_bad_message", {"message": msg[:80]})
                continue
            await loop.run_in_executor(None, _handle_client_msg, data)
    except WebSocketDisconnect:
        pass
    finally:
        with _clients_lock:
            _connected_clients.discard(ws)
            remaining = len(_connected_clients)
        _log.info("web_app", "ws_disconnected", {"total": remaining})
        if remaining == 0 and _pipeline is not None and _pipeline.bridge is not None:
            await loop.run_in_executor(None, _pipeline.bridge.disconnected)


def _handle_client_msg(data: Dict[str, Any]) -> None:
    """
    Route one page message: speech events to the bridge, actions to the controller.

    Runs on the default executor; a transcript can reach the data store
    through the reminder command hook.
    """
    if _pipeline is None or not isinstance(data, dict):
        return
    if _pipeline.bridge is not None and _pipeline.bridge.handle_message(data):
        return
    action = data.get("action")
    if action == "start":
        _pipeline.controller.start()
    elif action == "stop":
        _pipeline.controller.stop()
    elif action == "end":
        _pipeline.controller.end_conversation()


# ── Public launcher ───────────────────────────────────────────────────────────

def start_web_server(
    pipeline: CompanionPipeline,
    host: str = "0.0.0.0",
    port: int = 7860,
) -> None:
    """
    Wire *pipeline* to the WS bridge and run uvicorn in the current thread.

    Blocking. The pipeline should have been built with
    ``browser_send=send_to_browser`` so its speech channels reach the page.

    Args:
        pipeline: Fully initialised :class:`~carecompanion.pipeline.companion.CompanionPipeline`.
        host:     Bind address (default ``0.0.0.0`` — all interfaces).
        port:     TCP port (default ``7860``).
    """
    wire_pipeline(pipeline)

    import uvicorn  # type: ignore
    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="warning",
        access_log=False,
    )
    server = uvicorn.Server(config)
    _log.info("web_app", "server_start", {"host": host, "port": port})
    server.run()
