"""Starlette app — JSON API + Server-Sent Events + static file serving."""
import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route, Mount
from starlette.staticfiles import StaticFiles

from ..config import APP_VERSION, KEEPALIVE_INTERVAL, PUBLIC_DIR
from ..engine import SoundMachine
from ..errors import (
    AudioError, InvalidInput, PlatformUnavailable, SoundMachineError, format_error,
)
from ..preflight import detect_capability
from ..utils import parse_timestamp
from .state import Broadcaster

logger = logging.getLogger(__name__)

_machine: Optional[SoundMachine] = None


def sse_message(snapshot: dict) -> str:
    return f"data: {json.dumps(snapshot)}\n\n"


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except (ValueError, UnicodeDecodeError) as e:
        raise InvalidInput("Request body must be JSON") from e
    if not isinstance(body, dict):
        raise InvalidInput("Request body must be a JSON object")
    return body


# ── Status ───────────────────────────────────────────────────────────────────

async def status(request):
    return JSONResponse(await _machine.status())


async def health(request):
    return JSONResponse({
        "status": "ok",
        "version": APP_VERSION,
        "isPi": _machine.capable,
        "playerAlive": _machine.supervisor.alive,
        "clients": _machine.broadcaster.client_count,
    })


# ── Push stream ──────────────────────────────────────────────────────────────

async def events(request):
    client_id = str(uuid.uuid4())
    broadcaster = _machine.broadcaster
    sub = broadcaster.subscribe(client_id, _machine.get_snapshot())
    logger.info("SSE connected: %s", client_id)

    async def _stream():
        try:
            while True:
                try:
                    snapshot = await asyncio.wait_for(sub.next(), timeout=KEEPALIVE_INTERVAL)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                if snapshot is None:
                    break
                yield sse_message(snapshot)
        finally:
            broadcaster.unsubscribe(client_id)
            logger.info("SSE disconnected: %s", client_id)

    return StreamingResponse(
        _stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# ── Playback ─────────────────────────────────────────────────────────────────

async def play(request):
    body = await _json_body(request)
    sound = body.get("sound")
    await _machine.play(sound)
    return JSONResponse({"success": True, "playing": sound})


async def stop(request):
    await _machine.stop()
    return JSONResponse({"success": True})


async def volume(request):
    body = await _json_body(request)
    applied = await _machine.set_volume(body.get("volume"))
    return JSONResponse({
        "success": True,
        "volume": _machine.playback.volume,
        "systemVolumeSet": applied,
        "clientMode": not _machine.capable,
    })


async def tab(request):
    body = await _json_body(request)
    active = await _machine.set_tab(body.get("tab"))
    return JSONResponse({"success": True, "activeTab": active})


# ── Timer ────────────────────────────────────────────────────────────────────

async def timer_start(request):
    body = await _json_body(request)
    raw_stop = body.get("stopTime")
    if not raw_stop:
        raise InvalidInput("stopTime is required")
    try:
        stop_time = parse_timestamp(raw_stop)
    except (TypeError, ValueError) as e:
        raise InvalidInput(f"Invalid stopTime: {raw_stop}") from e
    timer = await _machine.start_timer(body.get("sound"), stop_time, body.get("volume"))
    return JSONResponse({"success": True, "timer": timer})


async def timer_cancel(request):
    await _machine.cancel_timer()
    return JSONResponse({"success": True})


# ── Errors ───────────────────────────────────────────────────────────────────

async def _client_mode(request, exc: PlatformUnavailable):
    return JSONResponse({"success": False, "message": str(exc), "clientMode": True})


async def _input_error(request, exc: InvalidInput):
    logger.info("Rejected %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse({"success": False, "error": str(exc)}, status_code=exc.status_code)


async def _audio_error(request, exc: AudioError):
    stage = "timer_start" if request.url.path.startswith("/api/timer") else "audio_start"
    message = format_error(stage, str(exc), {"path": request.url.path})
    if stage == "timer_start" and not message.startswith("Failed"):
        message = f"Failed to start audio for timer: {message}"
    return JSONResponse({"success": False, "error": message}, status_code=exc.status_code)


async def _server_error(request, exc: SoundMachineError):
    message = format_error("request", str(exc), {"path": request.url.path})
    return JSONResponse({"success": False, "error": message}, status_code=exc.status_code)


# ── App factory ──────────────────────────────────────────────────────────────

def create_app(machine: Optional[SoundMachine] = None, capable: Optional[bool] = None) -> Starlette:
    global _machine

    if machine is None:
        if capable is None:
            capable = detect_capability()
        machine = SoundMachine(Broadcaster(), capable=capable)
    _machine = machine

    routes = [
        Route("/api/status", status),
        Route("/api/health", health),
        Route("/api/events", events),
        Route("/api/play", play, methods=["POST"]),
        Route("/api/stop", stop, methods=["POST"]),
        Route("/api/volume", volume, methods=["POST"]),
        Route("/api/tab", tab, methods=["POST"]),
        Route("/api/timer/start", timer_start, methods=["POST"]),
        Route("/api/timer/cancel", timer_cancel, methods=["POST"]),
    ]

    # Index page + /audio/* for browser fallback playback — must be last
    if PUBLIC_DIR.exists():
        routes.append(Mount("/", app=StaticFiles(directory=str(PUBLIC_DIR), html=True), name="public"))

    app = Starlette(
        routes=routes,
        exception_handlers={
            PlatformUnavailable: _client_mode,
            InvalidInput: _input_error,
            AudioError: _audio_error,
            SoundMachineError: _server_error,
        },
        lifespan=_lifespan,
    )
    app.state.machine = machine
    return app


@asynccontextmanager
async def _lifespan(app):
    machine = app.state.machine
    logger.info("Sound machine ready (%s)", "server audio" if machine.capable else "client-only mode")
    try:
        yield
    finally:
        await machine.shutdown()
        logger.info("Sound machine stopped")
