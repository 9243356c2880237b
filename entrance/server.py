from __future__ import annotations

"""
Entrance - entrance/server.py
-----------------------------
HTTP surface of the check-in engine.

1) Check-in
   - POST /checkin/scan     token from any capture source (QR camera, wedge, serial)
   - POST /checkin/manual   operator-typed member id (400 when not a positive integer)
   - GET  /checkin/last     most recent result (last-write-wins)
   - GET  /checkin/stream   SSE, exactly one result event then end (UI reopens per scan)

2) Capture control
   - POST /scanner/keys                 key events forwarded by the browser UI
   - POST /scanner/focus, GET /scanner/focus   blur/focus reports; answers when to refocus
   - POST /scanner/camera/start|stop|switch, GET /scanner/camera/status
     Camera failures answer 503 (no device / insecure stream) or 409 (busy /
     permission) with {error, message, fallback}.

3) Audit trail
   - GET /entrance-logs?limit=, /entrance-logs/member/{id},
     /entrance-logs/status/{status}, /entrance-logs/type/{type}
   - GET /members/{id}/attendance
   - GET /audit/status   durable vs fallback usage

4) Health probes
   - /healthz: liveness (no store access).
   - /readyz: readiness (touches SQLite to confirm schema presence).
"""

import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Literal, Optional

import aiosqlite
from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from .attendance import attendance_summary
from .config_loader import get_config, get_db_path, get_scanner_cfg, get_storage_cfg
from .db_schema import ensure_schema
from .keystroke import (
    KeyboardCapture,
    KeyEvent,
    KeySource,
    ManualKeySource,
    PynputKeySource,
    TARGET_CAPTURE,
    TARGET_OTHER,
    threshold_for,
)
from .models import EntranceType, ValidationStatus
from .optical import (
    CameraBusyError,
    CameraError,
    CameraPermissionError,
    OpticalScanSession,
    get_profile,
    make_cv2_detector,
    open_cv2_capture,
)
from .payload import as_member_id
from .pipeline import CheckInPipeline, build_pipeline

log = logging.getLogger("entrance")

ATTENDANCE_LOOKBACK = 5000
SSE_TIMEOUT_S = 10.0


# ---------- request bodies ----------
class ScanIn(BaseModel):
    token: str
    entrance_type: EntranceType = EntranceType.QR_SCAN


class ManualIn(BaseModel):
    member_id: Any = None


class KeyEventIn(BaseModel):
    key: str
    ctrl: bool = False
    meta: bool = False
    alt: bool = False
    target: str = TARGET_CAPTURE
    ts: Optional[float] = None


class KeysIn(BaseModel):
    events: List[KeyEventIn] = Field(default_factory=list)
    device: Optional[str] = None


class FocusIn(BaseModel):
    event: Literal["blur", "focus"]
    target: str = TARGET_OTHER


class CameraIn(BaseModel):
    device: Optional[Any] = None
    profile: Optional[str] = None


def _camera_error_response(e: CameraError) -> JSONResponse:
    code = 409 if isinstance(e, (CameraBusyError, CameraPermissionError)) else 503
    return JSONResponse(status_code=code, content=e.to_dict())


def _dump(items) -> List[Dict[str, Any]]:
    return [i.model_dump(mode="json") for i in items]


def create_app(
    config: Optional[Dict[str, Any]] = None,
    *,
    pipeline: Optional[CheckInPipeline] = None,
    capture_factory: Callable[[Any], Any] = open_cv2_capture,
    detector_factory: Callable[[], Any] = make_cv2_detector,
    hardware_keys: Optional[KeySource] = None,
) -> FastAPI:
    cfg = config if config is not None else get_config()
    storage = get_storage_cfg(cfg)
    backend = str(storage.get("backend", "sqlite")).lower()
    scanner_cfg = get_scanner_cfg(cfg)
    kb_cfg = scanner_cfg.get("keyboard", {}) or {}
    cam_cfg = scanner_cfg.get("camera", {}) or {}

    pipe = pipeline or build_pipeline(cfg)
    app = FastAPI(title=str((cfg.get("app") or {}).get("name") or "Gym Entrance"))
    app.state.pipeline = pipe

    # Browser-forwarded keystrokes: one framer, tokens collected per request.
    # The browser owns DOM focus; refocus requests are handed back to it.
    framed: List[str] = []
    focus_state = {"refocus": False, "refocused": 0}

    def _request_refocus() -> None:
        focus_state["refocus"] = True
        focus_state["refocused"] += 1
        log.debug("refocus_requested")

    ui_keys = ManualKeySource()
    ui_capture = KeyboardCapture(
        ui_keys, framed.append,
        refocus=_request_refocus,
        reset_threshold_ms=threshold_for(None, kb_cfg),
        refocus_delay_ms=int(kb_cfg.get("refocus_delay_ms", 100)),
    )
    hw_capture: Optional[KeyboardCapture] = None

    loop_ref: Dict[str, asyncio.AbstractEventLoop] = {}

    def _log_scan_failure(fut) -> None:
        if fut.cancelled():
            log.warning("scan_cancelled")
            return
        exc = fut.exception()
        if exc is not None:
            log.error("scan_failed", exc_info=exc)

    def _schedule_scan(token: str) -> None:
        # called from camera / keyboard-hook threads
        loop = loop_ref.get("loop")
        if loop is None:
            log.warning("scan_dropped_no_loop")
            return
        fut = asyncio.run_coroutine_threadsafe(pipe.scan(token), loop)
        fut.add_done_callback(_log_scan_failure)

    camera = OpticalScanSession(
        on_decoded=_schedule_scan,
        device=cam_cfg.get("device", 0),
        profile=cam_cfg.get("profile", "fast"),
        allow_insecure_streams=bool(cam_cfg.get("allow_insecure_streams", False)),
        capture_factory=capture_factory,
        detector_factory=detector_factory,
    )
    app.state.camera = camera

    # ---------- lifecycle ----------
    @app.on_event("startup")
    async def _startup() -> None:
        nonlocal hw_capture
        loop_ref["loop"] = asyncio.get_running_loop()
        if backend == "sqlite":
            db_path = get_db_path(cfg)
            ensure_schema(db_path)
            log.info(f"db_path={db_path}")
        log.info("storage_backend", extra={"backend": backend})
        ui_capture.attach()
        if kb_cfg.get("enabled"):
            hw_capture = KeyboardCapture(
                hardware_keys or PynputKeySource(),
                _schedule_scan,
                reset_threshold_ms=threshold_for(kb_cfg.get("device"), kb_cfg),
            )
            try:
                hw_capture.attach()
            except Exception:
                log.exception("keyboard hook unavailable; use /scanner/keys or manual entry")
                hw_capture = None

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        ui_capture.detach()
        if hw_capture is not None:
            hw_capture.detach()
        camera.stop()
        await pipe.aclose()

    # ---------- health ----------
    @app.get("/healthz")
    async def healthz():
        return {"ok": True}

    @app.get("/readyz")
    async def readyz():
        if backend != "sqlite":
            return {"ok": True, "backend": backend}
        try:
            async with aiosqlite.connect(str(get_db_path(cfg))) as db:
                cur = await db.execute(
                    "SELECT name FROM sqlite_master WHERE type='table' AND name IN ('members','entrance_logs')"
                )
                names = {r[0] for r in await cur.fetchall()}
                await cur.close()
        except Exception as e:
            return JSONResponse(status_code=503, content={"ok": False, "error": str(e)})
        if names != {"members", "entrance_logs"}:
            return JSONResponse(status_code=503, content={"ok": False, "missing": sorted({"members", "entrance_logs"} - names)})
        return {"ok": True, "backend": backend}

    @app.get("/audit/status")
    async def audit_status():
        return pipe.audit.status()

    # ---------- check-in ----------
    @app.post("/checkin/scan")
    async def checkin_scan(body: ScanIn):
        res = await pipe.scan(body.token, body.entrance_type)
        return res.model_dump(mode="json")

    @app.post("/checkin/manual")
    async def checkin_manual(body: ManualIn):
        member_id = as_member_id(body.member_id)
        if member_id is None:
            raise HTTPException(status_code=400, detail="member_id must be a positive integer")
        res = await pipe.manual(member_id)
        return res.model_dump(mode="json")

    @app.get("/checkin/last")
    async def checkin_last():
        last = pipe.last_result
        return {"result": last.model_dump(mode="json") if last else None}

    @app.get("/checkin/stream")
    async def checkin_stream():
        """Send exactly one check-in event and then end."""
        q = pipe.subscribe()

        async def gen():
            try:
                res = await asyncio.wait_for(q.get(), timeout=SSE_TIMEOUT_S)
                yield f"event: checkin\ndata: {json.dumps(res.model_dump(mode='json'))}\n\n"
            except asyncio.TimeoutError:
                return
            finally:
                pipe.unsubscribe(q)

        return StreamingResponse(gen(), media_type="text/event-stream")

    # ---------- capture control ----------
    @app.post("/scanner/keys")
    async def scanner_keys(body: KeysIn):
        ui_capture.framer.reset_threshold_ms = threshold_for(body.device, kb_cfg)
        for ev in body.events:
            ui_keys.emit(KeyEvent(**ev.model_dump()))
        tokens = list(framed)
        framed.clear()
        results = [await pipe.scan(t) for t in tokens]
        ui_capture.focus.tick()
        return {"tokens": len(tokens), "results": _dump(results), "buffer_len": len(ui_capture.framer.buffer)}

    def _focus_reply() -> Dict[str, Any]:
        ui_capture.focus.tick()
        refocus = focus_state["refocus"]
        focus_state["refocus"] = False
        return {
            "refocus": refocus,
            "refocus_due_ms": ui_capture.focus.due_in_ms(),
            "refocused": focus_state["refocused"],
        }

    @app.post("/scanner/focus")
    async def scanner_focus(body: FocusIn):
        """Blur/focus of the capture element, reported by the browser UI."""
        if body.event == "blur":
            ui_capture.focus.on_blur(body.target)
        else:
            ui_capture.focus.on_focus()
        return _focus_reply()

    @app.get("/scanner/focus")
    async def scanner_focus_poll():
        """refocus is true once, when the UI should move focus back to the capture element."""
        return _focus_reply()

    @app.get("/scanner/camera/status")
    async def camera_status():
        return camera.status()

    @app.post("/scanner/camera/start")
    async def camera_start(body: Optional[CameraIn] = None):
        if body and body.profile:
            try:
                camera.profile = get_profile(body.profile)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
        if body and body.device is not None:
            camera.device = body.device
        try:
            await asyncio.to_thread(camera.start)
        except CameraError as e:
            return _camera_error_response(e)
        return camera.status()

    @app.post("/scanner/camera/stop")
    async def camera_stop():
        await asyncio.to_thread(camera.stop)
        return camera.status()

    @app.post("/scanner/camera/switch")
    async def camera_switch(body: CameraIn):
        if body.device is None:
            raise HTTPException(status_code=400, detail="device is required")
        try:
            await asyncio.to_thread(camera.switch_camera, body.device)
        except CameraError as e:
            return _camera_error_response(e)
        return camera.status()

    # ---------- audit trail ----------
    @app.get("/entrance-logs")
    async def entrance_logs(limit: Optional[int] = Query(default=None, ge=0)):
        return _dump(await pipe.audit.recent(limit))

    @app.get("/entrance-logs/member/{member_id}")
    async def entrance_logs_member(member_id: int, limit: Optional[int] = Query(default=None, ge=0)):
        return _dump(await pipe.audit.for_member(member_id, limit))

    @app.get("/entrance-logs/status/{status}")
    async def entrance_logs_status(status: ValidationStatus, limit: Optional[int] = Query(default=None, ge=0)):
        return _dump(await pipe.audit.by_status(status, limit))

    @app.get("/entrance-logs/type/{entrance_type}")
    async def entrance_logs_type(entrance_type: EntranceType, limit: Optional[int] = Query(default=None, ge=0)):
        return _dump(await pipe.audit.by_type(entrance_type, limit))

    @app.get("/members/{member_id}/attendance")
    async def member_attendance(member_id: int):
        logs = await pipe.audit.for_member(member_id, ATTENDANCE_LOOKBACK)
        return {"member_id": member_id, **attendance_summary(logs)}

    return app


if __name__ == "__main__":
    import uvicorn

    from .config_loader import get_log_level, get_server_bind

    logging.basicConfig(
        level=getattr(logging, get_log_level("INFO"), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host, port = get_server_bind()
    uvicorn.run("entrance.server:create_app", factory=True, host=host, port=port)
