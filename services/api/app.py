import asyncio
import logging
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
import redis.asyncio as redis

from libs.common.errors import NotifyError
from libs.common.models import Alert
from services.scanner.notify import notify_alert
from services.scanner.runner import ScannerStack, build_stack, load_last_report, setup_logging
from services.scanner.settings import load_config, masked

log = logging.getLogger("scanner.api")

# ---------------- App & CORS ----------------
app = FastAPI(title="Volume Leader Scanner API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000", "http://localhost:5173"],
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    max_age=86400,
)

# ---------------- Globals ----------------
APP_CONFIG = load_config()
stack: Optional[ScannerStack] = None
loop_task: Optional[asyncio.Task] = None

def _stack() -> ScannerStack:
    if stack is None:
        raise HTTPException(503, "scanner not initialised (missing KIS credentials?)")
    return stack

# ---------------- Health & config ----------------
@app.get("/health")
async def health():
    return {
        "status": "ok",
        "env": APP_CONFIG.env,
        "scanner": stack is not None,
        "loop": loop_task is not None and not loop_task.done(),
    }

@app.get("/config/effective")
async def get_config_effective():
    return {"config": masked(APP_CONFIG)}

# ---------------- Scan ----------------
@app.get("/scan/status")
async def scan_status():
    sch = _stack().scheduler
    last = sch.last_report
    return {
        "busy": sch.busy,
        "interval_s": sch.interval_s,
        "cycles": sch.cycles,
        "skipped": sch.skipped,
        "last_started_at": last.started_at if last else None,
        "last_status": last.status if last else None,
    }

@app.get("/scan/last")
async def scan_last():
    st = _stack()
    report = st.scheduler.last_report
    if report is None:
        try:
            report = await load_last_report(st.r)
        except Exception as e:
            log.warning("[api] last report read error: %r", e)
    if report is None:
        raise HTTPException(404, "no scan yet")
    return report.model_dump()

@app.post("/scan/run")
async def scan_run():
    """On-demand cycle: same orchestrator, token cache and rate budget as the schedule."""
    sch = _stack().scheduler
    report = await sch.run_once("manual")
    if report is None:
        raise HTTPException(409, "a scan cycle is already running")
    out = report.model_dump()
    out["partial"] = report.partial
    return out

# ---- debug notify ----
class NotifyReq(BaseModel):
    symbol: str = "TEST"
    display_name: str = "Test alert"
    last_price: Optional[float] = None
    change_rate: Optional[float] = None
    volume: Optional[float] = None

@app.post("/debug/notify")
async def debug_notify(body: NotifyReq):
    alert = Alert(**body.model_dump())
    try:
        await notify_alert(alert)
    except NotifyError as e:
        raise HTTPException(502, str(e))
    return {"ok": True}

# ---------------- Startup ----------------
@app.on_event("startup")
async def on_startup():
    global stack, loop_task
    setup_logging(APP_CONFIG.log_level)
    if not (APP_CONFIG.kis.app_key and APP_CONFIG.kis.app_secret):
        log.warning("[api] no KIS keys provided → scanner disabled")
        return

    r = redis.from_url(APP_CONFIG.redis_url, decode_responses=True) if APP_CONFIG.redis_url else None
    stack = build_stack(APP_CONFIG, r)
    if APP_CONFIG.scan.enabled:
        loop_task = asyncio.create_task(stack.scheduler.loop())
    else:
        log.info("[api] scheduled scan disabled, on-demand only")

@app.on_event("shutdown")
async def on_shutdown():
    if stack is None:
        return
    stack.scheduler.stop()
    if loop_task is not None:
        await loop_task
    await stack.scheduler.drain()
    await stack.aclose()
