# services/scanner/runner.py
import asyncio
import logging
import signal
import contextlib
from dataclasses import dataclass
from typing import Optional

import httpx
import redis.asyncio as redis

from libs.common.models import ScanReport
from libs.common.ratelimit import TokenBucket
from libs.common.signals import PatternConfig
from services.scanner.kis_client import KisClient
from services.scanner.notify import AlertNotifier
from services.scanner.scanner import ScanOrchestrator
from services.scanner.scheduler import ScanScheduler
from services.scanner.settings import Config, load_config
from services.scanner.token_cache import TokenCache

log = logging.getLogger("scanner.runner")

LAST_REPORT_KEY = "scan:last_report"
LAST_REPORT_TTL_S = 24 * 3600

def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, (level or "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s %(message)s",
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

@dataclass
class ScannerStack:
    cfg: Config
    http: httpx.AsyncClient
    r: Optional[redis.Redis]
    tokens: TokenCache
    client: KisClient
    scheduler: ScanScheduler

    async def aclose(self) -> None:
        await self.http.aclose()
        if self.r is not None:
            with contextlib.suppress(Exception):
                await self.r.aclose()

def report_saver(r: Optional[redis.Redis]):
    async def save(report: ScanReport) -> None:
        if r is None:
            return
        await r.set(LAST_REPORT_KEY, report.model_dump_json(), ex=LAST_REPORT_TTL_S)
    return save

async def load_last_report(r: Optional[redis.Redis]) -> Optional[ScanReport]:
    if r is None:
        return None
    raw = await r.get(LAST_REPORT_KEY)
    return ScanReport.model_validate_json(raw) if raw else None

def build_stack(cfg: Config, r: Optional[redis.Redis] = None,
                http: Optional[httpx.AsyncClient] = None) -> ScannerStack:
    """One TokenCache, one bucket and one orchestrator per process, shared by ticks and manual runs."""
    s = cfg.scan
    http = http or httpx.AsyncClient(base_url=cfg.kis.base_url, timeout=s.timeout_s)
    tokens = TokenCache(http, cfg.kis.app_key, cfg.kis.app_secret,
                        margin_s=s.token_margin_s, default_ttl_s=s.default_token_ttl_s,
                        timeout_s=s.timeout_s, r=r, config_id=cfg.kis.config_id)
    bucket = TokenBucket.from_min_interval(s.min_interval_s)
    client = KisClient(http, tokens, bucket, cfg.kis.app_key, cfg.kis.app_secret,
                       timeout_s=s.timeout_s, ranking_gubn=s.ranking_gubn)
    orchestrator = ScanOrchestrator(client, AlertNotifier(r, s.alert_cooldown_s),
                                    exchange_code=s.exchange_code, top_n=s.top_n,
                                    history_min=s.history_min, pattern=PatternConfig(**cfg.pattern))
    scheduler = ScanScheduler(orchestrator, s.interval_s, on_report=report_saver(r))
    return ScannerStack(cfg, http, r, tokens, client, scheduler)

# ---------- MAIN ----------
async def main(cfg: Optional[Config] = None):
    cfg = cfg or load_config()
    setup_logging(cfg.log_level)
    if not (cfg.kis.app_key and cfg.kis.app_secret):
        log.error("[runner] KIS_APP_KEY / KIS_APP_SECRET missing, scanner not started")
        return

    r = redis.from_url(cfg.redis_url, decode_responses=True) if cfg.redis_url else None
    stack = build_stack(cfg, r)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stack.scheduler.stop)

    log.info("[runner] scanner started; %s top %d every %.0fs",
             cfg.scan.exchange_code, cfg.scan.top_n, cfg.scan.interval_s)
    try:
        await stack.scheduler.loop()
        await stack.scheduler.drain()
    finally:
        await stack.aclose()

if __name__ == "__main__":
    asyncio.run(main())
