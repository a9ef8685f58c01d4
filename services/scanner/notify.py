# services/scanner/notify.py
import os
import json
import time
import asyncio
import logging
from typing import Optional, Dict, Any, Callable, Awaitable
from datetime import datetime, timezone

import httpx
import redis.asyncio as redis

from libs.common.errors import NotifyError
from libs.common.models import Alert

log = logging.getLogger("scanner.notify")

# --- Envs ---
DISCORD_WEBHOOK_URL = os.getenv("DISCORD_WEBHOOK_URL", "").strip()
DISCORD_ENABLE = os.getenv("DISCORD_ENABLE", "true").strip().lower() in ("1", "true", "yes", "on")
DISCORD_USERNAME = os.getenv("DISCORD_USERNAME", "").strip()

TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "").strip()
TELEGRAM_CHAT_ID = os.getenv("TELEGRAM_CHAT_ID", "").strip()

ALERTS_CHANNEL = "alerts"
CONDITIONS = (
    "Volume leader (top of the exchange ranking)",
    "Uptrend recovery (near the 30-minute high, above the mid-window reference)",
    "Bullish belt-hold in the last 5 minutes",
)

def _discord_enabled() -> bool:
    return bool(DISCORD_ENABLE and DISCORD_WEBHOOK_URL)

def _telegram_enabled() -> bool:
    return bool(TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID)

def _fmt(v: Any, spec: str = "") -> str:
    if v is None:
        return "-"
    try:
        return format(v, spec)
    except (TypeError, ValueError):
        return str(v)

def alert_title(alert: Alert) -> str:
    return f"Strong setup: {alert.display_name} ({alert.symbol})"

def alert_fields(alert: Alert) -> Dict[str, str]:
    return {
        "Price": f"${_fmt(alert.last_price)}",
        "Change": f"{_fmt(alert.change_rate)}%",
        "Volume": _fmt(alert.volume, ",.0f"),
        "Score": _fmt(alert.score, ".1f"),
    }

def alert_text(alert: Alert) -> str:
    lines = [alert_title(alert)]
    lines += [f"{k}: {v}" for k, v in alert_fields(alert).items()]
    lines += [f"- {c}" for c in CONDITIONS]
    return "\n".join(lines)

async def _discord_post(cli: httpx.AsyncClient, payload: Dict[str, Any]) -> None:
    r = await cli.post(DISCORD_WEBHOOK_URL, json=payload)
    if r.status_code == 429:
        try:
            data = r.json()
        except ValueError:
            data = {}
        retry = float(data.get("retry_after", 1.5))
        log.warning("[discord] 429 rate limited, retry_after=%ss", retry)
        await asyncio.sleep(retry)
        r = await cli.post(DISCORD_WEBHOOK_URL, json=payload)
    if r.status_code >= 400:
        raise NotifyError(f"[discord] HTTP {r.status_code}: {r.text[:200]}")

async def _telegram_post(cli: httpx.AsyncClient, text: str) -> None:
    r = await cli.post(
        f"https://api.telegram.org/bot{TELEGRAM_BOT_TOKEN}/sendMessage",
        json={"chat_id": TELEGRAM_CHAT_ID, "text": text, "disable_web_page_preview": True},
    )
    if r.status_code >= 400:
        raise NotifyError(f"[tg] HTTP {r.status_code}: {r.text[:200]}")

async def notify_alert(alert: Alert, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
    """
    Delivers one alert:
      - Discord embed if configured,
      - Telegram if configured,
      - console otherwise.
    Raises NotifyError when every configured channel failed.
    """
    errors = []
    if _discord_enabled() or _telegram_enabled():
        async with httpx.AsyncClient(timeout=10, transport=transport) as cli:
            if _discord_enabled():
                embed = {
                    "title": alert_title(alert),
                    "description": "\n".join(f"✅ {c}" for c in CONDITIONS),
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "color": 0x2ECC71,
                    "fields": [{"name": k, "value": v, "inline": True} for k, v in alert_fields(alert).items()],
                }
                payload: Dict[str, Any] = {"embeds": [embed]}
                if DISCORD_USERNAME:
                    payload["username"] = DISCORD_USERNAME
                try:
                    await _discord_post(cli, payload)
                    log.info("[discord] sent: %s", alert.symbol)
                    return
                except (NotifyError, httpx.HTTPError) as e:
                    log.warning("[discord] send error: %r", e)
                    errors.append(str(e))

            if _telegram_enabled():
                try:
                    await _telegram_post(cli, alert_text(alert))
                    log.info("[tg] sent: %s", alert.symbol)
                    return
                except (NotifyError, httpx.HTTPError) as e:
                    log.warning("[tg] send error: %r", e)
                    errors.append(str(e))
        raise NotifyError("; ".join(errors) or "no channel delivered")

    # fallback console
    log.info("[notify] %s", alert_text(alert).replace("\n", " | "))

class AlertNotifier:
    """
    Collaborator called once per Alert by the scan.
    Optional cross-cycle suppression: with cooldown_s > 0 a symbol alerted less than
    cooldown_s ago is not delivered again (Redis SET NX EX). Delivered alerts are
    published on the `alerts` channel for the dashboard.
    """
    def __init__(self, r: Optional[redis.Redis] = None, cooldown_s: int = 0,
                 send: Callable[[Alert], Awaitable[None]] = notify_alert):
        self.r = r
        self.cooldown_s = int(cooldown_s)
        self._send = send

    async def _claim(self, symbol: str) -> bool:
        if self.r is None or self.cooldown_s <= 0:
            return True
        try:
            ok = await self.r.set(f"alert:sent:{symbol}", "1", nx=True, ex=self.cooldown_s)
            return bool(ok)
        except Exception as e:
            log.warning("[notify] cooldown check error for %s: %r", symbol, e)
            return True

    async def _release(self, symbol: str) -> None:
        if self.r is None or self.cooldown_s <= 0:
            return
        try:
            await self.r.delete(f"alert:sent:{symbol}")
        except Exception as e:
            log.warning("[notify] cooldown release error for %s: %r", symbol, e)

    async def send(self, alert: Alert) -> Alert:
        if not await self._claim(alert.symbol):
            log.info("[notify] %s suppressed (cooldown %ss)", alert.symbol, self.cooldown_s)
            return alert.model_copy(update={"suppressed": True})

        # undelivered alerts must not start the cooldown
        try:
            await self._send(alert)
        except NotifyError:
            await self._release(alert.symbol)
            raise
        except Exception as e:
            await self._release(alert.symbol)
            raise NotifyError(repr(e)) from e

        sent = alert.model_copy(update={"delivered": True})
        if self.r is not None:
            try:
                msg = {**sent.payload(), "score": sent.score, "ts": int(time.time() * 1000)}
                await self.r.publish(ALERTS_CHANNEL, json.dumps(msg))
            except Exception as e:
                log.warning("[notify] publish error: %r", e)
        return sent
