# services/scanner/token_cache.py
from __future__ import annotations
import time
import asyncio
import logging
from typing import Optional, Callable

import httpx
import redis.asyncio as redis

from libs.common.errors import AuthError
from libs.common.models import Credential

log = logging.getLogger("scanner.token")

TOKEN_PATH = "/oauth2/tokenP"

class TokenCache:
    """
    Owns the upstream access token.
    - get_token() returns a Credential valid for at least `margin_s` more seconds,
      refreshing when absent or about to expire.
    - single-flight: callers arriving during a refresh wait on the lock and reuse its result.
    - optional Redis persistence under `kis:token:<config_id>` so cold starts reuse a live token;
      a persisted token is re-checked for expiry before being trusted.
    """
    def __init__(self, http: httpx.AsyncClient, app_key: str, app_secret: str, *,
                 margin_s: float = 300.0,
                 default_ttl_s: float = 7200.0,
                 timeout_s: float = 5.0,
                 r: Optional[redis.Redis] = None,
                 config_id: str = "default",
                 clock: Callable[[], float] = time.time):
        self.http = http
        self.app_key = app_key
        self.app_secret = app_secret
        self.margin_s = margin_s
        self.default_ttl_s = default_ttl_s
        self.timeout_s = timeout_s
        self.r = r
        self.cache_key = f"kis:token:{config_id}"
        self._clock = clock
        self._cred: Optional[Credential] = None
        self._lock: Optional[asyncio.Lock] = None
        self.refresh_count = 0

    def _valid(self, cred: Optional[Credential]) -> bool:
        return cred is not None and cred.is_valid(self._clock(), self.margin_s)

    async def invalidate(self) -> None:
        """Drops the token everywhere: a rejected token must not come back from Redis."""
        if self._cred is not None:
            log.info("[token] cached token invalidated")
        self._cred = None
        if self.r is None:
            return
        try:
            await self.r.delete(self.cache_key)
        except Exception as e:
            log.warning("[token] persisted token delete error: %r", e)

    async def get_token(self) -> Credential:
        cred = self._cred
        if self._valid(cred):
            return cred
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            # un autre appelant a peut-être déjà rafraîchi
            cred = self._cred
            if self._valid(cred):
                return cred

            cred = await self._load_persisted()
            if self._valid(cred):
                self._cred = cred
                return cred

            cred = await self._refresh()
            self._cred = cred
            await self._persist(cred)
            return cred

    async def _refresh(self) -> Credential:
        body = {"grant_type": "client_credentials", "appkey": self.app_key, "appsecret": self.app_secret}
        self.refresh_count += 1
        try:
            resp = await self.http.post(TOKEN_PATH, json=body, timeout=self.timeout_s)
        except httpx.HTTPError as e:
            log.error("[token] request error: %r", e)
            raise AuthError("token endpoint unreachable", None, repr(e)) from e

        if resp.status_code >= 400:
            log.error("[token] HTTP %s: %s", resp.status_code, resp.text[:300])
            raise AuthError("token request rejected", resp.status_code, resp.text)
        try:
            data = resp.json()
        except ValueError as e:
            raise AuthError("token response is not JSON", resp.status_code, resp.text) from e

        value = data.get("access_token") if isinstance(data, dict) else None
        if not value:
            log.error("[token] no access_token in response: %s", resp.text[:300])
            raise AuthError("token response lacks access_token", resp.status_code, resp.text)

        try:
            ttl = float(data.get("expires_in") or self.default_ttl_s)
        except (TypeError, ValueError):
            ttl = self.default_ttl_s
        cred = Credential(value=value, expires_at=self._clock() + ttl)
        log.info("[token] refreshed, expires in %.0fs", ttl)
        return cred

    async def _load_persisted(self) -> Optional[Credential]:
        if self.r is None:
            return None
        try:
            raw = await self.r.get(self.cache_key)
            if not raw:
                return None
            cred = Credential.model_validate_json(raw)
        except Exception as e:
            log.warning("[token] persisted token unreadable: %r", e)
            return None
        if not self._valid(cred):
            return None
        log.info("[token] reusing persisted token")
        return cred

    async def _persist(self, cred: Credential) -> None:
        if self.r is None:
            return
        ttl = int(cred.expires_at - self._clock())
        if ttl <= 0:
            return
        try:
            await self.r.set(self.cache_key, cred.model_dump_json(), ex=ttl)
        except Exception as e:
            log.warning("[token] persist error: %r", e)
