# services/scanner/kis_client.py
from __future__ import annotations
import logging
from typing import Dict, Any, List, Optional

import httpx

from libs.common.errors import FetchError
from libs.common.models import Candle, RankedInstrument
from libs.common.ratelimit import TokenBucket
from services.scanner.strategy import adapt_candles, adapt_ranking
from services.scanner.token_cache import TokenCache

log = logging.getLogger("scanner.kis")

RANKING_PATH = "/uapi/overseas-stock/v1/ranking/trade-vol"
RANKING_TR_ID = "HHDFS76310010"   # overseas volume ranking
CHART_PATH = "/uapi/overseas-price/v1/quotations/inquire-time-itemchartprice"
CHART_TR_ID = "HHDFS76410000"     # overseas minute chart

# upstream message codes meaning the bearer token is no longer accepted
TOKEN_EXPIRED_CODES = ("EGW00123", "EGW00121")

class KisClient:
    """
    Market-data calls against the KIS open API.
    Every call goes through the shared TokenBucket, so the aggregate rate stays
    under the upstream ceiling whatever the caller's loop looks like.
    """
    def __init__(self, http: httpx.AsyncClient, tokens: TokenCache, bucket: TokenBucket,
                 app_key: str, app_secret: str, timeout_s: float = 5.0, ranking_gubn: str = "0"):
        self.http = http
        self.tokens = tokens
        self.bucket = bucket
        self.app_key = app_key
        self.app_secret = app_secret
        self.timeout_s = timeout_s
        self.ranking_gubn = ranking_gubn

    async def _headers(self, tr_id: str) -> Dict[str, str]:
        cred = await self.tokens.get_token()
        return {
            "content-type": "application/json; charset=utf-8",
            "authorization": f"Bearer {cred.value}",
            "appkey": self.app_key,
            "appsecret": self.app_secret,
            "tr_id": tr_id,
            "custtype": "P",
        }

    async def _get(self, path: str, params: Dict[str, str], tr_id: str, what: str) -> Dict[str, Any]:
        headers = await self._headers(tr_id)
        await self.bucket.acquire()
        try:
            resp = await self.http.get(path, params=params, headers=headers, timeout=self.timeout_s)
        except httpx.TimeoutException as e:
            raise FetchError(None, f"timeout after {self.timeout_s}s", what) from e
        except httpx.HTTPError as e:
            raise FetchError(None, repr(e), what) from e

        data: Optional[Dict[str, Any]] = None
        try:
            parsed = resp.json()
            if isinstance(parsed, dict):
                data = parsed
        except ValueError:
            pass

        if resp.status_code == 401 or (data and data.get("msg_cd") in TOKEN_EXPIRED_CODES):
            await self.tokens.invalidate()
        if resp.status_code >= 400:
            raise FetchError(resp.status_code, resp.text, what)
        if data is None:
            raise FetchError(resp.status_code, f"unexpected payload: {resp.text[:200]}", what)

        rt_cd = data.get("rt_cd")
        if rt_cd not in (None, "", "0"):
            raise FetchError(resp.status_code, str(data.get("msg1") or data), what)
        return data

    @staticmethod
    def _output2(data: Dict[str, Any], status: int, what: str) -> List[Dict[str, Any]]:
        rows = data.get("output2")
        if rows is None:
            return []
        if not isinstance(rows, list):
            raise FetchError(status, f"output2 is {type(rows).__name__}, expected list", what)
        return rows

    async def fetch_ranking(self, exchange_code: str) -> List[RankedInstrument]:
        what = f"ranking {exchange_code}"
        data = await self._get(RANKING_PATH, {"EXCD": exchange_code, "GUBN": self.ranking_gubn},
                               RANKING_TR_ID, what)
        rows = self._output2(data, 200, what)
        ranking = adapt_ranking(rows)
        log.debug("[kis] %s -> %d rows", what, len(ranking))
        return ranking

    async def fetch_intraday_history(self, exchange_code: str, symbol: str) -> List[Candle]:
        what = f"chart {exchange_code}:{symbol}"
        data = await self._get(CHART_PATH, {"EXCD": exchange_code, "SYMB": symbol, "TM_GUBW": "0"},
                               CHART_TR_ID, what)
        return adapt_candles(self._output2(data, 200, what))
