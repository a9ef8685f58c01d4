import asyncio

import httpx
import pytest

from libs.common.errors import FetchError
from libs.common.models import Credential
from libs.common.ratelimit import TokenBucket
from services.scanner.kis_client import CHART_PATH, CHART_TR_ID, RANKING_PATH, RANKING_TR_ID, KisClient
from services.scanner.token_cache import TokenCache

BASE = "https://kis.test"

RANKING_ROWS = [
    {"symb": "NVDA", "name": "NVIDIA", "last": "120.50", "rate": "2.31", "tvol": "1,234,567"},
    {"symb": "", "name": "broken row"},
    {"symb": "TSLA", "name": "Tesla", "last": "250.1", "rate": "-1.2", "tvol": "999"},
]


def make_client(handler, clock, bucket=None, r=None):
    http = httpx.AsyncClient(base_url=BASE, transport=httpx.MockTransport(handler))
    tokens = TokenCache(http, "key", "secret", clock=clock, r=r)
    tokens._cred = Credential(value="tok", expires_at=clock.now + 86400)
    bucket = bucket or TokenBucket.from_min_interval(0.5, clock=clock, sleep=clock.sleep)
    return KisClient(http, tokens, bucket, "key", "secret", timeout_s=5.0)


def test_ranking_request_shape_and_parsing(clock):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"rt_cd": "0", "output2": RANKING_ROWS})

    client = make_client(handler, clock)
    ranking = asyncio.run(client.fetch_ranking("NAS"))

    req = seen[0]
    assert req.url.path == RANKING_PATH
    assert dict(req.url.params) == {"EXCD": "NAS", "GUBN": "0"}
    assert req.headers["authorization"] == "Bearer tok"
    assert req.headers["tr_id"] == RANKING_TR_ID
    assert req.headers["custtype"] == "P"
    assert req.headers["appkey"] == "key"
    assert req.headers["appsecret"] == "secret"

    assert [i.symbol for i in ranking] == ["NVDA", "TSLA"]
    assert [i.rank for i in ranking] == [0, 1]
    nvda = ranking[0]
    assert nvda.display_name == "NVIDIA"
    assert nvda.last_price == 120.5
    assert nvda.change_rate == 2.31
    assert nvda.volume == 1234567.0


def test_history_parsing_keeps_order_and_tolerates_bad_fields(clock):
    rows = [
        {"open": "10.00", "high": "10.20", "low": "9.99", "last": "10.19"},
        {"open": "", "high": "abc", "low": "9.5", "last": "9.8"},
    ]

    def handler(request):
        assert request.url.path == CHART_PATH
        assert dict(request.url.params) == {"EXCD": "NAS", "SYMB": "NVDA", "TM_GUBW": "0"}
        assert request.headers["tr_id"] == CHART_TR_ID
        return httpx.Response(200, json={"rt_cd": "0", "output2": rows})

    client = make_client(handler, clock)
    history = asyncio.run(client.fetch_intraday_history("NAS", "NVDA"))
    assert [c.sequence_index for c in history] == [0, 1]
    assert history[0].close == 10.19
    assert history[1].open is None
    assert history[1].high is None
    assert history[1].close == 9.8


def test_missing_output2_is_empty(clock):
    client = make_client(lambda req: httpx.Response(200, json={"rt_cd": "0"}), clock)
    assert asyncio.run(client.fetch_ranking("NAS")) == []


@pytest.mark.parametrize("response,status", [
    (httpx.Response(500, text="oops"), 500),
    (httpx.Response(200, text="<html>not json</html>"), 200),
    (httpx.Response(200, json={"rt_cd": "1", "msg1": "invalid EXCD"}), 200),
    (httpx.Response(200, json={"rt_cd": "0", "output2": {"not": "a list"}}), 200),
])
def test_fetch_errors(clock, response, status):
    client = make_client(lambda req: response, clock)
    with pytest.raises(FetchError) as ei:
        asyncio.run(client.fetch_intraday_history("NAS", "NVDA"))
    assert ei.value.status == status


def test_rt_cd_error_carries_upstream_message(clock):
    client = make_client(lambda req: httpx.Response(200, json={"rt_cd": "1", "msg1": "invalid EXCD"}), clock)
    with pytest.raises(FetchError) as ei:
        asyncio.run(client.fetch_ranking("XXX"))
    assert "invalid EXCD" in ei.value.body


def test_timeout_is_fetch_error(clock):
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    client = make_client(handler, clock)
    with pytest.raises(FetchError) as ei:
        asyncio.run(client.fetch_ranking("NAS"))
    assert ei.value.status is None
    assert "timeout" in ei.value.body


def test_expired_token_response_invalidates_cache(clock):
    client = make_client(
        lambda req: httpx.Response(500, json={"rt_cd": "1", "msg_cd": "EGW00123", "msg1": "token expired"}),
        clock,
    )
    with pytest.raises(FetchError):
        asyncio.run(client.fetch_ranking("NAS"))
    assert client.tokens._cred is None


def test_rejected_token_is_not_reloaded_from_redis(clock, fake_redis):
    rejected = Credential(value="tok", expires_at=clock.now + 86400)
    fake_redis.store["kis:token:default"] = rejected.model_dump_json()
    client = make_client(lambda req: httpx.Response(401, text="expired"), clock, r=fake_redis)
    with pytest.raises(FetchError):
        asyncio.run(client.fetch_ranking("NAS"))
    assert client.tokens._cred is None
    assert "kis:token:default" not in fake_redis.store


def test_calls_are_paced(clock):
    stamps = []

    def handler(request):
        stamps.append(clock.now)
        return httpx.Response(200, json={"rt_cd": "0", "output2": []})

    client = make_client(handler, clock)

    async def go():
        await client.fetch_ranking("NAS")
        for sym in ("A", "B", "C"):
            await client.fetch_intraday_history("NAS", sym)

    asyncio.run(go())
    gaps = [b - a for a, b in zip(stamps, stamps[1:])]
    assert all(g >= 0.5 - 1e-9 for g in gaps)
