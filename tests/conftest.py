from typing import Dict, List, Optional

import pytest

from libs.common.models import Candle


class FakeRedis:
    """In-memory stand-in for the few redis.asyncio calls the scanner makes."""

    def __init__(self):
        self.store: Dict[str, str] = {}
        self.ttl: Dict[str, Optional[int]] = {}
        self.published: List[tuple] = []

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.store:
            return None
        self.store[key] = value
        self.ttl[key] = ex
        return True

    async def delete(self, *keys):
        n = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                self.ttl.pop(key, None)
                n += 1
        return n

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 1

    async def aclose(self):
        pass


class FakeClock:
    """time source whose sleep() advances it instantly."""

    def __init__(self, start: float = 1_000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, s: float) -> None:
        self.sleeps.append(s)
        self.now += s


def flat_candles(closes, spread: float = 0.5) -> List[Candle]:
    """Newest-first candles whose open == close, no belt-hold anywhere."""
    return [
        Candle(open=c, high=c + spread, low=c - spread, close=c, sequence_index=i)
        for i, c in enumerate(closes)
    ]


def uptrend_closes() -> List[float]:
    # p0 at the 30-min high, low 93.0 at index 14, midRef = 94.0
    p = [100.0, 99.0, 98.8] + [97.0] * 11 + [93.0, 94.0, 95.0] + [96.0] * 13
    assert len(p) == 30
    return p


BELT_HOLD = {"open": 10.00, "low": 9.99, "high": 10.20, "close": 10.19}


def kis_chart_rows(history: List[Candle]) -> List[dict]:
    return [
        {"open": str(c.open), "high": str(c.high), "low": str(c.low), "last": str(c.close)}
        for c in history
    ]


def matching_history() -> List[Candle]:
    h = flat_candles(uptrend_closes())
    # candle 2 becomes a belt-hold; its close stays 98.8 so the trend is unchanged
    h[2] = Candle(open=98.0, low=97.95, high=98.85, close=98.8, sequence_index=2)
    return h


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def clock():
    return FakeClock()
