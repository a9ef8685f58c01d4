from __future__ import annotations
from typing import Dict, Any, Optional, Sequence

from libs.common.models import Candle

# --- config ---

class PatternConfig(dict):
    """
    Thresholds of the trend-recovery + bullish belt-hold pattern.
    Defaults are the later, more elaborated variant (0.997 / 0.9985, 5 candles);
    the earlier one (0.995 / 0.993, 3 candles) is a matter of overrides in app.yaml.
    """
    DEFAULTS = {
        "window": 30,                 # closes considered for the trend
        "near_high": 0.997,           # p0 >= high30 * near_high
        "above_low": 1.0015,          # p0 >  low30 * above_low
        "mid_ref_start": 14,          # midRef = mean(p[14..16])
        "mid_ref_len": 3,
        "belt_window": 5,             # most recent candles scanned for a belt-hold
        "open_wick": 1.0015,          # open <= low * open_wick
        "close_wick": 0.9985,         # close >= high * close_wick
        "body_ratio": 0.7,            # body >= range * body_ratio
        "range_eps": 1e-4,            # floor for high - low
        "score_base": 1.0,
        "w_trend": 1.5,
        "w_signature": 2.0,
    }

    def __init__(self, **kwargs):
        d = dict(self.DEFAULTS)
        d.update(kwargs or {})
        super().__init__(d)

# --- trend ---

def compute_trend(closes: Sequence[Optional[float]], cfg: PatternConfig) -> Dict[str, Any]:
    """
    closes: newest-first, at least cfg["window"] entries.
    A missing close inside the window means the trend cannot be established.
    """
    window = int(cfg["window"])
    p = list(closes[:window])
    out: Dict[str, Any] = {"trend_ok": False, "price": None, "high": None, "low": None, "mid_ref": None}
    if len(p) < window or any(v is None for v in p):
        return out

    start = int(cfg["mid_ref_start"])
    length = max(1, int(cfg["mid_ref_len"]))
    mid = p[start:start + length]
    if len(mid) < length:
        return out

    price = p[0]
    high = max(p)
    low = min(p)
    mid_ref = sum(mid) / length

    # multiplications only: flat prices (high == low) resolve to False without dividing
    out.update({
        "price": price, "high": high, "low": low, "mid_ref": mid_ref,
        "trend_ok": bool(
            price >= high * float(cfg["near_high"])
            and price > low * float(cfg["above_low"])
            and price > mid_ref
        ),
    })
    return out

# --- candle signature ---

def is_bullish_belt_hold(c: Candle, cfg: PatternConfig) -> bool:
    o, h, l, cl = c.open, c.high, c.low, c.close
    if o is None or h is None or l is None or cl is None:
        return False
    if not cl > o:
        return False
    if o > l * float(cfg["open_wick"]):
        return False
    if cl < h * float(cfg["close_wick"]):
        return False
    rng = max(h - l, float(cfg["range_eps"]))
    return (cl - o) >= rng * float(cfg["body_ratio"])

def compute_signature(candles: Sequence[Candle], cfg: PatternConfig) -> Dict[str, Any]:
    recent = list(candles[:int(cfg["belt_window"])])
    for i, c in enumerate(recent):
        if is_bullish_belt_hold(c, cfg):
            return {"candle_signature_ok": True, "matched_index": i}
    return {"candle_signature_ok": False, "matched_index": None}

# --- scoring ---

def score_from_flags(trend_ok: bool, signature_ok: bool, cfg: PatternConfig) -> float:
    s = float(cfg["score_base"])
    if trend_ok:
        s += float(cfg["w_trend"])
    if signature_ok:
        s += float(cfg["w_signature"])
    return s

def evaluate(history: Sequence[Candle], cfg: Optional[PatternConfig] = None) -> Optional[Dict[str, Any]]:
    """
    Pure evaluation of a newest-first history.
    Returns None (insufficient data) when fewer than cfg["window"] candles are given, else:
      { "trend_ok", "candle_signature_ok", "score", "trend": {...}, "signature": {...} }
    """
    cfg = cfg or PatternConfig()
    if history is None or len(history) < int(cfg["window"]):
        return None

    trend = compute_trend([c.close for c in history], cfg)
    sig = compute_signature(history, cfg)
    trend_ok = trend["trend_ok"]
    sig_ok = sig["candle_signature_ok"]

    return {
        "trend_ok": trend_ok,
        "candle_signature_ok": sig_ok,
        "score": score_from_flags(trend_ok, sig_ok, cfg),
        "trend": trend,
        "signature": sig,
    }