# services/scanner/strategy.py
from __future__ import annotations
import math
from typing import List, Dict, Any, Optional

from libs.common.errors import InsufficientDataError
from libs.common.models import Candle, RankedInstrument, ScanVerdict
from libs.common.signals import PatternConfig, evaluate

def _num(v: Any, positive: bool = False) -> Optional[float]:
    """KIS sends numbers as strings ("1,234.50", "", None). Unparseable -> None."""
    if v is None or isinstance(v, bool):
        return None
    try:
        x = float(str(v).replace(",", "").strip())
    except ValueError:
        return None
    if not math.isfinite(x):
        return None
    if positive and x <= 0:
        return None
    return x

def adapt_ranking(rows: List[Dict[str, Any]]) -> List[RankedInstrument]:
    """
    KIS trade-vol output2 row: { symb, name, last, rate, tvol, ... }
    -> RankedInstrument, upstream order kept. Rows without a symbol are dropped.
    """
    out: List[RankedInstrument] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        sym = str(row.get("symb") or "").strip()
        if not sym:
            continue
        out.append(RankedInstrument(
            symbol=sym,
            display_name=str(row.get("name") or sym).strip(),
            last_price=_num(row.get("last"), positive=True),
            change_rate=_num(row.get("rate")),
            volume=_num(row.get("tvol")),
            rank=len(out),
        ))
    return out

def adapt_candles(rows: List[Dict[str, Any]]) -> List[Candle]:
    """
    KIS time-itemchartprice output2 row: { open, high, low, last, ... }, newest first.
    Bad fields become None and only disqualify that candle.
    """
    out: List[Candle] = []
    for i, row in enumerate(rows):
        row = row if isinstance(row, dict) else {}
        out.append(Candle(
            open=_num(row.get("open"), positive=True),
            high=_num(row.get("high"), positive=True),
            low=_num(row.get("low"), positive=True),
            close=_num(row.get("last"), positive=True),
            sequence_index=i,
        ))
    return out

def build_verdict(inst: RankedInstrument, history: List[Candle],
                  cfg: Optional[PatternConfig] = None) -> ScanVerdict:
    cfg = cfg or PatternConfig()
    res = evaluate(history, cfg)
    if res is None:
        raise InsufficientDataError(inst.symbol, len(history or []), int(cfg["window"]))

    return ScanVerdict(
        symbol=inst.symbol,
        display_name=inst.display_name,
        last_price=inst.last_price,
        change_rate=inst.change_rate,
        volume=inst.volume,
        trend_ok=res["trend_ok"],
        candle_signature_ok=res["candle_signature_ok"],
        score=round(float(res["score"]), 4),
        rank=inst.rank,
        details={
            "price": res["trend"]["price"],
            "high30": res["trend"]["high"],
            "low30": res["trend"]["low"],
            "mid_ref": res["trend"]["mid_ref"],
            "belt_hold_index": res["signature"]["matched_index"],
        },
    )
