from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Optional, Literal, List, Dict, Any

class Credential(BaseModel):
    value: str
    expires_at: float  # epoch seconds

    def is_valid(self, now: float, margin_s: float = 0.0) -> bool:
        return now < self.expires_at - max(0.0, margin_s)

class Candle(BaseModel):
    # None = champ absent ou non numérique côté upstream
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    close: Optional[float] = None
    sequence_index: int = 0  # 0 = bougie courante

class RankedInstrument(BaseModel):
    symbol: str
    display_name: str = ""
    last_price: Optional[float] = None
    change_rate: Optional[float] = None
    volume: Optional[float] = None
    rank: int = 0

class ScanVerdict(BaseModel):
    symbol: str
    display_name: str = ""
    last_price: Optional[float] = None
    change_rate: Optional[float] = None
    volume: Optional[float] = None
    trend_ok: bool
    candle_signature_ok: bool
    score: float
    rank: int = 0
    details: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_alert(self) -> bool:
        return self.trend_ok and self.candle_signature_ok

class Alert(BaseModel):
    symbol: str
    display_name: str = ""
    last_price: Optional[float] = None
    change_rate: Optional[float] = None
    volume: Optional[float] = None
    score: float = 0.0
    delivered: bool = False
    suppressed: bool = False
    error: Optional[str] = None

    def payload(self) -> Dict[str, Any]:
        """Fields handed to the delivery collaborator."""
        return {
            "symbol": self.symbol,
            "displayName": self.display_name,
            "lastPrice": self.last_price,
            "changeRate": self.change_rate,
            "volume": self.volume,
        }

class SymbolOutcome(BaseModel):
    symbol: str
    rank: int = 0
    status: Literal["ok", "skipped", "error"]
    reason: Optional[str] = None

class ScanReport(BaseModel):
    status: Literal["ok", "failed"] = "ok"
    trigger: str = "schedule"
    exchange_code: str = ""
    started_at: str
    finished_at: Optional[str] = None
    error: Optional[str] = None
    verdicts: List[ScanVerdict] = Field(default_factory=list)
    alerts: List[Alert] = Field(default_factory=list)
    outcomes: List[SymbolOutcome] = Field(default_factory=list)

    @property
    def failed_symbols(self) -> List[str]:
        return [o.symbol for o in self.outcomes if o.status == "error"]

    @property
    def partial(self) -> bool:
        """True when the cycle completed but some symbols could not be fetched."""
        return self.status == "ok" and bool(self.failed_symbols)
