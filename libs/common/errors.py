from __future__ import annotations
from typing import Optional

class ScanError(Exception):
    """Base for every error raised by the scanner components."""

class AuthError(ScanError):
    """Token endpoint unreachable or credentials rejected. Fatal to a scan cycle."""
    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body

    def __str__(self) -> str:
        base = super().__str__()
        if self.status is not None:
            return f"{base} (HTTP {self.status}: {self.body[:200]})"
        return f"{base} ({self.body[:200]})" if self.body else base

class FetchError(ScanError):
    """Ranking or chart call failed: HTTP status, timeout, upstream rt_cd or bad payload."""
    def __init__(self, status: Optional[int], body: str = "", what: str = "fetch"):
        super().__init__(f"{what} failed")
        self.status = status
        self.body = body
        self.what = what

    def __str__(self) -> str:
        if self.status is None:
            return f"{self.what} failed: {self.body[:200]}"
        return f"{self.what} failed: HTTP {self.status}: {self.body[:200]}"

class InsufficientDataError(ScanError):
    """History shorter than the evaluation window. Soft: the symbol is skipped."""
    def __init__(self, symbol: str, have: int, need: int):
        super().__init__(f"{symbol}: {have} candles < {need}")
        self.symbol = symbol
        self.have = have
        self.need = need

class NotifyError(ScanError):
    """Delivery collaborator failure. Never affects the cycle."""
