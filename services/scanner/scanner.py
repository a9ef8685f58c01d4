# services/scanner/scanner.py
from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import List, Optional, Set

from libs.common.errors import AuthError, FetchError, InsufficientDataError, NotifyError
from libs.common.models import Alert, RankedInstrument, ScanReport, ScanVerdict, SymbolOutcome
from libs.common.signals import PatternConfig
from services.scanner.kis_client import KisClient
from services.scanner.notify import AlertNotifier
from services.scanner.strategy import build_verdict

log = logging.getLogger("scanner.scan")

def iso_utc() -> str:
    return datetime.now(timezone.utc).isoformat()

class ScanOrchestrator:
    """
    One scan cycle: ranking -> top N -> history per symbol -> verdict -> alerts.
    Only AuthError and a failed ranking fetch abort the cycle; any per-symbol
    problem becomes a SymbolOutcome and the loop moves on.
    """
    def __init__(self, client: KisClient, notifier: AlertNotifier, *,
                 exchange_code: str = "NAS", top_n: int = 20, history_min: int = 30,
                 pattern: Optional[PatternConfig] = None):
        self.client = client
        self.notifier = notifier
        self.exchange_code = exchange_code
        self.top_n = top_n
        self.history_min = history_min
        self.pattern = pattern or PatternConfig()

    def _failed(self, report: ScanReport, err: Exception) -> ScanReport:
        report.status = "failed"
        report.error = str(err)
        report.alerts = []
        report.finished_at = iso_utc()
        log.error("[scan] cycle aborted: %s", err)
        return report

    async def _scan_symbol(self, inst: RankedInstrument, report: ScanReport) -> Optional[ScanVerdict]:
        try:
            history = await self.client.fetch_intraday_history(self.exchange_code, inst.symbol)
            if len(history) < self.history_min:
                raise InsufficientDataError(inst.symbol, len(history), self.history_min)
            verdict = build_verdict(inst, history, self.pattern)
        except AuthError:
            raise
        except FetchError as e:
            log.warning("[scan] %s fetch error: %s", inst.symbol, e)
            report.outcomes.append(SymbolOutcome(symbol=inst.symbol, rank=inst.rank, status="error", reason=str(e)))
            return None
        except InsufficientDataError as e:
            log.debug("[scan] %s skipped: %s", inst.symbol, e)
            report.outcomes.append(SymbolOutcome(symbol=inst.symbol, rank=inst.rank, status="skipped",
                                                 reason=f"insufficient data ({e.have}/{e.need})"))
            return None
        except (ValueError, TypeError, ArithmeticError) as e:
            log.warning("[scan] %s evaluation error: %r", inst.symbol, e)
            report.outcomes.append(SymbolOutcome(symbol=inst.symbol, rank=inst.rank, status="error",
                                                 reason=f"evaluation: {e!r}"))
            return None
        except Exception as e:
            log.exception("[scan] %s unexpected error", inst.symbol)
            report.outcomes.append(SymbolOutcome(symbol=inst.symbol, rank=inst.rank, status="error",
                                                 reason=f"unexpected: {e!r}"))
            return None

        report.outcomes.append(SymbolOutcome(symbol=inst.symbol, rank=inst.rank, status="ok"))
        return verdict

    async def _emit(self, verdicts: List[ScanVerdict]) -> List[Alert]:
        alerts: List[Alert] = []
        seen: Set[str] = set()
        for v in verdicts:
            if not v.is_alert or v.symbol in seen:
                continue
            seen.add(v.symbol)
            alert = Alert(symbol=v.symbol, display_name=v.display_name, last_price=v.last_price,
                          change_rate=v.change_rate, volume=v.volume, score=v.score)
            log.info("[scan] ALERT %s (%s) px=%s rate=%s score=%.1f",
                     v.symbol, v.display_name, v.last_price, v.change_rate, v.score)
            try:
                alert = await self.notifier.send(alert)
            except NotifyError as e:
                log.warning("[scan] notify failed for %s: %s", v.symbol, e)
                alert = alert.model_copy(update={"error": str(e)})
            alerts.append(alert)
        return alerts

    async def run_cycle(self, trigger: str = "schedule") -> ScanReport:
        report = ScanReport(trigger=trigger, exchange_code=self.exchange_code, started_at=iso_utc())
        log.info("[scan] cycle start (%s, %s)", self.exchange_code, trigger)

        try:
            await self.client.tokens.get_token()
            ranking = await self.client.fetch_ranking(self.exchange_code)
        except (AuthError, FetchError) as e:
            return self._failed(report, e)

        instruments = ranking[:self.top_n]
        if not instruments:
            log.info("[scan] empty ranking, nothing to scan")

        verdicts: List[ScanVerdict] = []
        for inst in instruments:
            try:
                v = await self._scan_symbol(inst, report)
            except AuthError as e:
                return self._failed(report, e)
            if v is not None:
                verdicts.append(v)

        # sorted() is stable: ties keep the ranking order
        report.verdicts = sorted(verdicts, key=lambda v: -v.score)
        report.alerts = await self._emit(report.verdicts)
        report.finished_at = iso_utc()

        errors = len(report.failed_symbols)
        log.info("[scan] cycle done: %d scanned, %d verdicts, %d alerts, %d errors",
                 len(instruments), len(verdicts), len(report.alerts), errors)
        return report
