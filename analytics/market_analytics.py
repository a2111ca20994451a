import asyncio
import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from analytics.history_store import HistoryStore
from analytics.indicators import HistoryIndicators, IndicatorCalculator, KlineRecord, TimeframeIndicators
from ingest.okx_rest import OKXRESTClient
from orchestration.command_bus import CommandBus
from orchestration.commands import Error
from orchestration.errors import ParseError, TradingError


logger = logging.getLogger(__name__)

CANDLES_PATH = "/api/v5/market/candles"
FUNDING_RATE_PATH = "/api/v5/public/funding-rate"
OPEN_INTEREST_PATH = "/api/v5/public/open-interest"
OPEN_INTEREST_HISTORY_PATH = "/api/v5/rubik/stat/contracts/open-interest-history"

INTRADAY_BAR = "3m"
INTRADAY_LIMIT = 160
SWING_BAR = "4H"
SWING_LIMIT = 120
OI_HISTORY_PERIOD = "8H"


@dataclass
class InstrumentAnalytics:
    inst_id: str
    current_price: Optional[float] = None
    funding_rate: Optional[float] = None
    next_funding_time: Optional[int] = None
    open_interest: Optional[float] = None
    open_interest_avg: Optional[float] = None
    intraday: Optional[TimeframeIndicators] = None
    swing: Optional[TimeframeIndicators] = None
    history: Optional[HistoryIndicators] = None


def _as_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_klines(rows: Sequence[Any]) -> List[KlineRecord]:
    """OKX candle rows arrive newest first; return them oldest first."""
    klines: List[KlineRecord] = []
    for row in rows:
        try:
            klines.append(KlineRecord(
                timestamp=int(row[0]),
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=float(row[5]),
            ))
        except (IndexError, TypeError, ValueError) as exc:
            raise ParseError(f"malformed candle row {row!r}") from exc
    klines.sort(key=lambda k: k.timestamp)
    return klines


class MarketAnalyticsFetcher:
    """Per-cycle market context for the AI loop.

    Local history indicators are always available. When a REST client is
    configured, candles, funding and open interest are fetched too; a failed
    instrument is reported as an Error and left out of the result.
    """

    def __init__(
        self,
        history: HistoryStore,
        bus: CommandBus,
        rest: Optional[OKXRESTClient] = None,
        calculator: Optional[IndicatorCalculator] = None,
        max_instruments: int = 3,
    ):
        self.history = history
        self.bus = bus
        self.rest = rest
        self.calculator = calculator or IndicatorCalculator()
        self.max_instruments = max(1, int(max_instruments))

    async def fetch(self, instruments: Sequence[str]) -> List[InstrumentAnalytics]:
        results: List[InstrumentAnalytics] = []
        for inst in list(instruments)[: self.max_instruments]:
            try:
                results.append(await self.fetch_instrument(inst))
            except TradingError as exc:
                logger.warning("Market analytics for %s unavailable: %s", inst, exc)
                await self.bus.publish(Error(
                    f"Market analytics for {inst} unavailable: {exc}",
                    {"component": "analytics", "instrument": inst, "error_type": type(exc).__name__},
                ))
        return results

    async def fetch_instrument(self, inst: str) -> InstrumentAnalytics:
        points = self.history.snapshot(inst)
        analytics = InstrumentAnalytics(
            inst_id=inst,
            current_price=points[-1].mark_price if points else None,
            history=self.calculator.summarize_history(points),
        )
        if self.rest is None:
            return analytics

        intraday_rows, swing_rows, funding, oi, oi_history = await asyncio.gather(
            self.rest.get(CANDLES_PATH, params={"instId": inst, "bar": INTRADAY_BAR, "limit": str(INTRADAY_LIMIT)}),
            self.rest.get(CANDLES_PATH, params={"instId": inst, "bar": SWING_BAR, "limit": str(SWING_LIMIT)}),
            self.rest.get(FUNDING_RATE_PATH, params={"instId": inst}),
            self.rest.get(OPEN_INTEREST_PATH, params={"instId": inst}),
            self.rest.get(OPEN_INTEREST_HISTORY_PATH, params={"instId": inst, "period": OI_HISTORY_PERIOD}),
        )
        analytics.intraday = self.calculator.compute(INTRADAY_BAR, parse_klines(intraday_rows))
        analytics.swing = self.calculator.compute(SWING_BAR, parse_klines(swing_rows))
        if analytics.current_price is None:
            analytics.current_price = analytics.intraday.last_close

        if funding and isinstance(funding[0], dict):
            analytics.funding_rate = _as_float(funding[0].get("fundingRate"))
            next_time = _as_float(funding[0].get("nextFundingTime") or funding[0].get("fundingTime"))
            analytics.next_funding_time = int(next_time) if next_time is not None else None
        if oi and isinstance(oi[0], dict):
            analytics.open_interest = _as_float(oi[0].get("oi"))
        oi_values = [_as_float(row[1]) for row in oi_history if isinstance(row, (list, tuple)) and len(row) > 1]
        oi_values = [v for v in oi_values if v is not None]
        if oi_values:
            analytics.open_interest_avg = sum(oi_values) / len(oi_values)
        return analytics
