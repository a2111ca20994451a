import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np
import talib

from orchestration.commands import PricePoint


@dataclass(frozen=True)
class KlineRecord:
    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass
class TimeframeIndicators:
    bar: str
    last_close: Optional[float] = None
    ema20: Optional[float] = None
    ema50: Optional[float] = None
    macd: Optional[float] = None
    rsi7: Optional[float] = None
    rsi14: Optional[float] = None
    atr3: Optional[float] = None
    atr14: Optional[float] = None
    last_volume: Optional[float] = None
    volume_avg: Optional[float] = None
    series: Dict[str, List[float]] = field(default_factory=dict)


@dataclass
class HistoryIndicators:
    points: int
    last_price: Optional[float] = None
    change_pct: Optional[float] = None
    ema20: Optional[float] = None
    rsi14: Optional[float] = None
    realized_volatility: Optional[float] = None


def _last(values: np.ndarray) -> Optional[float]:
    if values is None or len(values) == 0:
        return None
    value = float(values[-1])
    return None if math.isnan(value) else value


def _tail(values: np.ndarray, count: int) -> List[float]:
    clean = [float(v) for v in values if not math.isnan(float(v))]
    return clean[-count:]


class IndicatorCalculator:
    """Trend, momentum and volatility measures over candle or tick series."""

    def __init__(
        self,
        ema_fast: int = 20,
        ema_slow: int = 50,
        rsi_fast: int = 7,
        rsi_slow: int = 14,
        macd_fast: int = 12,
        macd_slow: int = 26,
        macd_signal: int = 9,
        atr_fast: int = 3,
        atr_slow: int = 14,
        volume_window: int = 20,
        series_length: int = 8,
    ):
        self.ema_fast = ema_fast
        self.ema_slow = ema_slow
        self.rsi_fast = rsi_fast
        self.rsi_slow = rsi_slow
        self.macd_fast = macd_fast
        self.macd_slow = macd_slow
        self.macd_signal = macd_signal
        self.atr_fast = atr_fast
        self.atr_slow = atr_slow
        self.volume_window = volume_window
        self.series_length = series_length

    def _ema(self, closes: np.ndarray, period: int) -> np.ndarray:
        if len(closes) < period:
            return np.full(len(closes), np.nan)
        return talib.EMA(closes, timeperiod=period)

    def _rsi(self, closes: np.ndarray, period: int) -> np.ndarray:
        if len(closes) <= period:
            return np.full(len(closes), np.nan)
        return talib.RSI(closes, timeperiod=period)

    def _atr(self, highs: np.ndarray, lows: np.ndarray, closes: np.ndarray, period: int) -> np.ndarray:
        if len(closes) <= period:
            return np.full(len(closes), np.nan)
        return talib.ATR(highs, lows, closes, timeperiod=period)

    def _macd(self, closes: np.ndarray) -> np.ndarray:
        if len(closes) < self.macd_slow + self.macd_signal:
            return np.full(len(closes), np.nan)
        macd, _, _ = talib.MACD(
            closes,
            fastperiod=self.macd_fast,
            slowperiod=self.macd_slow,
            signalperiod=self.macd_signal,
        )
        return macd

    def compute(self, bar: str, klines: Sequence[KlineRecord]) -> TimeframeIndicators:
        """Indicators for chronologically ordered candles (oldest first)."""
        result = TimeframeIndicators(bar=bar)
        if not klines:
            return result
        closes = np.array([k.close for k in klines], dtype=float)
        highs = np.array([k.high for k in klines], dtype=float)
        lows = np.array([k.low for k in klines], dtype=float)
        volumes = np.array([k.volume for k in klines], dtype=float)

        ema_fast = self._ema(closes, self.ema_fast)
        ema_slow = self._ema(closes, self.ema_slow)
        macd = self._macd(closes)
        rsi_fast = self._rsi(closes, self.rsi_fast)
        rsi_slow = self._rsi(closes, self.rsi_slow)
        atr_fast = self._atr(highs, lows, closes, self.atr_fast)
        atr_slow = self._atr(highs, lows, closes, self.atr_slow)

        result.last_close = float(closes[-1])
        result.ema20 = _last(ema_fast)
        result.ema50 = _last(ema_slow)
        result.macd = _last(macd)
        result.rsi7 = _last(rsi_fast)
        result.rsi14 = _last(rsi_slow)
        result.atr3 = _last(atr_fast)
        result.atr14 = _last(atr_slow)
        result.last_volume = float(volumes[-1])
        window = volumes[-self.volume_window:]
        result.volume_avg = float(np.mean(window)) if len(window) else None

        n = self.series_length
        result.series = {
            "close": _tail(closes, n),
            "ema20": _tail(ema_fast, n),
            "macd": _tail(macd, n),
            "rsi7": _tail(rsi_fast, n),
            "rsi14": _tail(rsi_slow, n),
        }
        return result

    def summarize_history(self, points: Sequence[PricePoint]) -> HistoryIndicators:
        summary = HistoryIndicators(points=len(points))
        if not points:
            return summary
        prices = np.array([p.mark_price for p in points], dtype=float)
        summary.last_price = float(prices[-1])
        if prices[0] > 0:
            summary.change_pct = float((prices[-1] / prices[0] - 1.0) * 100.0)
        summary.ema20 = _last(self._ema(prices, self.ema_fast))
        summary.rsi14 = _last(self._rsi(prices, self.rsi_slow))
        summary.realized_volatility = realized_volatility(prices)
        return summary


def realized_volatility(prices: Sequence[float]) -> Optional[float]:
    """Standard deviation of log returns."""
    values = np.asarray(prices, dtype=float)
    values = values[values > 0]
    if len(values) < 3:
        return None
    returns = np.diff(np.log(values))
    return float(np.std(returns, ddof=1))
