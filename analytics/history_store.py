import threading
from collections import deque
from typing import Callable, Deque, Dict, Iterable, List, Optional, Tuple

from orchestration.commands import PricePoint


class HistoryStore:
    """Per-instrument mark-price history bounded by a time window.

    Writers and readers share one short-held lock; ``snapshot`` returns a
    copy so callers never observe a series while it is being modified.

    The window is anchored at the newest timestamp seen for an instrument.
    When a ``clock`` (epoch milliseconds) is supplied, reads additionally
    drop points that fell out of the window relative to that clock.
    """

    def __init__(
        self,
        window_s: float = 3600.0,
        windows: Optional[Dict[str, float]] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        if window_s <= 0:
            raise ValueError("history window must be positive")
        self._default_window_ms = int(window_s * 1000)
        self._window_ms: Dict[str, int] = {
            inst: int(seconds * 1000) for inst, seconds in (windows or {}).items()
        }
        self._clock = clock
        self._series: Dict[str, Deque[PricePoint]] = {}
        self._lock = threading.Lock()

    def window(self, instrument: str) -> float:
        """Configured window for ``instrument`` in seconds."""
        return self._window_for(instrument) / 1000.0

    def _window_for(self, instrument: str) -> int:
        return self._window_ms.get(instrument, self._default_window_ms)

    def push(self, point: PricePoint) -> bool:
        """Insert ``point``; returns False when it is older than the newest point."""
        with self._lock:
            series = self._series.get(point.instrument)
            if series is None:
                series = deque()
                self._series[point.instrument] = series
            if series:
                newest = series[-1].timestamp
                if point.timestamp < newest:
                    return False
                if point.timestamp == newest:
                    series[-1] = point
                    return True
            series.append(point)
            self._evict(series, self._window_for(point.instrument), point.timestamp)
            return True

    def seed(self, instrument: str, points: Iterable[PricePoint]) -> int:
        """Merge historical points into the series; live points win on equal timestamps."""
        incoming = [p for p in points if p.instrument == instrument]
        with self._lock:
            merged: Dict[int, PricePoint] = {p.timestamp: p for p in incoming}
            existing = self._series.get(instrument)
            if existing:
                for point in existing:
                    merged[point.timestamp] = point
            series: Deque[PricePoint] = deque(merged[ts] for ts in sorted(merged))
            if series:
                self._evict(series, self._window_for(instrument), series[-1].timestamp)
            self._series[instrument] = series
            return len(series)

    @staticmethod
    def _evict(series: Deque[PricePoint], window_ms: int, reference_ms: int) -> None:
        cutoff = reference_ms - window_ms
        while series and series[0].timestamp < cutoff:
            series.popleft()

    def _cutoff(self, instrument: str, newest_ms: int) -> Optional[int]:
        if self._clock is None:
            return None
        return max(newest_ms, self._clock()) - self._window_for(instrument)

    def snapshot(self, instrument: str) -> Tuple[PricePoint, ...]:
        with self._lock:
            series = self._series.get(instrument)
            if not series:
                return ()
            points = tuple(series)
        cutoff = self._cutoff(instrument, points[-1].timestamp)
        if cutoff is not None:
            points = tuple(p for p in points if p.timestamp >= cutoff)
        return points

    def latest(self, instrument: str) -> Optional[PricePoint]:
        """Newest point, or None when the series is empty or has gone stale."""
        with self._lock:
            series = self._series.get(instrument)
            point = series[-1] if series else None
        if point is None:
            return None
        cutoff = self._cutoff(instrument, point.timestamp)
        if cutoff is not None and point.timestamp < cutoff:
            return None
        return point

    def instruments(self) -> List[str]:
        with self._lock:
            return sorted(self._series)

    def __len__(self) -> int:
        with self._lock:
            return sum(len(series) for series in self._series.values())
