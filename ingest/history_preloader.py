import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from analytics.history_store import HistoryStore
from api.metrics import metrics
from config import config
from ingest.backoff import BackoffPolicy
from ingest.okx_rest import OKXRESTClient
from orchestration.command_bus import CommandBus
from orchestration.commands import Error, PricePoint, now_ms
from orchestration.errors import ParseError, RateLimited, TradingError, TransportError


logger = logging.getLogger(__name__)

MARK_PRICE_CANDLES_PATH = "/api/v5/market/mark-price-candles"


def parse_candle_rows(instrument: str, rows: List[Any]) -> List[PricePoint]:
    """Convert OKX candle rows ``[ts, o, h, l, c, ...]`` into close-price points."""
    points: List[PricePoint] = []
    for row in rows:
        try:
            points.append(PricePoint(instrument, int(row[0]), float(row[4])))
        except (IndexError, TypeError, ValueError) as exc:
            raise ParseError(f"malformed candle row for {instrument}: {row!r}") from exc
    return points


class HistoryPreloader:
    """Seeds the history store from mark-price candles at startup.

    Instruments load concurrently; a throttled instrument backs off on its
    own without delaying its siblings. After ``max_attempts`` failed tries
    the instrument starts empty and an Error command is published.
    """

    def __init__(
        self,
        rest: OKXRESTClient,
        history: HistoryStore,
        bus: CommandBus,
        instruments: Iterable[str],
        bar: Optional[str] = None,
        page_limit: Optional[int] = None,
        max_attempts: Optional[int] = None,
        backoff: Optional[BackoffPolicy] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        history_cfg = config.section('history')
        self.rest = rest
        self.history = history
        self.bus = bus
        self.instruments = list(instruments)
        self.bar = bar or history_cfg.get('bar', '1m')
        self.page_limit = int(page_limit or history_cfg.get('page_limit', 100))
        self.max_attempts = int(max_attempts or history_cfg.get('max_attempts', 5))
        self.backoff = backoff or BackoffPolicy(
            base_s=float(history_cfg.get('backoff_base_s', 0.5)),
            max_s=float(history_cfg.get('backoff_max_s', 8)),
        )
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or now_ms

    async def preload(self) -> Dict[str, int]:
        counts = await asyncio.gather(*(self._preload_instrument(inst) for inst in self.instruments))
        return dict(zip(self.instruments, counts))

    async def _preload_instrument(self, instrument: str) -> int:
        try:
            points = await self._fetch_window(instrument)
        except TradingError as exc:
            metrics.record_preload(instrument, "failed")
            metrics.record_error("preloader")
            logger.warning("History preload failed for %s: %s", instrument, exc)
            await self.bus.publish(Error(
                f"History preload failed for {instrument}: {exc}",
                {"component": "preloader", "instrument": instrument, "error_type": type(exc).__name__},
            ))
            return 0
        count = self.history.seed(instrument, points)
        metrics.record_preload(instrument, "ok", count)
        logger.info("Seeded %s with %s historical points", instrument, count)
        return count

    async def _fetch_window(self, instrument: str) -> List[PricePoint]:
        end_ms = self._clock()
        start_ms = end_ms - int(self.history.window(instrument) * 1000)
        collected: List[PricePoint] = []
        after: Optional[str] = None
        while True:
            params = {"instId": instrument, "bar": self.bar, "limit": str(self.page_limit)}
            if after is not None:
                params["after"] = after
            rows = await self._get_with_retry(instrument, params)
            if not rows:
                break
            page = parse_candle_rows(instrument, rows)
            collected.extend(p for p in page if p.timestamp >= start_ms)
            oldest = min(p.timestamp for p in page)
            if oldest <= start_ms or len(rows) < self.page_limit:
                break
            after = str(oldest)
        return collected

    async def _get_with_retry(self, instrument: str, params: Dict[str, str]) -> List[Any]:
        attempt = 0
        while True:
            try:
                return await self.rest.get(MARK_PRICE_CANDLES_PATH, params=params)
            except (RateLimited, TransportError) as exc:
                attempt += 1
                if isinstance(exc, RateLimited):
                    metrics.record_rate_limited(MARK_PRICE_CANDLES_PATH)
                if attempt >= self.max_attempts:
                    raise
                delay = self.backoff.delay(attempt - 1)
                logger.info(
                    "Candle fetch for %s failed (%s); retry %s/%s in %.2fs",
                    instrument,
                    exc,
                    attempt,
                    self.max_attempts - 1,
                    delay,
                )
                await self._sleep(delay)
