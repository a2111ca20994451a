import logging
from typing import Dict, Optional, Tuple

from api.metrics import metrics
from config.settings import Threshold
from orchestration.command_bus import CommandBus, Subscription
from orchestration.commands import Notify, PricePoint, PriceUpdate


logger = logging.getLogger(__name__)


class ThresholdMonitor:
    """Compare each PriceUpdate against its instrument's band and emit Notify.

    Debounce is a last-notified timestamp per (instrument, breach direction),
    measured on tick timestamps: a breach of the same bound within the
    interval is suppressed, while a breach of the opposite bound is reported.
    One instrument's cooldown never delays another's evaluation.
    """

    def __init__(
        self,
        bus: CommandBus,
        thresholds: Optional[Dict[str, Threshold]] = None,
        debounce_s: float = 10.0,
        debounce_overrides: Optional[Dict[str, float]] = None,
        subscription: Optional[Subscription] = None,
    ):
        self.bus = bus
        self.thresholds = dict(thresholds or {})
        self.debounce_ms = int(debounce_s * 1000)
        self.debounce_overrides_ms = {
            inst: int(seconds * 1000) for inst, seconds in (debounce_overrides or {}).items()
        }
        # Every tick is evaluated; the monitor never reads a coalesced stream.
        self.subscription = subscription or bus.subscribe("threshold_monitor", policy="block")
        self._last_notified: Dict[Tuple[str, str], int] = {}

    def threshold(self, instrument: str) -> Threshold:
        return self.thresholds.get(instrument) or Threshold(instrument)

    def debounce_for(self, instrument: str) -> int:
        return self.debounce_overrides_ms.get(instrument, self.debounce_ms)

    def evaluate(self, point: PricePoint) -> Optional[Notify]:
        band = self.threshold(point.instrument)
        if point.mark_price < band.lower:
            direction, bound = "below", band.lower
            reason = f"{point.instrument} mark price {point.mark_price} is below lower bound {band.lower}"
        elif point.mark_price > band.upper:
            direction, bound = "above", band.upper
            reason = f"{point.instrument} mark price {point.mark_price} is above upper bound {band.upper}"
        else:
            return None

        key = (point.instrument, direction)
        last = self._last_notified.get(key)
        if last is not None and point.timestamp - last < self.debounce_for(point.instrument):
            metrics.record_suppressed(point.instrument)
            return None
        self._last_notified[key] = point.timestamp
        metrics.record_notification(point.instrument, direction)
        return Notify(
            instrument=point.instrument,
            reason=reason,
            price=point.mark_price,
            direction=direction,
            bound=bound,
            timestamp_ms=point.timestamp,
        )

    async def handle(self, command) -> Optional[Notify]:
        if not isinstance(command, PriceUpdate):
            return None
        notify = self.evaluate(command.point)
        if notify is not None:
            logger.info("Threshold breach: %s", notify.reason)
            await self.bus.publish(notify)
        return notify

    async def run(self):
        async for command in self.subscription:
            try:
                await self.handle(command)
            except Exception:
                logger.exception("Threshold evaluation failed for %s", getattr(command, "kind", command))
