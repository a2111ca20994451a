import asyncio
import sys

sys.path.insert(0, '.')

from config.settings import Threshold
from monitoring.threshold_monitor import ThresholdMonitor
from orchestration.command_bus import CommandBus
from orchestration.commands import Notify, PricePoint, PriceUpdate


BTC = 'BTC-USDT-SWAP'


def _feed(prices, thresholds, debounce_s=10.0, step_ms=1000, overrides=None):
    async def scenario():
        bus = CommandBus()
        out = bus.subscribe('notifier')
        monitor = ThresholdMonitor(bus, thresholds, debounce_s=debounce_s, debounce_overrides=overrides)
        for i, price in enumerate(prices):
            inst, px = price if isinstance(price, tuple) else (BTC, price)
            await monitor.handle(PriceUpdate(PricePoint(inst, i * step_ms, px)))
        return [c for c in out.drain() if isinstance(c, Notify)]

    return asyncio.run(scenario())


def test_low_and_high_breach_each_notify_once():
    notes = _feed([29000, 31000, 40000, 41000], {BTC: Threshold(BTC, 30000, 38000)})
    assert len(notes) == 2
    assert [n.direction for n in notes] == ['below', 'above']
    assert notes[0].bound == 30000
    assert 'below lower bound' in notes[0].reason
    assert notes[1].price == 40000


def test_same_bound_crossed_twice_within_debounce_is_one_notify():
    notes = _feed([39000, 37000, 39500], {BTC: Threshold(BTC, 30000, 38000)})
    assert len(notes) == 1


def test_breach_after_debounce_interval_notifies_again():
    notes = _feed([39000, 37000, 39500], {BTC: Threshold(BTC, 30000, 38000)}, step_ms=6000)
    assert len(notes) == 2


def test_debounce_override_per_instrument():
    notes = _feed([39000, 39500], {BTC: Threshold(BTC, 30000, 38000)}, overrides={BTC: 0.5})
    assert len(notes) == 2


def test_unconfigured_instrument_never_notifies():
    notes = _feed([('ETH-USDT-SWAP', 1.0), ('ETH-USDT-SWAP', 1e9)], {BTC: Threshold(BTC, 30000, 38000)})
    assert notes == []


def test_burst_published_on_the_bus_is_evaluated_tick_by_tick():
    async def scenario():
        bus = CommandBus()
        out = bus.subscribe('notifier')
        monitor = ThresholdMonitor(bus, {BTC: Threshold(BTC, 30000, 38000)}, debounce_s=10)
        for i, price in enumerate([29000, 31000, 40000, 41000]):
            await bus.publish(PriceUpdate(PricePoint(BTC, i * 1000, price)))
        await monitor.subscription.close()
        await asyncio.wait_for(monitor.run(), timeout=1)
        return [c for c in out.drain() if isinstance(c, Notify)]

    notes = asyncio.run(scenario())
    assert [(n.direction, n.price) for n in notes] == [('below', 29000), ('above', 40000)]
