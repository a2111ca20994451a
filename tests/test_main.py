import asyncio
import sys

sys.path.insert(0, '.')

from config.config_loader import Config
from main import TradingSystem
from orchestration.commands import Notify, PricePoint, PriceUpdate, now_ms


BTC = 'BTC-USDT-SWAP'


def _system(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text(
        "instruments:\n"
        "  - BTC-USDT-SWAP\n"
        "thresholds:\n"
        "  - instrument: BTC-USDT-SWAP\n"
        "    lower: 30000\n"
        "    upper: 38000\n"
        "history:\n"
        "  window_s: 60\n"
        "ai:\n"
        "  enabled: false\n"
        "persistence:\n"
        f"  trade_log: {tmp_path / 'trade_logs.jsonl'}\n"
        f"  ai_log: {tmp_path / 'ai_decisions.jsonl'}\n"
        f"  error_log: {tmp_path / 'error_logs.jsonl'}\n"
    )
    return TradingSystem(Config(str(path)))


def test_monitor_sees_every_tick_of_a_burst(tmp_path):
    async def scenario():
        system = _system(tmp_path)
        out = system.bus.subscribe('notifier')
        for i, price in enumerate([29000, 31000, 40000, 41000]):
            await system.bus.publish(PriceUpdate(PricePoint(BTC, i * 1000, price)))
        await system.monitor.subscription.close()
        await asyncio.wait_for(system.monitor.run(), timeout=1)
        return [c for c in out.drain() if isinstance(c, Notify)]

    notes = asyncio.run(scenario())
    assert len(notes) == 2
    assert [n.direction for n in notes] == ['below', 'above']


def test_history_reads_are_bounded_by_wall_clock(tmp_path):
    system = _system(tmp_path)
    system.history.push(PricePoint(BTC, now_ms() - 300_000, 35000.0))
    assert system.history.snapshot(BTC) == ()
    assert system.history.latest(BTC) is None
    assert system.ai_loop is None
