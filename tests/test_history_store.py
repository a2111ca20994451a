import random
import sys

sys.path.insert(0, '.')

from analytics.history_store import HistoryStore
from orchestration.commands import PricePoint


BTC = 'BTC-USDT-SWAP'


def test_snapshot_never_older_than_window():
    store = HistoryStore(window_s=10)
    rng = random.Random(7)
    ts = 1_000_000
    for _ in range(500):
        ts += rng.randint(0, 3000)
        store.push(PricePoint(BTC, ts, 30000 + rng.random() * 100))
        points = store.snapshot(BTC)
        newest = points[-1].timestamp
        assert all(p.timestamp >= newest - 10_000 for p in points)
        assert [p.timestamp for p in points] == sorted(p.timestamp for p in points)


def test_out_of_order_point_is_rejected_and_equal_timestamp_replaces():
    store = HistoryStore(window_s=60)
    assert store.push(PricePoint(BTC, 2000, 1.0))
    assert not store.push(PricePoint(BTC, 1000, 2.0))
    assert store.push(PricePoint(BTC, 2000, 3.0))
    assert [p.mark_price for p in store.snapshot(BTC)] == [3.0]


def test_per_instrument_window_override():
    store = HistoryStore(window_s=60, windows={'ETH-USDT-SWAP': 5})
    for i in range(30):
        store.push(PricePoint(BTC, i * 1000, 1.0))
        store.push(PricePoint('ETH-USDT-SWAP', i * 1000, 1.0))
    assert len(store.snapshot(BTC)) == 30
    assert len(store.snapshot('ETH-USDT-SWAP')) == 6
    assert store.window('ETH-USDT-SWAP') == 5


def test_seed_merges_and_live_points_win():
    store = HistoryStore(window_s=60)
    store.push(PricePoint(BTC, 5000, 99.0))
    count = store.seed(BTC, [PricePoint(BTC, ts, 1.0) for ts in (1000, 2000, 5000)])
    assert count == 3
    points = store.snapshot(BTC)
    assert [p.timestamp for p in points] == [1000, 2000, 5000]
    assert points[-1].mark_price == 99.0


def test_clock_filters_stale_reads():
    now = {'ms': 10_000}
    store = HistoryStore(window_s=5, clock=lambda: now['ms'])
    for ts in (6000, 8000, 10_000):
        store.push(PricePoint(BTC, ts, 1.0))
    assert len(store.snapshot(BTC)) == 3
    now['ms'] = 14_000
    assert [p.timestamp for p in store.snapshot(BTC)] == [10_000]


def test_snapshot_is_a_copy():
    store = HistoryStore(window_s=60)
    store.push(PricePoint(BTC, 1000, 1.0))
    snap = store.snapshot(BTC)
    store.push(PricePoint(BTC, 2000, 2.0))
    assert len(snap) == 1
    assert store.latest(BTC).mark_price == 2.0
    assert store.snapshot('UNKNOWN') == ()


def test_stalled_series_ages_out_against_wall_clock():
    now = {'ms': 1_700_000_000_000}
    store = HistoryStore(window_s=60, clock=lambda: now['ms'])
    store.push(PricePoint(BTC, now['ms'] - 300_000, 35000.0))
    assert store.snapshot(BTC) == ()
    assert store.latest(BTC) is None
    store.push(PricePoint(BTC, now['ms'] - 1000, 35100.0))
    assert [p.mark_price for p in store.snapshot(BTC)] == [35100.0]
    now['ms'] += 120_000
    assert store.snapshot(BTC) == ()
    assert store.latest(BTC) is None
