import asyncio
import sys

sys.path.insert(0, '.')

from orchestration.command_bus import CommandBus
from orchestration.commands import Error, Notify, PricePoint, PriceUpdate


BTC = 'BTC-USDT-SWAP'
ETH = 'ETH-USDT-SWAP'


def _price(inst, ts, px):
    return PriceUpdate(PricePoint(inst, ts, px))


def test_coalesce_keeps_latest_price_per_instrument():
    async def scenario():
        bus = CommandBus()
        sub = bus.subscribe('renderer')
        await bus.publish(_price(BTC, 1, 100.0))
        await bus.publish(_price(ETH, 1, 10.0))
        notify = Notify(BTC, 'breach', 100.0)
        await bus.publish(notify)
        await bus.publish(_price(BTC, 2, 101.0))
        return sub.drain(), sub.dropped

    received, dropped = asyncio.run(scenario())
    assert dropped == 1
    assert received[0].point.instrument == ETH
    assert isinstance(received[1], Notify)
    assert received[2].point.mark_price == 101.0


def test_drop_oldest_never_drops_other_commands():
    async def scenario():
        bus = CommandBus(price_policy='drop_oldest', price_capacity=2)
        sub = bus.subscribe('logger')
        for i in range(5):
            await bus.publish(_price(BTC, i, 100.0 + i))
            await bus.publish(Error(f"err {i}"))
        return sub.drain()

    received = asyncio.run(scenario())
    errors = [c.message for c in received if isinstance(c, Error)]
    prices = [c.point.mark_price for c in received if isinstance(c, PriceUpdate)]
    assert errors == [f"err {i}" for i in range(5)]
    assert prices == [103.0, 104.0]


def test_each_subscriber_sees_every_command_in_order():
    async def scenario():
        bus = CommandBus()
        a = bus.subscribe('a')
        b = bus.subscribe('b')
        for i in range(3):
            await bus.publish(Error(str(i)))
        return a.drain(), b.drain()

    first, second = asyncio.run(scenario())
    assert [c.message for c in first] == ['0', '1', '2']
    assert [c.message for c in second] == ['0', '1', '2']


def test_block_policy_applies_backpressure():
    async def scenario():
        bus = CommandBus(price_policy='block', price_capacity=1)
        sub = bus.subscribe('slow')
        await bus.publish(_price(BTC, 1, 1.0))
        pending = asyncio.create_task(bus.publish(_price(BTC, 2, 2.0)))
        await asyncio.sleep(0.01)
        blocked = not pending.done()
        first = await sub.get()
        await asyncio.wait_for(pending, timeout=1)
        second = await sub.get()
        return blocked, first, second

    blocked, first, second = asyncio.run(scenario())
    assert blocked
    assert first.point.mark_price == 1.0
    assert second.point.mark_price == 2.0


def test_close_drains_then_ends_iteration():
    async def scenario():
        bus = CommandBus()
        sub = bus.subscribe('persistence')
        await bus.publish(Error('last words'))
        await bus.close()
        await bus.publish(Error('after close'))
        return [command async for command in sub]

    received = asyncio.run(scenario())
    assert [c.message for c in received] == ['last words']
