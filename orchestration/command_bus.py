import asyncio
import logging
from collections import deque
from typing import Deque, Dict, List, Optional

from api.metrics import metrics
from orchestration.commands import Command, PriceUpdate


logger = logging.getLogger(__name__)

PRICE_POLICIES = ("coalesce", "drop_oldest", "block")


class _Slot:
    __slots__ = ("command", "alive")

    def __init__(self, command: Command):
        self.command = command
        self.alive = True


class Subscription:
    """One consumer's view of the bus.

    Commands are delivered in the order they were published. PriceUpdate
    commands are subject to the subscription's policy; every other command
    is buffered without bound and never dropped.
    """

    def __init__(self, name: str, policy: str = "coalesce", capacity: int = 1024):
        if policy not in PRICE_POLICIES:
            raise ValueError(f"Unknown PriceUpdate policy '{policy}'")
        self.name = name
        self.policy = policy
        self.capacity = max(1, int(capacity))
        self.dropped = 0
        self._items: Deque[_Slot] = deque()
        self._price_slots: Deque[_Slot] = deque()
        self._latest_price: Dict[str, _Slot] = {}
        self._pending = 0
        self._pending_prices = 0
        self._closed = False
        self._cond = asyncio.Condition()

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._pending

    def _kill(self, slot: _Slot) -> None:
        slot.alive = False
        self._pending -= 1
        self._pending_prices -= 1
        self.dropped += 1
        metrics.record_bus_drop(self.name)

    async def put(self, command: Command) -> None:
        async with self._cond:
            if self._closed:
                return
            if isinstance(command, PriceUpdate):
                admitted = await self._admit_price(command)
                if not admitted:
                    return
            else:
                self._items.append(_Slot(command))
                self._pending += 1
            self._cond.notify_all()
        metrics.update_queue_depth(self.name, self._pending)

    async def _admit_price(self, command: PriceUpdate) -> bool:
        instrument = command.instrument
        if self.policy == "coalesce":
            previous = self._latest_price.get(instrument)
            if previous is not None and previous.alive:
                # Kill and re-append so the latest value keeps its publish position.
                self._kill(previous)
        elif self.policy == "drop_oldest":
            while self._pending_prices >= self.capacity and self._price_slots:
                oldest = self._price_slots.popleft()
                if oldest.alive:
                    self._kill(oldest)
        else:
            while self._pending_prices >= self.capacity and not self._closed:
                await self._cond.wait()
            if self._closed:
                return False

        while self._price_slots and not self._price_slots[0].alive:
            self._price_slots.popleft()

        slot = _Slot(command)
        self._items.append(slot)
        self._price_slots.append(slot)
        self._latest_price[instrument] = slot
        self._pending += 1
        self._pending_prices += 1
        return True

    async def get(self) -> Optional[Command]:
        """Next command, or ``None`` once the subscription is closed and drained."""
        async with self._cond:
            while True:
                while self._items:
                    slot = self._items.popleft()
                    if not slot.alive:
                        continue
                    slot.alive = False
                    self._pending -= 1
                    command = slot.command
                    if isinstance(command, PriceUpdate):
                        self._pending_prices -= 1
                        if self._latest_price.get(command.instrument) is slot:
                            del self._latest_price[command.instrument]
                    self._cond.notify_all()
                    return command
                if self._closed:
                    return None
                await self._cond.wait()

    def get_nowait(self) -> Optional[Command]:
        while self._items:
            slot = self._items.popleft()
            if not slot.alive:
                continue
            slot.alive = False
            self._pending -= 1
            command = slot.command
            if isinstance(command, PriceUpdate):
                self._pending_prices -= 1
                if self._latest_price.get(command.instrument) is slot:
                    del self._latest_price[command.instrument]
            return command
        return None

    def drain(self) -> List[Command]:
        out: List[Command] = []
        while True:
            command = self.get_nowait()
            if command is None:
                return out
            out.append(command)

    async def close(self) -> None:
        async with self._cond:
            self._closed = True
            self._cond.notify_all()

    def __aiter__(self):
        return self

    async def __anext__(self) -> Command:
        command = await self.get()
        if command is None:
            raise StopAsyncIteration
        return command


class CommandBus:
    """Multi-producer, multi-consumer fan-out of :class:`Command` values."""

    def __init__(self, price_policy: str = "coalesce", price_capacity: int = 1024):
        if price_policy not in PRICE_POLICIES:
            raise ValueError(f"Unknown PriceUpdate policy '{price_policy}'")
        self.price_policy = price_policy
        self.price_capacity = price_capacity
        self._subscribers: List[Subscription] = []
        self._closed = False

    def subscribe(
        self,
        name: str,
        policy: Optional[str] = None,
        capacity: Optional[int] = None,
    ) -> Subscription:
        subscription = Subscription(
            name,
            policy=policy or self.price_policy,
            capacity=capacity or self.price_capacity,
        )
        self._subscribers.append(subscription)
        logger.debug("Bus subscriber %s registered (policy=%s)", name, subscription.policy)
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
        await subscription.close()

    @property
    def subscribers(self) -> List[Subscription]:
        return list(self._subscribers)

    async def publish(self, command: Command) -> None:
        if self._closed:
            logger.debug("Bus closed; dropping %s", command.kind)
            return
        for subscription in list(self._subscribers):
            await subscription.put(command)

    async def close(self) -> None:
        self._closed = True
        for subscription in list(self._subscribers):
            await subscription.close()
