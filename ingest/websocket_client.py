import asyncio
import json
import logging
import math
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Union

import websockets

from analytics.history_store import HistoryStore
from api.metrics import metrics
from config import config
from ingest.backoff import BackoffPolicy
from orchestration.command_bus import CommandBus
from orchestration.commands import Error, PricePoint, PriceUpdate
from orchestration.errors import ExchangeRejected, ParseError, TransportError


logger = logging.getLogger(__name__)

DEFAULT_WS_URL = "wss://ws.okx.com:8443/ws/v5/public"
MARK_PRICE_CHANNEL = "mark-price"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    STREAMING = "streaming"


def subscription_payload(instruments: Iterable[str]) -> str:
    args = [{"channel": MARK_PRICE_CHANNEL, "instId": inst} for inst in instruments]
    return json.dumps({"op": "subscribe", "args": args})


def decode_message(raw: Union[str, bytes]) -> List[PricePoint]:
    """Decode one WebSocket frame into mark-price points.

    Subscription acknowledgements and other channels yield an empty list.
    Raises ParseError for malformed frames and ExchangeRejected for error events.
    """
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise ParseError(f"invalid JSON frame: {exc}") from exc
    if not isinstance(payload, dict):
        raise ParseError("frame is not a JSON object")

    event = payload.get("event")
    if event == "error":
        raise ExchangeRejected(payload.get("code"), payload.get("msg"))
    if event:
        return []

    arg = payload.get("arg")
    if not isinstance(arg, dict):
        raise ParseError("frame has no channel argument")
    if arg.get("channel") != MARK_PRICE_CHANNEL:
        return []

    data = payload.get("data")
    if not isinstance(data, list):
        raise ParseError("mark-price frame has no data list")

    points: List[PricePoint] = []
    for entry in data:
        try:
            instrument = str(entry["instId"])
            price = float(entry["markPx"])
            timestamp = int(entry["ts"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ParseError(f"malformed mark-price entry {entry!r}") from exc
        if not instrument or not math.isfinite(price) or price <= 0:
            raise ParseError(f"invalid mark price {entry!r}")
        points.append(PricePoint(instrument, timestamp, price))
    return points


class WebSocketClient:
    """Mark-price subscription for the configured instrument set.

    Runs ``DISCONNECTED -> CONNECTING -> SUBSCRIBED -> STREAMING`` and falls
    back to ``DISCONNECTED`` on any transport failure or missed heartbeat,
    then waits ``backoff.delay(attempt)`` before reconnecting. The full
    subscription is resent on every connection.
    """

    def __init__(
        self,
        instruments: Iterable[str],
        history: HistoryStore,
        bus: CommandBus,
        url: Optional[str] = None,
        heartbeat_s: Optional[float] = None,
        pong_timeout_s: Optional[float] = None,
        backoff: Optional[BackoffPolicy] = None,
        connect: Optional[Callable[..., Any]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        shutdown: Optional[asyncio.Event] = None,
    ):
        ws_cfg = config.section('websocket')
        exchange = config.section('exchange')
        self.instruments = list(instruments)
        self._tracked = set(self.instruments)
        self.history = history
        self.bus = bus
        self.url = url or exchange.get('ws_url') or DEFAULT_WS_URL
        self.heartbeat_s = float(heartbeat_s or ws_cfg.get('heartbeat_s', 25))
        self.pong_timeout_s = float(pong_timeout_s or ws_cfg.get('pong_timeout_s', 5))
        self.backoff = backoff or BackoffPolicy(
            base_s=float(ws_cfg.get('backoff_base_s', 1)),
            max_s=float(ws_cfg.get('backoff_max_s', 30)),
            multiplier=float(ws_cfg.get('backoff_multiplier', 2)),
            jitter=float(ws_cfg.get('backoff_jitter', 0.25)),
        )
        self._connect = connect or websockets.connect
        self._sleep = sleep
        self.shutdown = shutdown or asyncio.Event()

        self.state = ConnectionState.DISCONNECTED
        self.state_history: List[ConnectionState] = []
        self.delays: List[float] = []
        self.attempt = 0
        self.running = False

    def _set_state(self, state: ConnectionState) -> None:
        if state == self.state and self.state_history:
            return
        self.state = state
        self.state_history.append(state)
        metrics.update_connection_state(state.value)
        logger.debug("Ingestor state -> %s", state.value)

    def _stopping(self) -> bool:
        return not self.running or self.shutdown.is_set()

    async def _pause(self, delay: float) -> None:
        if self._sleep is not None:
            await self._sleep(delay)
            return
        try:
            await asyncio.wait_for(self.shutdown.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def run(self):
        self.running = True
        while not self._stopping():
            self._set_state(ConnectionState.CONNECTING)
            try:
                async with self._connect(self.url, ping_interval=None) as ws:
                    await ws.send(subscription_payload(self.instruments))
                    self._set_state(ConnectionState.SUBSCRIBED)
                    logger.info("Subscribed to %s for %s", MARK_PRICE_CHANNEL, ", ".join(self.instruments))
                    await self._consume(ws)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._set_state(ConnectionState.DISCONNECTED)
                if self._stopping():
                    break
                await self._handle_reconnect(e)
            else:
                self._set_state(ConnectionState.DISCONNECTED)
        self._set_state(ConnectionState.DISCONNECTED)
        self.running = False

    async def _handle_reconnect(self, error: Exception):
        delay = self.backoff.delay(self.attempt)
        self.attempt += 1
        self.delays.append(delay)
        metrics.record_reconnect(delay)
        metrics.record_error("websocket")
        logger.error("Mark-price stream error: %s; reconnecting in %.1fs (attempt %s)", error, delay, self.attempt)
        await self.bus.publish(Error(
            f"WebSocket connection lost: {error}",
            {"component": "websocket", "attempt": self.attempt, "delay_s": round(delay, 3)},
        ))
        await self._pause(delay)

    async def _consume(self, ws):
        awaiting_pong = False
        while not self._stopping():
            timeout = self.pong_timeout_s if awaiting_pong else self.heartbeat_s
            try:
                raw = await asyncio.wait_for(ws.recv(), timeout=timeout)
            except asyncio.TimeoutError:
                if awaiting_pong:
                    raise TransportError(f"no pong within {self.pong_timeout_s}s")
                await ws.send("ping")
                awaiting_pong = True
                continue
            awaiting_pong = False
            if raw == "pong":
                continue
            try:
                points = decode_message(raw)
            except (ParseError, ExchangeRejected) as exc:
                metrics.record_decode_error()
                metrics.record_error("websocket")
                logger.warning("Skipping WebSocket message: %s", exc)
                await self.bus.publish(Error(
                    f"Malformed WebSocket message skipped: {exc}",
                    {"component": "websocket", "raw": str(raw)[:200]},
                ))
                continue
            for point in points:
                await self._on_point(point)

    async def _on_point(self, point: PricePoint):
        if point.instrument not in self._tracked:
            return
        if self.state != ConnectionState.STREAMING:
            self._set_state(ConnectionState.STREAMING)
            if self.attempt:
                logger.info("Mark-price stream recovered after %s reconnect attempts", self.attempt)
            self.attempt = 0
        if not self.history.push(point):
            logger.debug("Out-of-order tick for %s at %s ignored", point.instrument, point.timestamp)
            return
        metrics.record_price(point.instrument, point.mark_price)
        await self.bus.publish(PriceUpdate(point))

    async def stop(self):
        self.running = False
        self.shutdown.set()
