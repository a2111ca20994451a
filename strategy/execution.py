import asyncio
import logging
import math
import time
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from api.metrics import metrics
from orchestration.command_bus import CommandBus
from orchestration.commands import (
    STATUS_ABORTED,
    STATUS_NOOP,
    STATUS_OK,
    STATUS_RATE_LIMITED,
    STATUS_REJECTED,
    STATUS_TRANSPORT_ERROR,
    STATUS_VALIDATION_ERROR,
    OrderRequest,
    OrderResult,
)
from orchestration.errors import (
    ExchangeRejected,
    RateLimited,
    TradingError,
    ValidationError,
)
from strategy.execution_types import (
    AccountSnapshot,
    InstrumentSpec,
    OpenOrder,
    Order,
    Position,
    client_order_id,
    new_request_id,
)
from strategy.transports.okx import OKXTransport


logger = logging.getLogger(__name__)

LEVERAGE_EPSILON = 1e-6
LOT_TOLERANCE = 1e-9
RESULT_CACHE_SIZE = 1024

Outcome = Tuple[str, str, Optional[Dict[str, Any]]]


class _Aborted(TradingError):
    """A prerequisite step failed, so the dependent order was not sent."""


def _status_for(exc: Exception) -> str:
    if isinstance(exc, ValidationError):
        return STATUS_VALIDATION_ERROR
    if isinstance(exc, RateLimited):
        return STATUS_RATE_LIMITED
    if isinstance(exc, ExchangeRejected):
        return STATUS_REJECTED
    if isinstance(exc, _Aborted):
        return STATUS_ABORTED
    return STATUS_TRANSPORT_ERROR


class OrderExecutionEngine:
    """Single trust boundary between order intents and the exchange.

    Every public operation publishes one OrderRequest followed by exactly
    one OrderResult and never raises for trading failures. Operations are
    serialized by one lock, so leverage sync always completes before the
    order that depends on it. A ``request_id`` that was already processed
    returns the cached result without touching the exchange.
    """

    def __init__(
        self,
        transport: OKXTransport,
        bus: CommandBus,
        instruments: Iterable[str],
        td_mode: str = "cross",
        pos_mode: str = "net",
        min_leverage: float = 1.0,
        max_leverage: float = 20.0,
        instrument_specs: Optional[Dict[str, InstrumentSpec]] = None,
        trading_enabled: Optional[bool] = None,
    ):
        self.transport = transport
        self.bus = bus
        self.instruments = frozenset(instruments)
        self.td_mode = td_mode
        self.pos_mode = pos_mode
        self.min_leverage = float(min_leverage)
        self.max_leverage = float(max_leverage)
        self.specs: Dict[str, InstrumentSpec] = dict(instrument_specs or {})
        self._trading_enabled = trading_enabled
        self._lock = asyncio.Lock()
        self._results: "OrderedDict[str, OrderResult]" = OrderedDict()
        self._leverage: Dict[Tuple[str, Optional[str]], float] = {}

    @property
    def trading_enabled(self) -> bool:
        if self._trading_enabled is not None:
            return self._trading_enabled
        return self.transport.has_credentials

    async def initialize(self):
        """Refresh instrument metadata; configured fallbacks stay in place on failure."""
        try:
            specs = await self.transport.fetch_instruments(sorted(self.instruments))
        except TradingError as exc:
            logger.warning("Instrument metadata unavailable, using configured specs: %s", exc)
            return
        self.specs.update(specs)
        missing = self.instruments - set(self.specs)
        if missing:
            logger.warning("No lot-size metadata for %s; orders for them will be rejected", ", ".join(sorted(missing)))

    def current_leverage(self, instrument: str, pos_side: Optional[str] = None) -> Optional[float]:
        value = self._leverage.get((instrument, pos_side))
        if value is None and pos_side is not None:
            value = self._leverage.get((instrument, None))
        return value

    def _leverage_pos_side(self, pos_side: Optional[str]) -> Optional[str]:
        # OKX only accepts posSide on set-leverage for isolated long/short accounts.
        if self.pos_mode == "long_short" and self.td_mode == "isolated":
            return pos_side
        return None

    def _order_pos_side(self, direction: str) -> Optional[str]:
        if self.pos_mode == "long_short" and direction in ("long", "short"):
            return direction
        return None

    # Validation never touches the network.

    def _require_instrument(self, instrument: str) -> InstrumentSpec:
        if instrument not in self.instruments:
            raise ValidationError(f"{instrument} is not in the tradable instrument set")
        spec = self.specs.get(instrument)
        if spec is None:
            raise ValidationError(f"No lot-size metadata for {instrument}")
        return spec

    def _check_leverage(self, instrument: str, leverage: float) -> None:
        if not isinstance(leverage, (int, float)) or not math.isfinite(leverage):
            raise ValidationError(f"Leverage {leverage!r} is not a number")
        if not self.min_leverage <= leverage <= self.max_leverage:
            raise ValidationError(
                f"Leverage {leverage} outside configured bounds [{self.min_leverage}, {self.max_leverage}]"
            )
        spec = self.specs.get(instrument)
        if spec and spec.max_leverage and leverage > spec.max_leverage:
            raise ValidationError(f"Leverage {leverage} exceeds {instrument} maximum {spec.max_leverage}")

    def validate(self, order: Order) -> None:
        spec = self._require_instrument(order.instrument)
        if order.side not in ("buy", "sell"):
            raise ValidationError(f"Unknown order side {order.side!r}")
        size = order.size
        if not isinstance(size, (int, float)) or not math.isfinite(size) or size <= 0:
            raise ValidationError(f"Order size must be a positive number, got {size!r}")
        steps = size / spec.lot_size
        if abs(steps - round(steps)) > LOT_TOLERANCE * max(1.0, steps):
            raise ValidationError(f"Size {size} is not a multiple of {order.instrument} lot size {spec.lot_size}")
        if size + LOT_TOLERANCE < spec.min_size:
            raise ValidationError(f"Size {size} is below {order.instrument} minimum {spec.min_size}")
        if order.price is not None and (not math.isfinite(order.price) or order.price <= 0):
            raise ValidationError(f"Limit price must be positive, got {order.price!r}")
        if order.leverage is not None:
            self._check_leverage(order.instrument, order.leverage)
        if order.pos_side not in (None, "net", "long", "short"):
            raise ValidationError(f"Unknown position side {order.pos_side!r}")
        if self.pos_mode == "long_short":
            expected = "long" if (order.side == "buy") != order.reduce_only else "short"
            if order.pos_side != expected:
                raise ValidationError(
                    f"{order.side} {'reduce-only ' if order.reduce_only else ''}order needs posSide {expected}, got {order.pos_side!r}"
                )
        elif order.pos_side not in (None, "net"):
            raise ValidationError("posSide long/short requires long_short position mode")

    def _require_trading(self) -> None:
        if not self.trading_enabled:
            raise ValidationError("Trading credentials are not configured")

    # Result bookkeeping

    def _remember(self, result: OrderResult) -> None:
        self._results[result.request_id] = result
        while len(self._results) > RESULT_CACHE_SIZE:
            self._results.popitem(last=False)

    async def _submit(
        self,
        action: str,
        instrument: str,
        request_id: str,
        details: Dict[str, Any],
        operation: Callable[[], Awaitable[Outcome]],
    ) -> OrderResult:
        cached = self._results.get(request_id)
        if cached is not None:
            logger.info("Request %s already processed (%s); not resubmitting", request_id, cached.status)
            return cached

        await self.bus.publish(OrderRequest(request_id, action, instrument, details))
        started = time.monotonic()
        error_type = None
        ack = None
        try:
            status, detail, ack = await operation()
        except TradingError as exc:
            status = _status_for(exc)
            detail = str(exc)
            error_type = type(exc).__name__
            self._log_failure(action, instrument, exc)
        except Exception as exc:
            status = STATUS_TRANSPORT_ERROR
            detail = f"unexpected failure: {exc}"
            error_type = type(exc).__name__
            logger.exception("%s on %s failed unexpectedly", action, instrument)

        result = OrderResult(
            request_id=request_id,
            action=action,
            instrument=instrument,
            status=status,
            detail=detail,
            details=details,
            ack=ack,
            error_type=error_type,
        )
        self._remember(result)
        metrics.record_order_result(action, status, time.monotonic() - started)
        await self.bus.publish(result)
        return result

    def _log_failure(self, action: str, instrument: str, error: Exception) -> None:
        if isinstance(error, ExchangeRejected):
            logger.error("OKX %s on %s failed (code=%s, msg=%s)", action, instrument, error.code, error.msg)
        elif isinstance(error, ValidationError):
            logger.warning("%s on %s rejected locally: %s", action, instrument, error)
        else:
            logger.error("%s on %s failed: %s", action, instrument, error)

    # Public operations

    async def place(self, order: Order) -> OrderResult:
        async with self._lock:
            return await self._place(order)

    async def _place(self, order: Order) -> OrderResult:
        async def operation() -> Outcome:
            self.validate(order)
            self._require_trading()
            if order.leverage is not None:
                lev = await self._sync_leverage(
                    order.instrument,
                    order.leverage,
                    pos_side=order.pos_side,
                    request_id=client_order_id(order.request_id, "lev"),
                )
                if not lev.ok:
                    raise _Aborted(f"leverage sync failed ({lev.status}): {lev.detail}")
            ticket = await self.transport.place_order(
                order,
                self.td_mode,
                client_order_id(order.request_id),
            )
            logger.info(
                "Placed %s %s %s x%s (%s)",
                order.ord_type,
                order.side,
                order.instrument,
                order.size,
                ticket.id,
            )
            return STATUS_OK, f"{order.side} {order.size} {order.instrument} accepted", ticket.as_dict()

        return await self._submit("place", order.instrument, order.request_id, order.as_dict(), operation)

    async def sync_leverage(
        self,
        instrument: str,
        requested: float,
        pos_side: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> OrderResult:
        async with self._lock:
            return await self._sync_leverage(instrument, requested, pos_side, request_id or new_request_id())

    async def _sync_leverage(
        self,
        instrument: str,
        requested: float,
        pos_side: Optional[str],
        request_id: str,
    ) -> OrderResult:
        lev_side = self._leverage_pos_side(pos_side)
        details = {"instrument": instrument, "leverage": requested, "pos_side": lev_side, "request_id": request_id}

        async def operation() -> Outcome:
            self._require_instrument(instrument)
            self._check_leverage(instrument, requested)
            current = self.current_leverage(instrument, lev_side)
            if current is not None and abs(current - requested) <= LEVERAGE_EPSILON:
                return STATUS_NOOP, f"{instrument} leverage already {current:g}x", None
            self._require_trading()
            ack = await self.transport.set_leverage(instrument, requested, self.td_mode, lev_side)
            self._leverage[(instrument, lev_side)] = float(requested)
            logger.info("Leverage for %s set to %sx (was %s)", instrument, requested, current)
            return STATUS_OK, f"{instrument} leverage set to {requested:g}x", ack

        return await self._submit("set_leverage", instrument, request_id, details, operation)

    async def attach_protective(
        self,
        position: Position,
        take_profit: Optional[float] = None,
        stop_loss: Optional[float] = None,
        entry_price: Optional[float] = None,
        tag: str = "",
        request_id: Optional[str] = None,
    ) -> OrderResult:
        request_id = request_id or new_request_id()
        details = {
            "position": position.as_dict(),
            "take_profit": take_profit,
            "stop_loss": stop_loss,
            "entry_price": entry_price,
            "tag": tag,
            "request_id": request_id,
        }

        async def operation() -> Outcome:
            self._require_instrument(position.instrument)
            if take_profit is None and stop_loss is None:
                raise ValidationError("Protective order needs a take-profit or stop-loss price")
            if position.is_flat:
                raise ValidationError(f"No open {position.instrument} position to protect")
            for label, price in (("take-profit", take_profit), ("stop-loss", stop_loss)):
                if price is not None and (not math.isfinite(price) or price <= 0):
                    raise ValidationError(f"{label} price must be positive, got {price!r}")
            reference = entry_price if entry_price is not None else position.avg_price
            if reference is not None:
                self._check_protective_direction(position.direction, reference, take_profit, stop_loss)
            self._require_trading()
            ticket = await self.transport.place_algo_order(
                position.instrument,
                position.closing_side,
                position.quantity,
                self.td_mode,
                client_order_id(request_id),
                take_profit=take_profit,
                stop_loss=stop_loss,
                pos_side=self._order_pos_side(position.direction),
                tag=tag,
            )
            return STATUS_OK, f"protective {ticket.ord_type} for {position.instrument} accepted", ticket.as_dict()

        async with self._lock:
            return await self._submit("attach_protective", position.instrument, request_id, details, operation)

    @staticmethod
    def _check_protective_direction(
        direction: str,
        reference: float,
        take_profit: Optional[float],
        stop_loss: Optional[float],
    ) -> None:
        if direction == "long":
            if take_profit is not None and take_profit <= reference:
                raise ValidationError(f"Long take-profit {take_profit} must be above entry {reference}")
            if stop_loss is not None and stop_loss >= reference:
                raise ValidationError(f"Long stop-loss {stop_loss} must be below entry {reference}")
        else:
            if take_profit is not None and take_profit >= reference:
                raise ValidationError(f"Short take-profit {take_profit} must be below entry {reference}")
            if stop_loss is not None and stop_loss <= reference:
                raise ValidationError(f"Short stop-loss {stop_loss} must be above entry {reference}")

    async def close(
        self,
        position: Position,
        tag: str = "",
        request_id: Optional[str] = None,
        size: Optional[float] = None,
    ) -> OrderResult:
        """Reduce-only market exit; ``size`` closes part of the position and is capped at its quantity."""
        request_id = request_id or new_request_id()
        details = {"position": position.as_dict(), "size": size, "tag": tag, "request_id": request_id}

        async def operation() -> Outcome:
            spec = self._require_instrument(position.instrument)
            if position.is_flat:
                return STATUS_NOOP, f"{position.instrument} position already flat", None
            quantity = self._close_size(spec, position, size)
            order = Order(
                instrument=position.instrument,
                side=position.closing_side,
                size=quantity,
                tag=tag,
                reduce_only=True,
                pos_side=self._order_pos_side(position.direction),
                request_id=request_id,
            )
            self.validate(order)
            self._require_trading()
            ticket = await self.transport.place_order(order, self.td_mode, client_order_id(request_id))
            logger.info("Closed %s %s x%s of %s (%s)", position.direction, position.instrument, quantity, position.quantity, ticket.id)
            return STATUS_OK, f"reduce-only {order.side} {order.size} {position.instrument} accepted", ticket.as_dict()

        async with self._lock:
            return await self._submit("close", position.instrument, request_id, details, operation)

    @staticmethod
    def _close_size(spec: InstrumentSpec, position: Position, size: Optional[float]) -> float:
        if size is None:
            return position.quantity
        if not isinstance(size, (int, float)) or not math.isfinite(size) or size <= 0:
            raise ValidationError(f"Close size must be a positive number, got {size!r}")
        if size >= position.quantity:
            return position.quantity
        # Partial exits round down to a whole lot.
        lots = math.floor(size / spec.lot_size + LOT_TOLERANCE)
        if lots <= 0:
            raise ValidationError(f"Close size {size} is below {position.instrument} lot size {spec.lot_size}")
        return round(lots * spec.lot_size, 10)

    async def cancel(self, order: OpenOrder, tag: str = "", request_id: Optional[str] = None) -> OrderResult:
        request_id = request_id or new_request_id()
        details = {
            "order_id": order.order_id,
            "kind": order.kind,
            "ord_type": order.ord_type,
            "side": order.side,
            "size": order.size,
            "tag": tag,
            "request_id": request_id,
        }

        async def operation() -> Outcome:
            if order.instrument not in self.instruments:
                raise ValidationError(f"{order.instrument} is not in the tradable instrument set")
            if not order.order_id:
                raise ValidationError(f"Cancel for {order.instrument} has no order id")
            self._require_trading()
            ack = await self.transport.cancel_order(order)
            logger.info("Cancelled %s order %s on %s", order.kind, order.order_id, order.instrument)
            return STATUS_OK, f"{order.kind} order {order.order_id} on {order.instrument} cancelled", ack

        async with self._lock:
            return await self._submit("cancel", order.instrument, request_id, details, operation)

    async def fetch_positions(self) -> List[Position]:
        self._require_trading()
        async with self._lock:
            positions = await self.transport.fetch_positions()
            self._seed_leverage(positions)
        return positions

    async def fetch_account_snapshot(self, recent_trades: Optional[List[Dict[str, Any]]] = None) -> AccountSnapshot:
        """Fresh positions, pending orders and balances; raises TradingError when unavailable."""
        self._require_trading()
        async with self._lock:
            positions, open_orders, (balances, total_equity) = await asyncio.gather(
                self.transport.fetch_positions(),
                self.transport.fetch_open_orders(),
                self.transport.fetch_balances(),
            )
            self._seed_leverage(positions)
        return AccountSnapshot(
            positions=positions,
            open_orders=open_orders,
            balances=balances,
            recent_trades=list(recent_trades or []),
            total_equity=total_equity,
        )

    def _seed_leverage(self, positions: Iterable[Position]) -> None:
        for position in positions:
            if position.leverage is None:
                continue
            side = None if position.pos_side == "net" else position.pos_side
            self._leverage[(position.instrument, self._leverage_pos_side(side))] = position.leverage

    def leverage_snapshot(self) -> Dict[str, float]:
        out: Dict[str, float] = {}
        for (instrument, side), value in self._leverage.items():
            out[instrument if side is None else f"{instrument}:{side}"] = value
        return out

    async def aclose(self):
        await self.transport.close()
