import asyncio
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ingest.okx_rest import OKXAPIError, OKXRESTClient
from strategy.execution_types import (
    Balance,
    InstrumentSpec,
    OpenOrder,
    Order,
    OrderTicket,
    Position,
)


__all__ = ["OKXTransport", "OKXAPIError", "instrument_type"]

ORDER_PATH = "/api/v5/trade/order"
ALGO_ORDER_PATH = "/api/v5/trade/order-algo"
SET_LEVERAGE_PATH = "/api/v5/account/set-leverage"
POSITIONS_PATH = "/api/v5/account/positions"
PENDING_ORDERS_PATH = "/api/v5/trade/orders-pending"
PENDING_ALGO_ORDERS_PATH = "/api/v5/trade/orders-algo-pending"
CANCEL_ORDER_PATH = "/api/v5/trade/cancel-order"
CANCEL_ALGO_PATH = "/api/v5/trade/cancel-algos"
BALANCE_PATH = "/api/v5/account/balance"
INSTRUMENTS_PATH = "/api/v5/public/instruments"


def instrument_type(inst_id: str) -> str:
    parts = inst_id.split("-")
    if len(parts) >= 3 and parts[-1] == "SWAP":
        return "SWAP"
    if len(parts) >= 3 and parts[-1].isdigit():
        return "FUTURES"
    return "SPOT"


def _fmt(value: float) -> str:
    text = f"{value:.10f}".rstrip("0").rstrip(".")
    return text or "0"


class OKXTransport:
    """Thin adapter around the OKX trading REST API with typed responses.

    No retries happen here; callers decide what may be retried.
    """

    def __init__(self, rest: Optional[OKXRESTClient] = None) -> None:
        self._rest = rest
        self._lock = asyncio.Lock()

    def _client(self) -> OKXRESTClient:
        if self._rest is None:
            self._rest = OKXRESTClient()
        return self._rest

    @property
    def has_credentials(self) -> bool:
        return self._client().has_credentials

    async def fetch_instruments(self, inst_ids: Iterable[str]) -> Dict[str, InstrumentSpec]:
        wanted = set(inst_ids)
        specs: Dict[str, InstrumentSpec] = {}
        for inst_type in sorted({instrument_type(inst) for inst in wanted}):
            rows = await self._client().get(INSTRUMENTS_PATH, params={"instType": inst_type})
            for row in rows:
                if not isinstance(row, dict) or row.get("instId") not in wanted:
                    continue
                spec = self._parse_instrument(row)
                if spec is not None:
                    specs[spec.inst_id] = spec
        return specs

    async def place_order(self, order: Order, td_mode: str, client_id: str) -> OrderTicket:
        body: Dict[str, Any] = {
            "instId": order.instrument,
            "tdMode": td_mode,
            "side": order.side,
            "ordType": order.ord_type,
            "sz": _fmt(order.size),
            "clOrdId": client_id,
        }
        if order.price is not None:
            body["px"] = _fmt(order.price)
        if order.pos_side:
            body["posSide"] = order.pos_side
        if order.reduce_only:
            body["reduceOnly"] = True
        if order.tag:
            body["tag"] = order.tag
        data = await self._client().post(ORDER_PATH, body=body)
        ack = self._check_ack(data)
        return OrderTicket(
            instrument=order.instrument,
            side=order.side,
            ord_type=order.ord_type,
            size=order.size,
            status="accepted",
            price=order.price,
            client_order_id=ack.get("clOrdId") or client_id,
            exchange_order_id=ack.get("ordId") or None,
            raw=ack,
        )

    async def place_algo_order(
        self,
        instrument: str,
        side: str,
        size: float,
        td_mode: str,
        client_id: str,
        take_profit: Optional[float] = None,
        stop_loss: Optional[float] = None,
        pos_side: Optional[str] = None,
        tag: str = "",
    ) -> OrderTicket:
        ord_type = "oco" if take_profit is not None and stop_loss is not None else "conditional"
        body: Dict[str, Any] = {
            "instId": instrument,
            "tdMode": td_mode,
            "side": side,
            "ordType": ord_type,
            "sz": _fmt(size),
            "reduceOnly": True,
            "algoClOrdId": client_id,
        }
        # Trigger prices fire market orders ("-1").
        if take_profit is not None:
            body["tpTriggerPx"] = _fmt(take_profit)
            body["tpOrdPx"] = "-1"
        if stop_loss is not None:
            body["slTriggerPx"] = _fmt(stop_loss)
            body["slOrdPx"] = "-1"
        if pos_side:
            body["posSide"] = pos_side
        if tag:
            body["tag"] = tag
        data = await self._client().post(ALGO_ORDER_PATH, body=body)
        ack = self._check_ack(data)
        return OrderTicket(
            instrument=instrument,
            side=side,
            ord_type=ord_type,
            size=size,
            status="accepted",
            take_profit=take_profit,
            stop_loss=stop_loss,
            client_order_id=ack.get("algoClOrdId") or client_id,
            exchange_order_id=ack.get("algoId") or None,
            raw=ack,
        )

    async def set_leverage(
        self,
        instrument: str,
        leverage: float,
        td_mode: str,
        pos_side: Optional[str] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "instId": instrument,
            "lever": _fmt(leverage),
            "mgnMode": td_mode,
        }
        if pos_side:
            body["posSide"] = pos_side
        data = await self._client().post(SET_LEVERAGE_PATH, body=body)
        return data[0] if data and isinstance(data[0], dict) else {}

    async def fetch_positions(self) -> List[Position]:
        rows = await self._client().get(POSITIONS_PATH, signed=True)
        positions: List[Position] = []
        for row in rows:
            if not isinstance(row, dict) or not row.get("instId"):
                continue
            size = self._as_float(row.get("pos"))
            if size is None:
                continue
            positions.append(Position(
                instrument=row["instId"],
                pos_side=row.get("posSide") or "net",
                size=size,
                avg_price=self._as_float(row.get("avgPx")),
                leverage=self._as_float(row.get("lever")),
                unrealized_pnl=self._as_float(row.get("upl")),
                margin_mode=row.get("mgnMode"),
            ))
        return positions

    async def fetch_open_orders(self) -> List[OpenOrder]:
        """Pending regular orders followed by pending take-profit/stop-loss algo orders."""
        rows = await self._client().get(PENDING_ORDERS_PATH, signed=True)
        orders: List[OpenOrder] = []
        for row in rows:
            if not isinstance(row, dict) or not row.get("instId"):
                continue
            orders.append(OpenOrder(
                instrument=row["instId"],
                order_id=str(row.get("ordId") or ""),
                side=row.get("side") or "",
                size=self._as_float(row.get("sz")) or 0.0,
                ord_type=row.get("ordType") or "",
                price=self._as_float(row.get("px")),
                state=row.get("state"),
                client_order_id=row.get("clOrdId") or None,
                tag=row.get("tag") or "",
                reduce_only=str(row.get("reduceOnly")).lower() == "true",
                created_ms=self._as_int(row.get("cTime")),
            ))
        algo_rows = await self._client().get(
            PENDING_ALGO_ORDERS_PATH, params={"ordType": "conditional,oco"}, signed=True
        )
        for row in algo_rows:
            if not isinstance(row, dict) or not row.get("instId"):
                continue
            orders.append(OpenOrder(
                instrument=row["instId"],
                order_id=str(row.get("algoId") or ""),
                side=row.get("side") or "",
                size=self._as_float(row.get("sz")) or 0.0,
                ord_type=row.get("ordType") or "",
                price=self._as_float(row.get("tpTriggerPx") or row.get("slTriggerPx")),
                state=row.get("state"),
                client_order_id=row.get("algoClOrdId") or None,
                tag=row.get("tag") or "",
                reduce_only=str(row.get("reduceOnly")).lower() == "true",
                created_ms=self._as_int(row.get("cTime")),
                kind="algo",
            ))
        return orders

    async def cancel_order(self, order: OpenOrder) -> Dict[str, Any]:
        if order.is_algo:
            data = await self._client().post(
                CANCEL_ALGO_PATH, body=[{"instId": order.instrument, "algoId": order.order_id}]
            )
        else:
            data = await self._client().post(
                CANCEL_ORDER_PATH, body={"instId": order.instrument, "ordId": order.order_id}
            )
        return self._check_ack(data)

    async def fetch_balances(self) -> Tuple[List[Balance], Optional[float]]:
        rows = await self._client().get(BALANCE_PATH, signed=True)
        if not rows or not isinstance(rows[0], dict):
            return [], None
        account = rows[0]
        balances: List[Balance] = []
        for detail in account.get("details") or []:
            if not isinstance(detail, dict) or not detail.get("ccy"):
                continue
            balances.append(Balance(
                currency=detail["ccy"],
                equity=self._as_float(detail.get("eq")),
                available=self._as_float(detail.get("availBal") or detail.get("availEq")),
                equity_usd=self._as_float(detail.get("eqUsd")),
            ))
        return balances, self._as_float(account.get("totalEq"))

    async def close(self) -> None:
        async with self._lock:
            if self._rest:
                try:
                    await self._rest.close()
                finally:
                    self._rest = None

    @staticmethod
    def _check_ack(data: List[Any]) -> Dict[str, Any]:
        ack = data[0] if data and isinstance(data[0], dict) else {}
        s_code = str(ack.get("sCode", "0") or "0")
        if s_code != "0":
            raise OKXAPIError(200, s_code, ack.get("sMsg"), str(ack))
        return ack

    def _parse_instrument(self, row: Dict[str, Any]) -> Optional[InstrumentSpec]:
        lot = self._as_float(row.get("lotSz"))
        if not lot:
            return None
        return InstrumentSpec(
            inst_id=row["instId"],
            lot_size=lot,
            min_size=self._as_float(row.get("minSz")) or lot,
            tick_size=self._as_float(row.get("tickSz")) or 0.0,
            contract_value=self._as_float(row.get("ctVal")) or 1.0,
            max_leverage=self._as_float(row.get("lever")),
        )

    @staticmethod
    def _as_float(value: Any) -> Optional[float]:
        if value is None or value == "":
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _as_int(value: Any) -> Optional[int]:
        if value is None or value == "":
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None
