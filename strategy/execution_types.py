import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from orchestration.commands import now_ms

_CLIENT_ID_CHARS = re.compile(r"[^A-Za-z0-9]")


def new_request_id() -> str:
    return uuid.uuid4().hex


def client_order_id(request_id: str, suffix: str = "") -> str:
    """Exchange-safe client id (alphanumeric, at most 32 chars) derived from a request id."""
    base = _CLIENT_ID_CHARS.sub("", request_id)
    suffix = _CLIENT_ID_CHARS.sub("", suffix)
    return (base[: 32 - len(suffix)] + suffix)[:32]


@dataclass(frozen=True)
class InstrumentSpec:
    inst_id: str
    lot_size: float
    min_size: float
    tick_size: float = 0.0
    contract_value: float = 1.0
    max_leverage: Optional[float] = None


@dataclass
class Order:
    instrument: str
    side: str
    size: float
    price: Optional[float] = None
    leverage: Optional[float] = None
    tag: str = ""
    reduce_only: bool = False
    pos_side: Optional[str] = None
    request_id: str = field(default_factory=new_request_id)

    @property
    def ord_type(self) -> str:
        return "market" if self.price is None else "limit"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "instrument": self.instrument,
            "side": self.side,
            "size": self.size,
            "price": self.price,
            "ord_type": self.ord_type,
            "leverage": self.leverage,
            "tag": self.tag,
            "reduce_only": self.reduce_only,
            "pos_side": self.pos_side,
            "request_id": self.request_id,
        }


@dataclass(frozen=True)
class Position:
    """Exchange-reported position; ``size`` is signed in net mode."""

    instrument: str
    pos_side: str
    size: float
    avg_price: Optional[float] = None
    leverage: Optional[float] = None
    unrealized_pnl: Optional[float] = None
    margin_mode: Optional[str] = None

    @property
    def direction(self) -> str:
        if self.size == 0:
            return "flat"
        if self.pos_side == "long":
            return "long"
        if self.pos_side == "short":
            return "short"
        return "long" if self.size > 0 else "short"

    @property
    def quantity(self) -> float:
        return abs(self.size)

    @property
    def is_flat(self) -> bool:
        return self.size == 0

    @property
    def closing_side(self) -> str:
        return "sell" if self.direction == "long" else "buy"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "instrument": self.instrument,
            "pos_side": self.pos_side,
            "direction": self.direction,
            "size": self.size,
            "avg_price": self.avg_price,
            "leverage": self.leverage,
            "unrealized_pnl": self.unrealized_pnl,
            "margin_mode": self.margin_mode,
        }


@dataclass(frozen=True)
class OpenOrder:
    instrument: str
    order_id: str
    side: str
    size: float
    ord_type: str
    price: Optional[float] = None
    state: Optional[str] = None
    client_order_id: Optional[str] = None
    tag: str = ""
    reduce_only: bool = False
    created_ms: Optional[int] = None
    # "regular" or "algo"; algo orders are cancelled through a separate endpoint.
    kind: str = "regular"

    @property
    def is_algo(self) -> bool:
        return self.kind == "algo"


@dataclass(frozen=True)
class Balance:
    currency: str
    equity: Optional[float] = None
    available: Optional[float] = None
    equity_usd: Optional[float] = None


@dataclass
class AccountSnapshot:
    positions: List[Position] = field(default_factory=list)
    open_orders: List[OpenOrder] = field(default_factory=list)
    balances: List[Balance] = field(default_factory=list)
    recent_trades: List[Dict[str, Any]] = field(default_factory=list)
    total_equity: Optional[float] = None
    timestamp_ms: int = field(default_factory=now_ms)

    def positions_for(self, instrument: str) -> List[Position]:
        return [p for p in self.positions if p.instrument == instrument and not p.is_flat]

    def orders_for(self, instrument: str, order_ids: Iterable[str]) -> List[OpenOrder]:
        wanted = set(order_ids)
        return [o for o in self.open_orders if o.instrument == instrument and o.order_id in wanted]


@dataclass
class OrderTicket:
    """Normalized view of an exchange order acknowledgement."""

    instrument: str
    side: str
    ord_type: str
    size: float
    status: Optional[str] = None
    price: Optional[float] = None
    take_profit: Optional[float] = None
    stop_loss: Optional[float] = None
    client_order_id: Optional[str] = None
    exchange_order_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        if self.client_order_id:
            return self.client_order_id
        if self.exchange_order_id:
            return self.exchange_order_id
        return "order"

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "instrument": self.instrument,
            "side": self.side,
            "ord_type": self.ord_type,
            "status": self.status,
            "size": self.size,
            "price": self.price,
            "take_profit": self.take_profit,
            "stop_loss": self.stop_loss,
            "client_order_id": self.client_order_id,
            "exchange_order_id": self.exchange_order_id,
        }
        if self.raw:
            data["raw"] = self.raw
        return data
