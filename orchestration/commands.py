import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class PricePoint:
    instrument: str
    timestamp: int
    mark_price: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instrument": self.instrument,
            "timestamp": self.timestamp,
            "mark_price": self.mark_price,
        }


class Command:
    """Unit of cross-component communication carried by the command bus.

    Consumers dispatch with ``isinstance`` and must ignore variants they do
    not know about.
    """

    kind = "command"

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["kind"] = self.kind
        return payload


@dataclass(frozen=True)
class PriceUpdate(Command):
    point: PricePoint

    kind = "price_update"

    @property
    def instrument(self) -> str:
        return self.point.instrument


@dataclass(frozen=True)
class Notify(Command):
    instrument: str
    reason: str
    price: float
    direction: str = ""
    bound: Optional[float] = None
    timestamp_ms: int = field(default_factory=now_ms)

    kind = "notify"


@dataclass(frozen=True)
class Error(Command):
    message: str
    context: Dict[str, Any] = field(default_factory=dict)
    timestamp_ms: int = field(default_factory=now_ms)

    kind = "error"


@dataclass(frozen=True)
class OrderRequest(Command):
    request_id: str
    action: str
    instrument: str
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp_ms: int = field(default_factory=now_ms)

    kind = "order_request"


# OrderResult.status values
STATUS_OK = "ok"
STATUS_NOOP = "noop"
STATUS_VALIDATION_ERROR = "validation_error"
STATUS_TRANSPORT_ERROR = "transport_error"
STATUS_REJECTED = "rejected"
STATUS_RATE_LIMITED = "rate_limited"
STATUS_ABORTED = "aborted"


@dataclass(frozen=True)
class OrderResult(Command):
    request_id: str
    action: str
    instrument: str
    status: str
    detail: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    ack: Optional[Dict[str, Any]] = None
    error_type: Optional[str] = None
    timestamp_ms: int = field(default_factory=now_ms)

    kind = "order_result"

    @property
    def ok(self) -> bool:
        return self.status in (STATUS_OK, STATUS_NOOP)


@dataclass(frozen=True)
class AIDecisionRecord:
    timestamp_ms: int
    cycle: int
    outcome: str
    prompt_context: Optional[str] = None
    raw_response: Optional[str] = None
    parsed_actions: List[Dict[str, Any]] = field(default_factory=list)
    parse_error: Optional[str] = None
    summary: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AIDecision(Command):
    record: AIDecisionRecord

    kind = "ai_decision"
