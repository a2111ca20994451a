"""Parse-then-validate boundary for AI decision responses.

Raw provider text is untrusted. ``parse_decision`` extracts JSON from it,
accepts the common response shapes and field aliases, and produces a closed
set of validated action variants. Any invalid action rejects the whole
response, so the execution engine never sees a partially valid decision.
"""
import json
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

from orchestration.errors import ParseError, ValidationError


@dataclass(frozen=True)
class OpenAction:
    instrument: str
    direction: str
    size: float
    leverage: Optional[float] = None
    take_profit: Optional[float] = None
    stop_loss: Optional[float] = None
    entry_price: Optional[float] = None
    reason: str = ""

    action = "open"


@dataclass(frozen=True)
class CloseAction:
    instrument: str
    size: Optional[float] = None
    reason: str = ""

    action = "close"


@dataclass(frozen=True)
class AdjustLeverageAction:
    instrument: str
    leverage: float
    direction: Optional[str] = None
    reason: str = ""

    action = "adjust_leverage"


@dataclass(frozen=True)
class CancelAction:
    instrument: str
    order_ids: Tuple[str, ...]
    reason: str = ""

    action = "cancel"



@dataclass(frozen=True)
class HoldAction:
    instrument: Optional[str] = None
    reason: str = ""

    action = "hold"


DecisionAction = Union[OpenAction, CloseAction, AdjustLeverageAction, CancelAction, HoldAction]


def action_to_dict(action: DecisionAction) -> Dict[str, Any]:
    payload = asdict(action)
    payload["action"] = action.action
    if isinstance(action, CancelAction):
        payload["order_ids"] = list(action.order_ids)
    return payload


@dataclass(frozen=True)
class DecisionLimits:
    instruments: FrozenSet[str]
    min_leverage: float = 1.0
    max_leverage: float = 20.0
    default_size: Optional[float] = None


@dataclass(frozen=True)
class ParsedDecision:
    actions: Tuple[DecisionAction, ...]
    summary: str = ""
    payloads: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_hold(self) -> bool:
        return all(isinstance(a, HoldAction) for a in self.actions)


# (canonical action, implied direction)
_SIGNALS = {
    "open": ("open", None),
    "buy_to_enter": ("open", "long"),
    "sell_to_enter": ("open", "short"),
    "close": ("close", None),
    "adjust_leverage": ("adjust_leverage", None),
    "set_leverage": ("adjust_leverage", None),
    "leverage": ("adjust_leverage", None),
    "cancel": ("cancel", None),
    "cancel_order": ("cancel", None),
    "cancel_orders": ("cancel", None),
    "hold": ("hold", None),
    "wait": ("hold", None),
}

_DIRECTIONS = {"long": "long", "buy": "long", "short": "short", "sell": "short"}
_WRAPPER_KEYS = ("operations", "decisions", "actions")
_SUMMARY_KEYS = ("summary", "analysis", "justification", "reason")


def _load_json(text: str) -> Any:
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped.strip("`")
        if stripped.lower().startswith("json"):
            stripped = stripped[4:]
    try:
        return json.loads(stripped)
    except ValueError:
        pass
    starts = [i for i in (stripped.find("{"), stripped.find("[")) if i >= 0]
    end = max(stripped.rfind("}"), stripped.rfind("]"))
    if not starts or end <= min(starts):
        raise ParseError("No JSON object found in AI response")
    try:
        return json.loads(stripped[min(starts): end + 1])
    except ValueError as exc:
        raise ParseError(f"AI response JSON is malformed: {exc}") from exc


def _unwrap(payload: Any, depth: int = 0) -> Tuple[List[Dict[str, Any]], str]:
    if depth > 4:
        raise ParseError("AI response nests wrappers too deeply")
    if isinstance(payload, list):
        items = [item for item in payload if item is not None]
        if any(not isinstance(item, dict) for item in items):
            raise ParseError("AI decision list must contain JSON objects")
        return items, ""
    if not isinstance(payload, dict):
        raise ParseError("AI decision must be a JSON object or array")

    summary = ""
    for key in _SUMMARY_KEYS:
        if isinstance(payload.get(key), str):
            summary = payload[key]
            break
    for key in _WRAPPER_KEYS:
        if key in payload:
            inner = payload[key]
            if isinstance(inner, dict):
                inner = [inner]
            items, inner_summary = _unwrap(inner, depth + 1)
            return items, summary or inner_summary
    response = payload.get("response")
    if isinstance(response, str):
        items, inner_summary = _unwrap(_load_json(response), depth + 1)
        return items, summary or inner_summary
    if isinstance(response, (dict, list)):
        items, inner_summary = _unwrap(response, depth + 1)
        return items, summary or inner_summary
    if isinstance(payload.get("decision"), dict):
        return [payload["decision"]], summary
    return [payload], summary


def extract_payloads(raw: str) -> Tuple[List[Dict[str, Any]], str]:
    """JSON decision objects plus the free-text summary, if any."""
    if not isinstance(raw, str) or not raw.strip():
        raise ParseError("AI response is empty")
    return _unwrap(_load_json(raw))


def _number(item: Dict[str, Any], keys: Iterable[str]) -> Optional[float]:
    for key in keys:
        if key not in item:
            continue
        value = item[key]
        if value is None or value == "":
            continue
        if isinstance(value, bool):
            raise ParseError(f"Field '{key}' must be numeric, got {value!r}")
        if isinstance(value, (int, float)):
            number = float(value)
        elif isinstance(value, str):
            try:
                number = float(value.strip())
            except ValueError as exc:
                raise ParseError(f"Field '{key}' must be numeric, got {value!r}") from exc
        else:
            raise ParseError(f"Field '{key}' must be numeric, got {value!r}")
        if not math.isfinite(number):
            raise ParseError(f"Field '{key}' must be finite, got {value!r}")
        return number
    return None


def resolve_instrument(value: Any, instruments: FrozenSet[str]) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("Decision has no instrument")
    wanted = value.strip().upper()
    if wanted in instruments:
        return wanted
    if "-" not in wanted:
        # Bare coin such as "BTC": accept only an unambiguous match.
        matches = sorted(inst for inst in instruments if inst.startswith(f"{wanted}-"))
        if len(matches) == 1:
            return matches[0]
    raise ValidationError(f"Instrument {value!r} is not in the tradable set")


def _order_ids(item: Dict[str, Any]) -> Tuple[str, ...]:
    for key in ("cancel_orders", "order_ids", "ord_ids", "order_id", "ord_id", "ordId"):
        if key not in item or item[key] in (None, ""):
            continue
        value = item[key]
        values = value if isinstance(value, list) else [value]
        ids = []
        for entry in values:
            if isinstance(entry, bool) or not isinstance(entry, (str, int)):
                raise ParseError(f"Field '{key}' must list order ids, got {entry!r}")
            text = str(entry).strip()
            if text and text not in ids:
                ids.append(text)
        if ids:
            return tuple(ids)
    raise ValidationError("cancel needs at least one order id in cancel_orders")


def _text(item: Dict[str, Any]) -> str:
    for key in ("reason", "justification", "summary"):
        if isinstance(item.get(key), str):
            return item[key]
    return ""


def validate_action(item: Dict[str, Any], limits: DecisionLimits) -> DecisionAction:
    raw_action = item.get("action") or item.get("signal") or item.get("type")
    if not isinstance(raw_action, str):
        raise ParseError(f"Decision has no action: {item!r}")
    key = raw_action.strip().lower().replace("-", "_").replace(" ", "_")
    if key not in _SIGNALS:
        raise ValidationError(f"Unsupported action {raw_action!r}")
    action, implied_direction = _SIGNALS[key]
    reason = _text(item)
    raw_instrument = item.get("instrument") or item.get("inst_id") or item.get("instId") or item.get("coin") or item.get("symbol")

    if action == "hold":
        instrument = None
        if raw_instrument:
            instrument = resolve_instrument(raw_instrument, limits.instruments)
        return HoldAction(instrument=instrument, reason=reason)

    instrument = resolve_instrument(raw_instrument, limits.instruments)
    leverage = _number(item, ("leverage", "lever"))
    if leverage is not None and not limits.min_leverage <= leverage <= limits.max_leverage:
        raise ValidationError(
            f"Leverage {leverage:g} outside bounds [{limits.min_leverage:g}, {limits.max_leverage:g}]"
        )

    if action == "close":
        size = _number(item, ("size", "quantity", "qty", "sz"))
        if size is not None and size < 0:
            raise ValidationError(f"close size must not be negative, got {size:g}")
        # A zero or missing size closes the whole position.
        return CloseAction(instrument=instrument, size=size or None, reason=reason)

    if action == "cancel":
        return CancelAction(instrument=instrument, order_ids=_order_ids(item), reason=reason)

    raw_direction = item.get("direction") or item.get("side") or item.get("pos_side")
    direction = implied_direction
    if isinstance(raw_direction, str) and raw_direction.strip():
        parsed = _DIRECTIONS.get(raw_direction.strip().lower())
        if parsed is None:
            raise ValidationError(f"Unknown direction {raw_direction!r}")
        if direction is not None and parsed != direction:
            raise ValidationError(f"Direction {raw_direction!r} contradicts signal {raw_action!r}")
        direction = parsed

    if action == "adjust_leverage":
        if leverage is None:
            raise ValidationError("adjust_leverage needs a leverage value")
        return AdjustLeverageAction(instrument=instrument, leverage=leverage, direction=direction, reason=reason)

    if direction is None:
        raise ValidationError("open needs a direction (long or short)")
    size = _number(item, ("size", "quantity", "qty", "sz"))
    if size is None:
        size = limits.default_size
    if size is None or size <= 0:
        raise ValidationError(f"open needs a positive size, got {size!r}")
    take_profit = _number(item, ("take_profit", "profit_target", "tp"))
    stop_loss = _number(item, ("stop_loss", "sl"))
    entry_price = _number(item, ("entry_price", "price"))
    for label, price in (("take_profit", take_profit), ("stop_loss", stop_loss), ("entry_price", entry_price)):
        if price is not None and price <= 0:
            raise ValidationError(f"{label} must be positive, got {price:g}")
    if take_profit is not None and stop_loss is not None:
        if direction == "long" and take_profit <= stop_loss:
            raise ValidationError("Long take_profit must be above stop_loss")
        if direction == "short" and take_profit >= stop_loss:
            raise ValidationError("Short take_profit must be below stop_loss")
    return OpenAction(
        instrument=instrument,
        direction=direction,
        size=size,
        leverage=leverage,
        take_profit=take_profit,
        stop_loss=stop_loss,
        entry_price=entry_price,
        reason=reason,
    )


def parse_decision(raw: str, limits: DecisionLimits) -> ParsedDecision:
    """Raises ParseError or ValidationError; never returns a partially valid decision."""
    payloads, summary = extract_payloads(raw)
    actions = tuple(validate_action(item, limits) for item in payloads)
    if not actions:
        actions = (HoldAction(reason=summary),)
    if not summary:
        summary = next((a.reason for a in actions if a.reason), "")
    return ParsedDecision(actions=actions, summary=summary, payloads=payloads)
