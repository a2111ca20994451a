import logging
import math
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from analytics.indicators import TimeframeIndicators
from analytics.market_analytics import InstrumentAnalytics
from strategy.execution_types import AccountSnapshot, Balance, InstrumentSpec, OpenOrder, Position


logger = logging.getLogger(__name__)

MAX_ITEMS = 12
SECTION_BREAK = "\n---\n"

DEFAULT_SYSTEM_PROMPT = """You are an autonomous trading agent operating perpetual swaps on OKX.
Each cycle you receive market analytics and the current account state. Decide whether to
open a position, close all or part of one, cancel pending orders, adjust leverage, or hold.

Rules:
- At most one position per instrument; no pyramiding, no hedging.
- A close without a size exits the whole position; a size closes that many contracts.
- Cancel only order ids listed under open orders.
- Every open must carry a take-profit and a stop-loss on the correct side of the entry.
- Leverage must stay within the limits listed in the context.
- Only trade instruments listed in the context.

Respond with a single JSON object and nothing else:
{
  "summary": "<short market analysis>",
  "decisions": [
    {
      "action": "open" | "close" | "cancel_order" | "adjust_leverage" | "hold",
      "instrument": "<instrument id, e.g. BTC-USDT-SWAP>",
      "direction": "long" | "short",
      "size": <contracts, number>,
      "leverage": <number>,
      "take_profit": <price>,
      "stop_loss": <price>,
      "cancel_orders": ["<order id>"],
      "reason": "<one sentence>"
    }
  ]
}
Use an empty "decisions" list, or a single "hold" entry, when there is no edge.
"""


def load_system_prompt(path: Optional[str] = None) -> str:
    if path:
        prompt_path = Path(path)
        try:
            text = prompt_path.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("System prompt %s unreadable (%s); using built-in prompt", prompt_path, exc)
        else:
            if text.strip():
                return text
    return DEFAULT_SYSTEM_PROMPT


def format_float(value: Optional[float]) -> str:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return "n/a"
    magnitude = abs(value)
    if magnitude >= 100:
        return f"{value:.2f}"
    if magnitude >= 1:
        return f"{value:.4f}"
    return f"{value:.6f}"


def format_series(values: Sequence[float]) -> str:
    return "[" + ", ".join(format_float(v) for v in values) + "]"


def format_timestamp(timestamp_ms: Optional[int]) -> str:
    if not timestamp_ms:
        return "n/a"
    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return moment.strftime("%Y-%m-%d %H:%M:%S UTC")


def _capped(lines: List[str], items: Sequence, render, empty: str, noun: str) -> None:
    if not items:
        lines.append(empty)
        return
    for item in list(items)[:MAX_ITEMS]:
        lines.append(f"- {render(item)}")
    if len(items) > MAX_ITEMS:
        lines.append(f"... {len(items) - MAX_ITEMS} more {noun} omitted")


def _format_trade_limit(inst: str, spec: InstrumentSpec, price: Optional[float]) -> str:
    text = (
        f"{inst}: min size {format_float(spec.min_size)} contracts, lot size {format_float(spec.lot_size)}, "
        f"contract value {format_float(spec.contract_value)}"
    )
    if price is not None:
        text += f", min notional ~{format_float(spec.min_size * spec.contract_value * price)} USDT"
    return text


def _format_timeframe(label: str, frame: TimeframeIndicators) -> List[str]:
    lines = [
        f"{label} ({frame.bar}): close={format_float(frame.last_close)}, EMA20={format_float(frame.ema20)}, "
        f"EMA50={format_float(frame.ema50)}, MACD={format_float(frame.macd)}, RSI7={format_float(frame.rsi7)}, "
        f"RSI14={format_float(frame.rsi14)}, ATR3={format_float(frame.atr3)}, ATR14={format_float(frame.atr14)}, "
        f"volume={format_float(frame.last_volume)} (avg {format_float(frame.volume_avg)})",
    ]
    for name in ("close", "ema20", "macd", "rsi7", "rsi14"):
        values = frame.series.get(name)
        if values:
            lines.append(f"  {name}: {format_series(values)}")
    return lines


def _format_analytics(entry: InstrumentAnalytics) -> List[str]:
    lines = [f"### {entry.inst_id}", f"current price: {format_float(entry.current_price)}"]
    if entry.funding_rate is not None:
        lines.append(
            f"funding rate: {entry.funding_rate * 100:.4f}% (next {format_timestamp(entry.next_funding_time)})"
        )
    if entry.open_interest is not None:
        lines.append(
            f"open interest: latest {format_float(entry.open_interest)}, average {format_float(entry.open_interest_avg)}"
        )
    if entry.history is not None and entry.history.points:
        h = entry.history
        lines.append(
            f"streamed mark price ({h.points} ticks): last={format_float(h.last_price)}, "
            f"change={format_float(h.change_pct)}%, EMA20={format_float(h.ema20)}, "
            f"RSI14={format_float(h.rsi14)}, realized vol={format_float(h.realized_volatility)}"
        )
    if entry.intraday is not None:
        lines.extend(_format_timeframe("intraday", entry.intraday))
    if entry.swing is not None:
        lines.extend(_format_timeframe("swing", entry.swing))
    return lines


def _format_balance(balance: Balance) -> str:
    return (
        f"{balance.currency}: equity {format_float(balance.equity)}, available {format_float(balance.available)}"
        + (f", ~{format_float(balance.equity_usd)} USD" if balance.equity_usd is not None else "")
    )


def _format_position(position: Position) -> str:
    return (
        f"{position.instrument} {position.direction} {format_float(position.quantity)} contracts "
        f"@ {format_float(position.avg_price)}, leverage {format_float(position.leverage)}x, "
        f"uPnL {format_float(position.unrealized_pnl)}"
    )


def _format_order(order: OpenOrder) -> str:
    text = (
        f"{order.order_id} {order.instrument} {order.side} {order.ord_type} "
        f"{format_float(order.size)} @ {format_float(order.price)}"
    )
    if order.is_algo:
        text += " trigger"
    if order.reduce_only:
        text += " reduce-only"
    if order.tag:
        text += f" [{order.tag}]"
    return text


def _format_trade(trade: Dict) -> str:
    return (
        f"{format_timestamp(trade.get('timestamp_ms'))} {trade.get('action', '?')} "
        f"{trade.get('instrument', '?')}: {trade.get('status', '?')} {trade.get('detail', '')}".rstrip()
    )


def render_context(
    snapshot: AccountSnapshot,
    analytics: Sequence[InstrumentAnalytics],
    instruments: Sequence[str],
    specs: Dict[str, InstrumentSpec],
    leverages: Dict[str, float],
    now_ms: int,
    leverage_bounds: Optional[tuple] = None,
) -> str:
    """Render the user prompt. Output depends only on the arguments."""
    lines: List[str] = [
        f"Current time: {format_timestamp(now_ms)}",
        "All series below are in chronological order: oldest -> newest.",
        "Intraday series use 3-minute bars and swing series use 4-hour bars.",
    ]

    prices = {a.inst_id: a.current_price for a in analytics if a.current_price is not None}
    lines.append(SECTION_BREAK)
    lines.append("## Trade limits")
    for inst in instruments:
        spec = specs.get(inst)
        if spec is not None:
            lines.append(f"- {_format_trade_limit(inst, spec, prices.get(inst))}")
        else:
            lines.append(f"- {inst}: no lot-size metadata")
    if leverage_bounds:
        lines.append(f"Allowed leverage: {format_float(leverage_bounds[0])}x to {format_float(leverage_bounds[1])}x")

    lines.append(SECTION_BREAK)
    lines.append("## Leverage settings")
    if leverages:
        for key in sorted(leverages):
            lines.append(f"- {key}: {format_float(leverages[key])}x")
    else:
        lines.append("No leverage recorded")

    lines.append(SECTION_BREAK)
    lines.append("## Market analytics")
    if analytics:
        for entry in analytics:
            lines.extend(_format_analytics(entry))
    else:
        lines.append("No market analytics available")

    lines.append(SECTION_BREAK)
    lines.append("## Balances")
    if snapshot.total_equity is not None:
        lines.append(f"Total equity: {format_float(snapshot.total_equity)} USD")
    _capped(lines, snapshot.balances, _format_balance, "No balances", "currencies")

    lines.append(SECTION_BREAK)
    lines.append("## Positions")
    _capped(lines, [p for p in snapshot.positions if not p.is_flat], _format_position, "No open positions", "positions")

    lines.append(SECTION_BREAK)
    lines.append("## Open orders")
    _capped(lines, snapshot.open_orders, _format_order, "No open orders", "orders")

    lines.append(SECTION_BREAK)
    lines.append("## Recent trades")
    _capped(lines, list(reversed(snapshot.recent_trades)), _format_trade, "No recent trades", "trades")

    lines.append("")
    lines.append("Based on the data above, respond with your trading decision in the required JSON format.")
    return "\n".join(lines)
