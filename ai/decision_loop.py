import asyncio
import logging
import time
from enum import Enum
from typing import Callable, List, Optional, Sequence

from ai.client import ChatCompletionClient
from ai.decisions import (
    AdjustLeverageAction,
    CancelAction,
    CloseAction,
    DecisionAction,
    DecisionLimits,
    OpenAction,
    ParsedDecision,
    action_to_dict,
    parse_decision,
)
from ai.prompt import DEFAULT_SYSTEM_PROMPT, render_context
from analytics.market_analytics import MarketAnalyticsFetcher
from api.metrics import metrics
from orchestration.command_bus import CommandBus
from orchestration.commands import STATUS_OK, AIDecision, AIDecisionRecord, Error, now_ms
from orchestration.errors import ParseError, TradingError, ValidationError
from orchestration.persistence import JsonlStore
from strategy.execution import OrderExecutionEngine
from strategy.execution_types import AccountSnapshot, Order, Position


logger = logging.getLogger(__name__)

TAG_ENTRY = "aiopen"
TAG_PROTECTIVE = "aitpsl"
TAG_CLOSE = "aiclose"
RECENT_TRADES = 12

# AIDecisionRecord.outcome values
OUTCOME_SNAPSHOT_FAILED = "snapshot_unavailable"
OUTCOME_PROVIDER_ERROR = "provider_error"
OUTCOME_REJECTED = "rejected"
OUTCOME_VALIDATED = "validated"
OUTCOME_FAILED = "failed"


class CycleState(str, Enum):
    IDLE = "idle"
    SNAPSHOTTING = "snapshotting"
    PROMPTING = "prompting"
    AWAITING_RESPONSE = "awaiting_response"
    VALIDATING = "validating"
    EXECUTING = "executing"


class AIDecisionLoop:
    """Periodic snapshot -> prompt -> response -> validation -> execution cycle.

    Each cycle publishes exactly one AIDecision record. The record is
    published after validation and before any order is sent, so it never
    depends on execution outcomes; those arrive as OrderResult commands.
    """

    def __init__(
        self,
        engine: OrderExecutionEngine,
        client: ChatCompletionClient,
        analytics: MarketAnalyticsFetcher,
        bus: CommandBus,
        instruments: Sequence[str],
        limits: DecisionLimits,
        trade_log: Optional[JsonlStore] = None,
        interval_s: float = 180.0,
        auto_execute: bool = True,
        system_prompt: Optional[str] = None,
        clock: Optional[Callable[[], int]] = None,
        shutdown: Optional[asyncio.Event] = None,
    ):
        self.engine = engine
        self.client = client
        self.analytics = analytics
        self.bus = bus
        self.instruments = list(instruments)
        self.limits = limits
        self.trade_log = trade_log
        self.interval_s = float(interval_s)
        self.auto_execute = auto_execute
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
        self._clock = clock or now_ms
        self.shutdown = shutdown or asyncio.Event()
        self.state = CycleState.IDLE
        self.state_history: List[CycleState] = []
        self.cycle = 0
        self._recorded = False

    def _set_state(self, state: CycleState) -> None:
        self.state = state
        self.state_history.append(state)

    async def run(self):
        logger.info("AI decision loop started (interval %.0fs)", self.interval_s)
        while not self.shutdown.is_set():
            await self.run_cycle()
            try:
                await asyncio.wait_for(self.shutdown.wait(), timeout=self.interval_s)
            except asyncio.TimeoutError:
                pass
        logger.info("AI decision loop stopped")

    async def run_cycle(self) -> AIDecisionRecord:
        self.cycle += 1
        self._recorded = False
        started = time.monotonic()
        record: Optional[AIDecisionRecord] = None
        try:
            record = await self._cycle()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("AI cycle %s failed", self.cycle)
            await self._error(f"AI cycle failed: {exc}", "cycle")
            if not self._recorded:
                record = await self._record(OUTCOME_FAILED, parse_error=str(exc))
        finally:
            self._set_state(CycleState.IDLE)
        if record is not None:
            metrics.record_ai_cycle(record.outcome, time.monotonic() - started)
        return record

    async def _error(self, message: str, stage: str) -> None:
        metrics.record_error("ai")
        await self.bus.publish(Error(message, {"component": "ai", "stage": stage, "cycle": self.cycle}))

    async def _record(
        self,
        outcome: str,
        prompt: Optional[str] = None,
        raw: Optional[str] = None,
        decision: Optional[ParsedDecision] = None,
        parse_error: Optional[str] = None,
    ) -> AIDecisionRecord:
        record = AIDecisionRecord(
            timestamp_ms=self._clock(),
            cycle=self.cycle,
            outcome=outcome,
            prompt_context=prompt,
            raw_response=raw,
            parsed_actions=[action_to_dict(a) for a in decision.actions] if decision else [],
            parse_error=parse_error,
            summary=decision.summary if decision else "",
        )
        self._recorded = True
        await self.bus.publish(AIDecision(record))
        return record

    async def _recent_trades(self) -> list:
        if self.trade_log is None:
            return []
        return await asyncio.to_thread(self.trade_log.tail, RECENT_TRADES)

    async def _cycle(self) -> AIDecisionRecord:
        self._set_state(CycleState.SNAPSHOTTING)
        try:
            snapshot = await self.engine.fetch_account_snapshot(await self._recent_trades())
        except TradingError as exc:
            logger.warning("AI cycle %s aborted before prompting: %s", self.cycle, exc)
            await self._error(f"Account snapshot unavailable: {exc}", "snapshot")
            return await self._record(OUTCOME_SNAPSHOT_FAILED, parse_error=f"account snapshot unavailable: {exc}")
        analytics = await self.analytics.fetch(self.instruments)

        self._set_state(CycleState.PROMPTING)
        prompt = render_context(
            snapshot,
            analytics,
            self.instruments,
            self.engine.specs,
            self.engine.leverage_snapshot(),
            self._clock(),
            leverage_bounds=(self.limits.min_leverage, self.limits.max_leverage),
        )

        self._set_state(CycleState.AWAITING_RESPONSE)
        try:
            raw = await self.client.complete(self.system_prompt, prompt)
        except TradingError as exc:
            logger.warning("AI provider request failed: %s", exc)
            await self._error(f"AI provider request failed: {exc}", "request")
            return await self._record(OUTCOME_PROVIDER_ERROR, prompt=prompt, parse_error=str(exc))

        self._set_state(CycleState.VALIDATING)
        try:
            decision = parse_decision(raw, self.limits)
        except (ParseError, ValidationError) as exc:
            logger.warning("AI response rejected: %s", exc)
            await self._error(f"AI response rejected: {exc}", "validation")
            return await self._record(OUTCOME_REJECTED, prompt=prompt, raw=raw, parse_error=str(exc))

        record = await self._record(OUTCOME_VALIDATED, prompt=prompt, raw=raw, decision=decision)
        if decision.is_hold:
            logger.info("AI cycle %s: hold (%s)", self.cycle, decision.summary[:120])
            return record
        if not self.engine.trading_enabled or not self.auto_execute:
            logger.info("AI cycle %s: execution disabled; decision recorded only", self.cycle)
            return record

        self._set_state(CycleState.EXECUTING)
        for action in decision.actions:
            await self._execute(action, snapshot)
        return record

    async def _execute(self, action: DecisionAction, snapshot: AccountSnapshot) -> None:
        if isinstance(action, OpenAction):
            await self._open(action)
        elif isinstance(action, CloseAction):
            await self._close(action, snapshot)
        elif isinstance(action, CancelAction):
            await self._cancel(action, snapshot)
        elif isinstance(action, AdjustLeverageAction):
            pos_side = action.direction if self.engine.pos_mode == "long_short" else None
            await self.engine.sync_leverage(action.instrument, action.leverage, pos_side=pos_side)

    async def _open(self, action: OpenAction) -> None:
        side = "buy" if action.direction == "long" else "sell"
        order = Order(
            instrument=action.instrument,
            side=side,
            size=action.size,
            leverage=action.leverage,
            tag=TAG_ENTRY,
            pos_side=action.direction if self.engine.pos_mode == "long_short" else None,
        )
        result = await self.engine.place(order)
        if result.status != STATUS_OK:
            return
        if action.take_profit is None and action.stop_loss is None:
            return
        position = await self._filled_position(action.instrument, action.direction)
        if position is None:
            await self._error(
                f"No filled {action.direction} {action.instrument} position to protect after entry",
                "protective",
            )
            return
        await self.engine.attach_protective(
            position,
            take_profit=action.take_profit,
            stop_loss=action.stop_loss,
            entry_price=position.avg_price or action.entry_price,
            tag=TAG_PROTECTIVE,
        )

    async def _filled_position(self, instrument: str, direction: str) -> Optional[Position]:
        try:
            positions = await self.engine.fetch_positions()
        except TradingError as exc:
            logger.warning("Position refresh after entry failed: %s", exc)
            return None
        for position in positions:
            if position.instrument == instrument and position.direction == direction:
                return position
        return None

    async def _close(self, action: CloseAction, snapshot: AccountSnapshot) -> None:
        positions = snapshot.positions_for(action.instrument)
        if not positions:
            await self.engine.close(Position(action.instrument, "net", 0.0), tag=TAG_CLOSE)
            return
        for position in positions:
            await self.engine.close(position, tag=TAG_CLOSE, size=action.size)

    async def _cancel(self, action: CancelAction, snapshot: AccountSnapshot) -> None:
        # Only ids that are pending on this instrument in the snapshot are sent.
        orders = snapshot.orders_for(action.instrument, action.order_ids)
        if not orders:
            await self._error(
                f"No pending {action.instrument} orders match {', '.join(action.order_ids)}; cancel ignored",
                "cancel",
            )
            return
        for order in orders:
            await self.engine.cancel(order)
