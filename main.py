import asyncio
import logging
import signal
from typing import Dict, List, Optional

from ai.client import ChatCompletionClient
from ai.decision_loop import AIDecisionLoop
from ai.decisions import DecisionLimits
from ai.prompt import load_system_prompt
from analytics.history_store import HistoryStore
from analytics.market_analytics import MarketAnalyticsFetcher
from api.alerts import AlertWebhook
from api.metrics import start_metrics_server
from config import config
from config.settings import RuntimeSettings, load_runtime_settings
from ingest.history_preloader import HistoryPreloader
from ingest.market_data_manager import MarketDataManager
from ingest.okx_rest import OKXRESTClient
from ingest.websocket_client import WebSocketClient
from monitoring.async_utils import run_tasks_with_cleanup
from monitoring.logging_utils import setup_logging
from monitoring.threshold_monitor import ThresholdMonitor
from orchestration.command_bus import CommandBus
from orchestration.commands import now_ms
from orchestration.errors import ConfigError
from orchestration.persistence import PersistenceLogger
from strategy.execution import OrderExecutionEngine
from strategy.execution_types import InstrumentSpec
from strategy.transports.okx import OKXTransport


logger = logging.getLogger(__name__)


def build_instrument_specs(raw: Dict[str, Dict]) -> Dict[str, InstrumentSpec]:
    specs: Dict[str, InstrumentSpec] = {}
    for inst, values in raw.items():
        try:
            specs[inst] = InstrumentSpec(
                inst_id=inst,
                lot_size=float(values['lot_size']),
                min_size=float(values.get('min_size', values['lot_size'])),
                tick_size=float(values.get('tick_size', 0.0)),
                contract_value=float(values.get('contract_value', 1.0)),
                max_leverage=float(values['max_leverage']) if values.get('max_leverage') else None,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid instrument_specs entry for {inst}: {exc}") from exc
    return specs


class TradingSystem:
    """Wire the mark-price pipeline, order engine and AI loop around one command bus."""

    def __init__(self, config_obj=None):
        self.config = config_obj or config
        # ConfigError propagates: nothing starts with an unusable config.
        self.settings: RuntimeSettings = load_runtime_settings(self.config)
        self.monitoring_cfg = self.config.get('monitoring') or {}
        self.shutdown = asyncio.Event()
        self.running = False
        settings = self.settings

        self.bus = CommandBus(settings.bus_price_policy, settings.bus_price_capacity)
        self.history = HistoryStore(settings.history_window_s, settings.history_windows, clock=now_ms)
        self.rest = OKXRESTClient(simulated=settings.simulated)

        # Consumers subscribe before any producer starts so nothing is missed.
        self.monitor = ThresholdMonitor(
            self.bus,
            settings.thresholds,
            debounce_s=settings.debounce_s,
            debounce_overrides=settings.debounce_overrides,
            subscription=self.bus.subscribe('threshold_monitor', policy='block'),
        )
        self.trade_store, self.ai_store, self.error_store = PersistenceLogger.stores_from_settings(
            settings.persistence
        )
        self.persistence = PersistenceLogger(
            self.bus.subscribe('persistence'),
            self.trade_store,
            self.ai_store,
            self.error_store,
        )
        self.alerts = AlertWebhook(bus=self.bus)
        self._alerts_subscription = self.bus.subscribe('alerts')

        self.ws_client = WebSocketClient(
            settings.instruments,
            self.history,
            self.bus,
            backoff=settings.ws_backoff,
            shutdown=self.shutdown,
        )
        self.preloader = HistoryPreloader(
            self.rest,
            self.history,
            self.bus,
            settings.instruments,
            backoff=settings.history_backoff,
        )
        self.market_data_manager = MarketDataManager(self.ws_client, self.preloader)

        self.engine = OrderExecutionEngine(
            OKXTransport(self.rest),
            self.bus,
            settings.instruments,
            td_mode=settings.td_mode,
            pos_mode=settings.pos_mode,
            min_leverage=settings.min_leverage,
            max_leverage=settings.max_leverage,
            instrument_specs=build_instrument_specs(settings.instrument_specs),
        )

        self.ai_client: Optional[ChatCompletionClient] = None
        self.ai_loop: Optional[AIDecisionLoop] = None
        ai = settings.ai
        if ai.enabled:
            self.ai_client = ChatCompletionClient(
                endpoint=ai.endpoint,
                api_key=ai.api_key,
                model=ai.model,
                timeout_s=ai.timeout_s,
            )
            self.ai_loop = AIDecisionLoop(
                self.engine,
                self.ai_client,
                MarketAnalyticsFetcher(self.history, self.bus, self.rest, max_instruments=ai.max_instruments),
                self.bus,
                settings.instruments,
                DecisionLimits(
                    instruments=frozenset(settings.instruments),
                    min_leverage=settings.min_leverage,
                    max_leverage=settings.max_leverage,
                    default_size=ai.default_size,
                ),
                trade_log=self.trade_store,
                interval_s=ai.interval_s,
                auto_execute=ai.auto_execute,
                system_prompt=load_system_prompt(ai.system_prompt_path),
                shutdown=self.shutdown,
            )

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.shutdown.set)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform or outside the main thread.
                logger.debug("Signal handler for %s not installed", sig)

    async def initialize(self):
        await self.engine.initialize()
        if self.ai_loop is not None and not self.engine.trading_enabled:
            logger.warning("Exchange credentials missing; AI decisions will be recorded but not executed")
        if self.ai_client is not None and not self.ai_client.has_credentials:
            logger.warning("AI provider API key missing; AI cycles will record provider errors")

    async def _watch_shutdown(self, market_task: asyncio.Task):
        await self.shutdown.wait()
        logger.info("Shutdown requested")
        await self.market_data_manager.stop()
        market_task.cancel()
        await self.bus.close()

    async def start(self):
        self.running = True
        self._install_signal_handlers()
        start_metrics_server(self.monitoring_cfg.get('prometheus_port', 9090))
        await self.initialize()

        market_task = asyncio.create_task(self.market_data_manager.start(), name='market_data')
        tasks: List[asyncio.Task] = [
            market_task,
            asyncio.create_task(self.monitor.run(), name='threshold_monitor'),
            asyncio.create_task(self.persistence.run(), name='persistence'),
            asyncio.create_task(self.alerts.run(self._alerts_subscription), name='alerts'),
            asyncio.create_task(self._watch_shutdown(market_task), name='shutdown_watch'),
        ]
        if self.ai_loop is not None:
            tasks.append(asyncio.create_task(self.ai_loop.run(), name='ai_loop'))
        logger.info("Trading system started for %s", ", ".join(self.settings.instruments))

        async def _cleanup():
            await self.stop()

        await run_tasks_with_cleanup(tasks, cleanup=_cleanup)

    async def stop(self):
        if not self.running:
            return
        self.running = False
        self.shutdown.set()
        await self.market_data_manager.stop()
        await self.bus.close()
        await self.engine.aclose()
        await self.rest.close()
        if self.ai_client is not None:
            await self.ai_client.close()
        logger.info("Trading system stopped")


async def main():
    try:
        system = TradingSystem(config)
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        raise SystemExit(2) from exc
    try:
        await system.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("System shutting down on interrupt")
        await system.stop()


if __name__ == "__main__":
    setup_logging()
    asyncio.run(main())
