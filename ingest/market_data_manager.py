import asyncio
import logging
from typing import Dict, Optional

from ingest.history_preloader import HistoryPreloader
from ingest.websocket_client import WebSocketClient
from monitoring.async_utils import run_tasks_with_cleanup

logger = logging.getLogger(__name__)


class MarketDataManager:
    """Run the startup preload alongside the live mark-price stream.

    The stream starts immediately; preloaded candles are merged into the
    history store whenever they arrive, so a throttled preload never holds
    back live ticks.
    """

    def __init__(self, ws_client: WebSocketClient, preloader: Optional[HistoryPreloader] = None):
        self.ws_client = ws_client
        self.preloader = preloader
        self.preload_counts: Dict[str, int] = {}

    async def _preload(self):
        if self.preloader is None:
            return
        try:
            self.preload_counts = await self.preloader.preload()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("History preload crashed")

    async def start(self):
        tasks = [
            asyncio.create_task(self._preload()),
            asyncio.create_task(self.ws_client.run()),
        ]
        await run_tasks_with_cleanup(tasks)

    async def stop(self):
        await self.ws_client.stop()
