import asyncio
import logging
import time
from typing import Dict, Optional

import aiohttp

from api.metrics import metrics
from config import config
from orchestration.command_bus import CommandBus, Subscription
from orchestration.commands import Error, Notify


logger = logging.getLogger(__name__)


class AlertWebhook:
    """Notifier consumer: forwards Notify commands to a webhook, or logs them."""

    def __init__(self, url: Optional[str] = None, bus: Optional[CommandBus] = None, timeout_s: float = 5.0):
        if url is None:
            url = config.section('monitoring').get('alert_webhook')
        # Treat empty or placeholder URLs as disabled
        if url and 'your-webhook-url' not in str(url):
            self.webhook_url = url
            self.enabled = True
        else:
            self.webhook_url = None
            self.enabled = False
        self.bus = bus
        self.timeout_s = timeout_s
        self.sent = 0

    async def send_alert(self, alert_type: str, message: str, severity: str = 'warning',
                         metadata: Dict = None) -> bool:
        if not self.enabled:
            logger.warning("[Alert] %s: %s - %s", severity.upper(), alert_type, message)
            return True

        payload = {
            'type': alert_type,
            'message': message,
            'severity': severity,
            'timestamp': time.time(),
            'metadata': metadata or {},
        }
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.webhook_url,
                    json=payload,
                    headers={'Content-Type': 'application/json'},
                    timeout=aiohttp.ClientTimeout(total=self.timeout_s),
                ) as response:
                    if response.status >= 300:
                        await self._failed(alert_type, f"webhook returned HTTP {response.status}")
                        return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            await self._failed(alert_type, f"webhook error: {e}")
            return False
        self.sent += 1
        return True

    async def _failed(self, alert_type: str, reason: str) -> None:
        logger.error("[Alert] %s delivery failed: %s", alert_type, reason)
        metrics.record_error("alerts")
        if self.bus is not None:
            await self.bus.publish(Error(
                f"Alert delivery failed: {reason}",
                {"component": "alerts", "alert_type": alert_type},
            ))

    async def notify(self, command: Notify) -> bool:
        return await self.send_alert(
            'threshold',
            command.reason,
            'warning',
            {
                'instrument': command.instrument,
                'price': command.price,
                'direction': command.direction,
                'bound': command.bound,
                'timestamp_ms': command.timestamp_ms,
            },
        )

    async def run(self, subscription: Subscription):
        logger.info("Alert consumer started (webhook %s)", "enabled" if self.enabled else "disabled")
        async for command in subscription:
            if isinstance(command, Notify):
                await self.notify(command)
