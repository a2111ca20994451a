import errno
import logging
from pathlib import Path
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Optional

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None

_CONNECTION_STATES = ("disconnected", "connecting", "subscribed", "streaming")


def _monitoring_section():
    return config.section('monitoring')


def _get_port_scan_limit() -> int:
    try:
        return int(_monitoring_section().get('prometheus_port_scan', 0))
    except (TypeError, ValueError):
        return 0


def _get_port_file() -> Optional[Path]:
    path_value = _monitoring_section().get('metrics_port_file')
    if not path_value:
        return None
    return Path(path_value)


def _write_port_file(port: int) -> None:
    port_file = _get_port_file()
    if not port_file:
        return
    try:
        port_file.parent.mkdir(parents=True, exist_ok=True)
        port_file.write_text(str(port))
    except OSError as exc:
        logger.warning("Failed to persist metrics port file %s: %s", port_file, exc)


class MetricsCollector:
    def __init__(self):
        self.price_updates = Counter('mark_price_updates_total', 'Mark-price ticks accepted into history', ['instrument'])
        self.mark_price = Gauge('mark_price', 'Latest mark price', ['instrument'])
        self.decode_errors = Counter('ws_decode_errors_total', 'Malformed WebSocket messages skipped')

        self.reconnect_count = Counter('websocket_reconnects_total', 'Total WebSocket reconnects')
        self.connection_state = Gauge('websocket_connection_state', 'Current ingestor connection state', ['state'])
        self.backoff_delay = Histogram(
            'websocket_backoff_seconds',
            'Backoff delay applied before reconnecting',
            buckets=(0.5, 1, 2, 4, 8, 16, 32, 64),
        )

        self.preload_results = Counter('history_preload_total', 'History preload outcomes', ['instrument', 'outcome'])
        self.preload_points = Gauge('history_preload_points', 'Points seeded by the preloader', ['instrument'])
        self.rate_limited = Counter('rate_limited_total', 'Rate-limit responses received', ['endpoint'])

        self.notifications = Counter('threshold_notifications_total', 'Threshold notifications emitted', ['instrument', 'direction'])
        self.notifications_suppressed = Counter('threshold_notifications_suppressed_total', 'Breaches suppressed by debounce', ['instrument'])

        self.order_results = Counter('order_results_total', 'Order engine results', ['action', 'status'])
        self.order_latency = Histogram('order_send_latency_seconds', 'Latency from order submission to result')

        self.ai_cycles = Counter('ai_cycles_total', 'AI decision cycles', ['outcome'])
        self.ai_latency = Histogram(
            'ai_response_latency_seconds',
            'AI provider response latency',
            buckets=(1, 2, 5, 10, 20, 30, 60, 120),
        )

        self.queue_depth = Gauge('queue_depth', 'Pending commands per bus subscriber', ['buffer'])
        self.dropped_events = Counter('dropped_events_total', 'PriceUpdates coalesced or dropped', ['buffer'])
        self.errors = Counter('error_commands_total', 'Error commands published', ['component'])

    def record_price(self, instrument: str, price: float):
        self.price_updates.labels(instrument=instrument).inc()
        self.mark_price.labels(instrument=instrument).set(price)

    def record_decode_error(self):
        self.decode_errors.inc()

    def record_reconnect(self, delay_s: Optional[float] = None):
        self.reconnect_count.inc()
        if delay_s is not None:
            self.backoff_delay.observe(delay_s)

    def update_connection_state(self, state: str):
        for candidate in _CONNECTION_STATES:
            self.connection_state.labels(state=candidate).set(1 if candidate == state else 0)

    def record_preload(self, instrument: str, outcome: str, points: int = 0):
        self.preload_results.labels(instrument=instrument, outcome=outcome).inc()
        self.preload_points.labels(instrument=instrument).set(points)

    def record_rate_limited(self, endpoint: str):
        self.rate_limited.labels(endpoint=endpoint).inc()

    def record_notification(self, instrument: str, direction: str):
        self.notifications.labels(instrument=instrument, direction=direction).inc()

    def record_suppressed(self, instrument: str):
        self.notifications_suppressed.labels(instrument=instrument).inc()

    def record_order_result(self, action: str, status: str, latency_seconds: Optional[float] = None):
        self.order_results.labels(action=action, status=status).inc()
        if latency_seconds is not None:
            self.order_latency.observe(latency_seconds)

    def record_ai_cycle(self, outcome: str, latency_seconds: Optional[float] = None):
        self.ai_cycles.labels(outcome=outcome).inc()
        if latency_seconds is not None:
            self.ai_latency.observe(latency_seconds)

    def update_queue_depth(self, name: str, depth: int):
        self.queue_depth.labels(buffer=name).set(depth)

    def record_bus_drop(self, name: str):
        self.dropped_events.labels(buffer=name).inc()

    def record_error(self, component: str):
        self.errors.labels(component=component).inc()


def start_metrics_server(port: int = 9090):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return
    port_scan_limit = max(0, _get_port_scan_limit())
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        _write_port_file(candidate)
        logger.info("Prometheus metrics server started on port %s", candidate)
        return
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error


metrics = MetricsCollector()
