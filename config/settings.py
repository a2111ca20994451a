import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from config.config_loader import as_bool
from ingest.backoff import BackoffPolicy
from orchestration.errors import ConfigError


logger = logging.getLogger(__name__)

INSTRUMENT_PATTERN = re.compile(r"^[A-Z0-9]+(-[A-Z0-9]+)+$")
TD_MODES = ("cross", "isolated", "cash")
POS_MODES = ("net", "long_short")
PRICE_POLICIES = ("coalesce", "drop_oldest", "block")


@dataclass(frozen=True)
class Threshold:
    instrument: str
    lower: float = 0.0
    upper: float = math.inf

    def contains(self, price: float) -> bool:
        return self.lower <= price <= self.upper


@dataclass(frozen=True)
class AISettings:
    enabled: bool = True
    endpoint: str = "https://api.deepseek.com"
    model: str = "deepseek-chat"
    api_key: str = ""
    interval_s: float = 180.0
    timeout_s: float = 60.0
    auto_execute: bool = True
    default_size: Optional[float] = None
    system_prompt_path: Optional[str] = None
    max_instruments: int = 3


@dataclass(frozen=True)
class RuntimeSettings:
    instruments: Tuple[str, ...]
    thresholds: Dict[str, Threshold]
    history_window_s: float
    history_windows: Dict[str, float]
    debounce_s: float
    debounce_overrides: Dict[str, float]
    bus_price_policy: str
    bus_price_capacity: int
    td_mode: str
    pos_mode: str
    min_leverage: float
    max_leverage: float
    ws_backoff: BackoffPolicy
    history_backoff: BackoffPolicy
    instrument_specs: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    ai: AISettings = field(default_factory=AISettings)
    persistence: Dict[str, Any] = field(default_factory=dict)
    simulated: bool = False


def _section(source: Any, name: str) -> Dict[str, Any]:
    value = source.get(name) if source is not None else None
    if value is None:
        return {}
    if hasattr(value, 'to_dict'):
        value = value.to_dict()
    if not isinstance(value, Mapping):
        raise ConfigError(f"Config section '{name}' must be a mapping")
    return dict(value)


def _positive(value: Any, name: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a number, got {value!r}") from exc
    if not math.isfinite(number) or number <= 0:
        raise ConfigError(f"{name} must be positive, got {value!r}")
    return number


def _bound(value: Any, default: float, name: str) -> float:
    if value is None or value == "":
        return default
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a number, got {value!r}") from exc
    if math.isnan(number):
        raise ConfigError(f"{name} must not be NaN")
    return number


def validate_instruments(raw: Any) -> Tuple[str, ...]:
    if not isinstance(raw, (list, tuple)) or not raw:
        raise ConfigError("'instruments' must be a non-empty list of exchange symbols")
    seen = []
    for item in raw:
        if not isinstance(item, str) or not INSTRUMENT_PATTERN.match(item.strip()):
            raise ConfigError(f"Malformed instrument identifier: {item!r}")
        inst = item.strip()
        if inst not in seen:
            seen.append(inst)
    return tuple(seen)


def parse_thresholds(raw: Any, instruments: Tuple[str, ...]) -> Dict[str, Threshold]:
    """Threshold list or mapping; a repeated instrument replaces the earlier entry."""
    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        entries = [dict(bounds or {}, instrument=inst) for inst, bounds in raw.items()]
    elif isinstance(raw, (list, tuple)):
        entries = list(raw)
    else:
        raise ConfigError("'thresholds' must be a list or mapping")

    thresholds: Dict[str, Threshold] = {}
    for entry in entries:
        if not isinstance(entry, Mapping) or not entry.get('instrument'):
            raise ConfigError(f"Threshold entry needs an instrument: {entry!r}")
        inst = str(entry['instrument']).strip()
        lower = _bound(entry.get('lower'), 0.0, f"thresholds[{inst}].lower")
        upper = _bound(entry.get('upper'), math.inf, f"thresholds[{inst}].upper")
        if lower > upper:
            raise ConfigError(f"Threshold for {inst} has lower {lower} above upper {upper}")
        if inst not in instruments:
            logger.warning("Ignoring threshold for unconfigured instrument %s", inst)
            continue
        if inst in thresholds:
            logger.info("Duplicate threshold for %s; last entry wins", inst)
        thresholds[inst] = Threshold(inst, lower, upper)
    return thresholds


def load_runtime_settings(source: Any) -> RuntimeSettings:
    """Validate a loaded config (``Config`` or plain dict) into immutable settings.

    Raises ConfigError for anything that would make the process unusable.
    """
    instruments = validate_instruments(source.get('instruments'))
    thresholds = parse_thresholds(source.get('thresholds'), instruments)

    exchange = _section(source, 'exchange')
    history = _section(source, 'history')
    websocket = _section(source, 'websocket')
    monitor = _section(source, 'monitor')
    bus = _section(source, 'bus')
    trading = _section(source, 'trading')
    ai = _section(source, 'ai')

    window_s = _positive(history.get('window_s', 3600), 'history.window_s')
    windows = {
        str(inst): _positive(value, f"history.windows[{inst}]")
        for inst, value in (history.get('windows') or {}).items()
    }

    debounce_s = _bound(monitor.get('debounce_s'), 10.0, 'monitor.debounce_s')
    if debounce_s < 0:
        raise ConfigError("monitor.debounce_s must not be negative")
    overrides = {
        str(inst): _bound(value, debounce_s, f"monitor.debounce_overrides[{inst}]")
        for inst, value in (monitor.get('debounce_overrides') or {}).items()
    }

    policy = str(bus.get('price_policy', 'coalesce'))
    if policy not in PRICE_POLICIES:
        raise ConfigError(f"bus.price_policy must be one of {PRICE_POLICIES}, got {policy!r}")
    capacity = int(_positive(bus.get('price_capacity', 1024), 'bus.price_capacity'))

    td_mode = str(exchange.get('td_mode', 'cross'))
    if td_mode not in TD_MODES:
        raise ConfigError(f"exchange.td_mode must be one of {TD_MODES}, got {td_mode!r}")
    pos_mode = str(exchange.get('pos_mode', 'net'))
    if pos_mode not in POS_MODES:
        raise ConfigError(f"exchange.pos_mode must be one of {POS_MODES}, got {pos_mode!r}")

    min_leverage = _positive(trading.get('min_leverage', 1), 'trading.min_leverage')
    max_leverage = _positive(trading.get('max_leverage', 20), 'trading.max_leverage')
    if min_leverage > max_leverage:
        raise ConfigError("trading.min_leverage must not exceed trading.max_leverage")

    try:
        ws_backoff = BackoffPolicy(
            base_s=float(websocket.get('backoff_base_s', 1)),
            max_s=float(websocket.get('backoff_max_s', 30)),
            multiplier=float(websocket.get('backoff_multiplier', 2)),
            jitter=float(websocket.get('backoff_jitter', 0.25)),
        )
        history_backoff = BackoffPolicy(
            base_s=float(history.get('backoff_base_s', 0.5)),
            max_s=float(history.get('backoff_max_s', 8)),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid backoff configuration: {exc}") from exc

    default_size = ai.get('default_size')
    ai_settings = AISettings(
        enabled=as_bool(ai.get('enabled'), True, 'ai.enabled'),
        endpoint=str(ai.get('endpoint') or AISettings.endpoint),
        model=str(ai.get('model') or AISettings.model),
        api_key=str(ai.get('api_key') or ""),
        interval_s=_positive(ai.get('interval_s', 180), 'ai.interval_s'),
        timeout_s=_positive(ai.get('timeout_s', 60), 'ai.timeout_s'),
        auto_execute=as_bool(ai.get('auto_execute'), True, 'ai.auto_execute'),
        default_size=None if default_size in (None, "") else _positive(default_size, 'ai.default_size'),
        system_prompt_path=ai.get('system_prompt_path'),
        max_instruments=int(ai.get('max_instruments', 3)),
    )

    specs = _section(source, 'instrument_specs')
    return RuntimeSettings(
        instruments=instruments,
        thresholds=thresholds,
        history_window_s=window_s,
        history_windows=windows,
        debounce_s=debounce_s,
        debounce_overrides=overrides,
        bus_price_policy=policy,
        bus_price_capacity=capacity,
        td_mode=td_mode,
        pos_mode=pos_mode,
        min_leverage=min_leverage,
        max_leverage=max_leverage,
        ws_backoff=ws_backoff,
        history_backoff=history_backoff,
        instrument_specs={str(k): dict(v or {}) for k, v in specs.items()},
        ai=ai_settings,
        persistence=_section(source, 'persistence'),
        simulated=as_bool(exchange.get('simulated'), False, 'exchange.simulated'),
    )
