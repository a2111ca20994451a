import math
import sys

sys.path.insert(0, '.')

import pytest

from config.config_loader import Config, as_bool
from config.settings import load_runtime_settings, parse_thresholds
from orchestration.errors import ConfigError


def _base(**overrides):
    cfg = {
        'instruments': ['BTC-USDT-SWAP', 'ETH-USDT-SWAP'],
        'thresholds': [{'instrument': 'BTC-USDT-SWAP', 'lower': 30000, 'upper': 38000}],
        'history': {'window_s': 3600},
        'monitor': {'debounce_s': 10, 'debounce_overrides': {'ETH-USDT-SWAP': 30}},
        'trading': {'min_leverage': 1, 'max_leverage': 20},
        'ai': {'default_size': 0.01},
    }
    cfg.update(overrides)
    return cfg


def test_defaults_and_overrides():
    settings = load_runtime_settings(_base())
    assert settings.instruments == ('BTC-USDT-SWAP', 'ETH-USDT-SWAP')
    assert settings.thresholds['BTC-USDT-SWAP'].upper == 38000
    assert settings.debounce_s == 10
    assert settings.debounce_overrides == {'ETH-USDT-SWAP': 30}
    assert settings.bus_price_policy == 'coalesce'
    assert settings.pos_mode == 'net'
    assert settings.ai.default_size == 0.01


@pytest.mark.parametrize('overrides', [
    {'instruments': []},
    {'instruments': 'BTC-USDT-SWAP'},
    {'instruments': ['btc usdt']},
    {'instruments': ['BTC-USDT-SWAP', 42]},
    {'thresholds': [{'instrument': 'BTC-USDT-SWAP', 'lower': 40000, 'upper': 30000}]},
    {'history': {'window_s': 0}},
    {'trading': {'min_leverage': 10, 'max_leverage': 5}},
    {'bus': {'price_policy': 'unbounded'}},
    {'exchange': {'pos_mode': 'hedge'}},
])
def test_invalid_config_fails_fast(overrides):
    with pytest.raises(ConfigError):
        load_runtime_settings(_base(**overrides))


def test_duplicate_thresholds_last_write_wins_and_unknown_ignored():
    thresholds = parse_thresholds([
        {'instrument': 'BTC-USDT-SWAP', 'lower': 1, 'upper': 2},
        {'instrument': 'BTC-USDT-SWAP', 'lower': 3},
        {'instrument': 'SOL-USDT-SWAP', 'lower': 1, 'upper': 2},
    ], ('BTC-USDT-SWAP',))
    assert list(thresholds) == ['BTC-USDT-SWAP']
    assert thresholds['BTC-USDT-SWAP'].lower == 3
    assert math.isinf(thresholds['BTC-USDT-SWAP'].upper)


def test_threshold_mapping_form():
    thresholds = parse_thresholds({'BTC-USDT-SWAP': {'upper': 50000}}, ('BTC-USDT-SWAP',))
    band = thresholds['BTC-USDT-SWAP']
    assert band.lower == 0
    assert band.contains(49999)
    assert not band.contains(50001)


def test_config_file_resolves_env_placeholders(tmp_path, monkeypatch):
    path = tmp_path / 'config.yaml'
    path.write_text(
        "exchange:\n"
        "  api_key: ${MARKWATCH_TEST_KEY}\n"
        "  api_secret: ${MARKWATCH_TEST_UNSET}\n"
        "instruments:\n"
        "  - BTC-USDT-SWAP\n"
    )
    monkeypatch.setenv('MARKWATCH_TEST_KEY', 'abc')
    monkeypatch.delenv('MARKWATCH_TEST_UNSET', raising=False)
    cfg = Config(str(path))
    assert cfg.exchange['api_key'] == 'abc'
    assert cfg.exchange.get('api_secret') == ''
    assert load_runtime_settings(cfg).instruments == ('BTC-USDT-SWAP',)


def test_shipped_config_is_valid():
    settings = load_runtime_settings(Config())
    assert 'BTC-USDT-SWAP' in settings.instruments
    assert settings.history_window_s > 0


def test_placeholder_fallbacks(tmp_path, monkeypatch):
    path = tmp_path / 'config.yaml'
    path.write_text(
        "exchange:\n"
        "  rest_url: ${MARKWATCH_TEST_URL:-https://www.okx.com}\n"
        "  ws_url: wss://${MARKWATCH_TEST_HOST:-ws.okx.com}:8443/ws/v5/public\n"
    )
    monkeypatch.delenv('MARKWATCH_TEST_URL', raising=False)
    monkeypatch.setenv('MARKWATCH_TEST_HOST', 'wspap.okx.com')
    cfg = Config(str(path))
    assert cfg.section('exchange').get('rest_url') == 'https://www.okx.com'
    assert cfg.section('exchange').ws_url == 'wss://wspap.okx.com:8443/ws/v5/public'
    assert cfg.section('missing').get('anything', 3) == 3


def test_missing_or_malformed_config_file(tmp_path):
    with pytest.raises(ConfigError):
        Config(str(tmp_path / 'absent.yaml'))
    path = tmp_path / 'list.yaml'
    path.write_text("- a\n- b\n")
    with pytest.raises(ConfigError):
        Config(str(path))


def test_string_flags_are_parsed_not_truth_tested(tmp_path, monkeypatch):
    path = tmp_path / 'config.yaml'
    path.write_text(
        "exchange:\n"
        "  simulated: ${MARKWATCH_TEST_SIMULATED:-false}\n"
        "instruments:\n"
        "  - BTC-USDT-SWAP\n"
        "ai:\n"
        "  enabled: 'no'\n"
        "  auto_execute: ${MARKWATCH_TEST_AUTO}\n"
    )
    monkeypatch.delenv('MARKWATCH_TEST_SIMULATED', raising=False)
    monkeypatch.setenv('MARKWATCH_TEST_AUTO', 'False')
    settings = load_runtime_settings(Config(str(path)))
    assert settings.simulated is False
    assert settings.ai.enabled is False
    assert settings.ai.auto_execute is False

    monkeypatch.setenv('MARKWATCH_TEST_SIMULATED', '1')
    monkeypatch.delenv('MARKWATCH_TEST_AUTO')
    settings = load_runtime_settings(Config(str(path)))
    assert settings.simulated is True
    assert settings.ai.auto_execute is True


@pytest.mark.parametrize('value, expected', [
    ('true', True), ('FALSE', False), ('0', False), ('1', True), (0, False), (True, True), ('', True), (None, True),
])
def test_as_bool(value, expected):
    assert as_bool(value, True) is expected


def test_unrecognised_flag_fails_fast():
    with pytest.raises(ConfigError):
        load_runtime_settings(_base(ai={'auto_execute': 'sometimes'}))
