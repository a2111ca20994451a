import sys

sys.path.insert(0, '.')

import pytest

from ai.decisions import (
    AdjustLeverageAction,
    CancelAction,
    CloseAction,
    DecisionLimits,
    HoldAction,
    OpenAction,
    action_to_dict,
    parse_decision,
)
from orchestration.errors import ParseError, ValidationError


LIMITS = DecisionLimits(
    instruments=frozenset({'BTC-USDT-SWAP', 'ETH-USDT-SWAP'}),
    min_leverage=1,
    max_leverage=20,
    default_size=0.01,
)


def test_single_close_object():
    decision = parse_decision('{"action":"close","instrument":"ETH-USDT-SWAP"}', LIMITS)
    assert decision.actions == (CloseAction('ETH-USDT-SWAP'),)
    assert not decision.is_hold


def test_wrapped_decisions_with_summary():
    raw = """{
      "summary": "BTC trending up",
      "decisions": [
        {"action": "open", "instrument": "BTC-USDT-SWAP", "direction": "long", "size": "0.02",
         "leverage": 5, "take_profit": 70000, "stop_loss": 60000, "reason": "breakout"},
        {"action": "adjust_leverage", "instrument": "ETH-USDT-SWAP", "leverage": "3"}
      ]
    }"""
    decision = parse_decision(raw, LIMITS)
    assert decision.summary == 'BTC trending up'
    opened, adjusted = decision.actions
    assert opened == OpenAction('BTC-USDT-SWAP', 'long', 0.02, leverage=5.0, take_profit=70000.0,
                                stop_loss=60000.0, reason='breakout')
    assert adjusted == AdjustLeverageAction('ETH-USDT-SWAP', 3.0)
    assert action_to_dict(opened)['action'] == 'open'


def test_signal_aliases_and_bare_coin():
    raw = ('[{"signal": "sell_to_enter", "coin": "ETH", "quantity": 0.5, '
           '"profit_target": 2800, "stop_loss": 3200, "justification": "rejection at resistance"}]')
    action = parse_decision(raw, LIMITS).actions[0]
    assert isinstance(action, OpenAction)
    assert action.instrument == 'ETH-USDT-SWAP'
    assert action.direction == 'short'
    assert action.size == 0.5
    assert action.take_profit == 2800
    assert action.reason == 'rejection at resistance'


def test_response_field_holding_json_string_and_prose_fences():
    nested = '{"response": "{\\"operations\\": [{\\"action\\": \\"hold\\"}]}"}'
    assert parse_decision(nested, LIMITS).is_hold
    prose = 'Here is my decision:\n```json\n{"action": "close", "instrument": "BTC-USDT-SWAP"}\n```'
    assert parse_decision(prose, LIMITS).actions[0] == CloseAction('BTC-USDT-SWAP')


def test_empty_decision_list_is_hold():
    decision = parse_decision('{"summary": "no edge", "decisions": []}', LIMITS)
    assert decision.actions == (HoldAction(reason='no edge'),)
    assert decision.is_hold


def test_open_size_falls_back_to_default():
    action = parse_decision('{"action":"open","instrument":"BTC-USDT-SWAP","direction":"buy"}', LIMITS).actions[0]
    assert action.size == 0.01
    assert action.direction == 'long'


@pytest.mark.parametrize('raw', [
    '{"action":"open","instrument":"SOL-USDT-SWAP","direction":"long","size":1}',
    '{"action":"open","instrument":"BTC-USDT-SWAP","direction":"long","size":1,"leverage":50}',
    '{"action":"open","instrument":"BTC-USDT-SWAP","size":1}',
    '{"action":"open","instrument":"BTC-USDT-SWAP","direction":"long","take_profit":60000,"stop_loss":65000}',
    '{"action":"buy_to_enter","instrument":"BTC-USDT-SWAP","direction":"short"}',
    '{"action":"liquidate","instrument":"BTC-USDT-SWAP"}',
    '{"action":"adjust_leverage","instrument":"BTC-USDT-SWAP"}',
    '{"action":"cancel_order","instrument":"BTC-USDT-SWAP","cancel_orders":[]}',
    '{"action":"close","instrument":"BTC-USDT-SWAP","quantity":-1}',
])
def test_invalid_actions_are_rejected(raw):
    with pytest.raises(ValidationError):
        parse_decision(raw, LIMITS)


@pytest.mark.parametrize('raw', [
    '',
    'I would hold for now.',
    '{"action": "open", "instrument": "BTC-USDT-SWAP", "direction": "long", "size": "lots"}',
    '[1, 2, 3]',
    '{"instrument": "BTC-USDT-SWAP"}',
    '{"action": "cancel_order", "instrument": "BTC-USDT-SWAP", "cancel_orders": [{"id": 1}]}',
])
def test_unparsable_responses(raw):
    with pytest.raises(ParseError):
        parse_decision(raw, LIMITS)


def test_one_bad_action_rejects_the_whole_response():
    raw = ('{"decisions": [{"action": "close", "instrument": "BTC-USDT-SWAP"}, '
           '{"action": "close", "instrument": "XRP-USDT-SWAP"}]}')
    with pytest.raises(ValidationError):
        parse_decision(raw, LIMITS)


def test_close_and_cancel_signals_in_one_response():
    raw = ('{"decisions":[{"signal":"close","coin":"ETH"},'
           '{"signal":"cancel_order","coin":"BTC","cancel_orders":["123"]}]}')
    decision = parse_decision(raw, LIMITS)
    assert decision.actions == (
        CloseAction('ETH-USDT-SWAP'),
        CancelAction('BTC-USDT-SWAP', ('123',)),
    )
    assert action_to_dict(decision.actions[1])['order_ids'] == ['123']


def test_cancel_ids_accept_single_values_and_numbers():
    action = parse_decision('{"action":"cancel","instrument":"BTC-USDT-SWAP","order_id":456}', LIMITS).actions[0]
    assert action.order_ids == ('456',)
    raw = '{"action":"cancel_orders","coin":"btc","cancel_orders":["1"," 2 ","1"]}'
    assert parse_decision(raw, LIMITS).actions[0].order_ids == ('1', '2')


def test_close_quantity_is_optional():
    partial = parse_decision('{"signal":"close","coin":"ETH","quantity":"0.5"}', LIMITS).actions[0]
    assert partial == CloseAction('ETH-USDT-SWAP', size=0.5)
    full = parse_decision('{"signal":"close","coin":"ETH","quantity":0}', LIMITS).actions[0]
    assert full.size is None
