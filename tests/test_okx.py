import asyncio
import base64
import hashlib
import hmac
import sys

sys.path.insert(0, '.')

import pytest

from ingest.okx_rest import OKXAPIError, OKXRESTClient
from orchestration.errors import ValidationError
from strategy.execution_types import OpenOrder, Order
from strategy.transports.okx import OKXTransport, instrument_type


class RecordingREST:
    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.posts = []
        self.gets = []
        self.has_credentials = True

    async def post(self, path, body=None, signed=True):
        self.posts.append((path, body))
        if path in self.responses:
            return self.responses[path]
        return [{"sCode": "0", "ordId": "42", "clOrdId": body.get("clOrdId")}]

    async def get(self, path, params=None, signed=False):
        self.gets.append((path, params, signed))
        return self.responses.get(path, [])

    async def close(self):
        return None


def _client(**kwargs):
    defaults = dict(base_url="https://example.invalid", api_key="key", api_secret="secret",
                    passphrase="phrase", simulated=True, timeout_s=1)
    defaults.update(kwargs)
    return OKXRESTClient(**defaults)


def test_signature_covers_timestamp_method_path_and_body():
    client = _client()
    ts = "2024-01-01T00:00:00.000Z"
    body = '{"instId":"BTC-USDT-SWAP"}'
    expected = base64.b64encode(
        hmac.new(b"secret", f"{ts}POST/api/v5/trade/order{body}".encode(), hashlib.sha256).digest()
    ).decode()
    assert client.sign(ts, "post", "/api/v5/trade/order", body) == expected


def test_signed_headers_and_demo_flag():
    headers = _client()._headers("GET", "/api/v5/account/positions", "", signed=True)
    assert headers["OK-ACCESS-KEY"] == "key"
    assert headers["OK-ACCESS-PASSPHRASE"] == "phrase"
    assert headers["OK-ACCESS-TIMESTAMP"].endswith("Z")
    assert headers["x-simulated-trading"] == "1"
    public = _client(simulated=False)._headers("GET", "/api/v5/public/instruments", "", signed=False)
    assert "OK-ACCESS-SIGN" not in public
    assert "x-simulated-trading" not in public


def test_signed_request_without_credentials_is_local_failure():
    client = _client(api_secret="")
    assert not client.has_credentials
    with pytest.raises(ValidationError):
        asyncio.run(client.get("/api/v5/account/positions", signed=True))


def test_instrument_type():
    assert instrument_type("BTC-USDT-SWAP") == "SWAP"
    assert instrument_type("BTC-USD-250328") == "FUTURES"
    assert instrument_type("BTC-USDT") == "SPOT"


def test_place_order_body():
    rest = RecordingREST()
    transport = OKXTransport(rest)
    order = Order("ETH-USDT-SWAP", "sell", 2.0, tag="aiclose", reduce_only=True, pos_side="long")
    ticket = asyncio.run(transport.place_order(order, "cross", "abc123"))
    path, body = rest.posts[0]
    assert path == "/api/v5/trade/order"
    assert body == {
        "instId": "ETH-USDT-SWAP", "tdMode": "cross", "side": "sell", "ordType": "market",
        "sz": "2", "clOrdId": "abc123", "posSide": "long", "reduceOnly": True, "tag": "aiclose",
    }
    assert ticket.exchange_order_id == "42"


def test_rejected_order_ack_raises():
    rest = RecordingREST({"/api/v5/trade/order": [{"sCode": "51008", "sMsg": "Insufficient margin"}]})
    transport = OKXTransport(rest)
    with pytest.raises(OKXAPIError) as exc_info:
        asyncio.run(transport.place_order(Order("BTC-USDT-SWAP", "buy", 0.01), "cross", "id1"))
    assert exc_info.value.code == "51008"


def test_protective_order_is_oco_trigger_market():
    rest = RecordingREST({"/api/v5/trade/order-algo": [{"sCode": "0", "algoId": "9"}]})
    transport = OKXTransport(rest)
    ticket = asyncio.run(transport.place_algo_order("BTC-USDT-SWAP", "sell", 0.01, "cross", "tp1",
                                                    take_profit=37000, stop_loss=34000, tag="aitpsl"))
    _, body = rest.posts[0]
    assert body["ordType"] == "oco"
    assert body["reduceOnly"] is True
    assert body["tpTriggerPx"] == "37000"
    assert body["tpOrdPx"] == "-1"
    assert body["slOrdPx"] == "-1"
    assert ticket.exchange_order_id == "9"

    asyncio.run(transport.place_algo_order("BTC-USDT-SWAP", "sell", 0.01, "cross", "sl1", stop_loss=34000))
    assert rest.posts[1][1]["ordType"] == "conditional"
    assert "tpTriggerPx" not in rest.posts[1][1]


def test_parse_positions_and_balances():
    rest = RecordingREST({
        "/api/v5/account/positions": [
            {"instId": "ETH-USDT-SWAP", "posSide": "net", "pos": "2", "avgPx": "3000", "lever": "5",
             "upl": "12.5", "mgnMode": "cross"},
            {"instId": "", "pos": "1"},
        ],
        "/api/v5/account/balance": [
            {"totalEq": "1500.5", "details": [{"ccy": "USDT", "eq": "1500", "availBal": "900", "eqUsd": "1500"}]},
        ],
    })
    transport = OKXTransport(rest)
    positions = asyncio.run(transport.fetch_positions())
    balances, total = asyncio.run(transport.fetch_balances())
    assert len(positions) == 1
    assert positions[0].direction == "long"
    assert positions[0].leverage == 5.0
    assert total == 1500.5
    assert balances[0].available == 900.0
    assert all(signed for _, _, signed in rest.gets)


def test_simulated_flag_from_string():
    assert not _client(simulated="false").simulated
    assert _client(simulated="true")._headers("GET", "/api/v5/account/balance", "", signed=True)["x-simulated-trading"] == "1"


def test_open_orders_include_algo_orders_and_cancel_uses_matching_endpoint():
    rest = RecordingREST({
        "/api/v5/trade/orders-pending": [
            {"instId": "BTC-USDT-SWAP", "ordId": "123", "side": "buy", "sz": "0.01", "ordType": "limit",
             "px": "30000", "state": "live", "reduceOnly": "false"},
        ],
        "/api/v5/trade/orders-algo-pending": [
            {"instId": "BTC-USDT-SWAP", "algoId": "987", "side": "sell", "sz": "0.01", "ordType": "oco",
             "tpTriggerPx": "37000", "slTriggerPx": "34000", "reduceOnly": "true", "tag": "aitpsl"},
        ],
        "/api/v5/trade/cancel-order": [{"sCode": "0", "ordId": "123"}],
        "/api/v5/trade/cancel-algos": [{"sCode": "0", "algoId": "987"}],
    })
    transport = OKXTransport(rest)
    regular, algo = asyncio.run(transport.fetch_open_orders())
    assert not regular.is_algo
    assert algo.is_algo and algo.order_id == "987" and algo.reduce_only
    assert rest.gets[1][1] == {"ordType": "conditional,oco"}

    asyncio.run(transport.cancel_order(regular))
    asyncio.run(transport.cancel_order(algo))
    assert rest.posts == [
        ("/api/v5/trade/cancel-order", {"instId": "BTC-USDT-SWAP", "ordId": "123"}),
        ("/api/v5/trade/cancel-algos", [{"instId": "BTC-USDT-SWAP", "algoId": "987"}]),
    ]


def test_rejected_cancel_ack_raises():
    rest = RecordingREST({"/api/v5/trade/cancel-order": [{"sCode": "51400", "sMsg": "Order already filled"}]})
    transport = OKXTransport(rest)
    order = OpenOrder("ETH-USDT-SWAP", "55", "sell", 1.0, "limit")
    with pytest.raises(OKXAPIError) as exc_info:
        asyncio.run(transport.cancel_order(order))
    assert exc_info.value.code == "51400"
