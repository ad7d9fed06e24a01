import asyncio
import base64
import contextlib
from decimal import Decimal
from urllib.parse import parse_qsl

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from krakenbot.errors import (
    ConnectivityError,
    ExchangeRejection,
    KrakenAPIError,
    MalformedResponse,
    OrderValidationError,
)
from krakenbot.kraken_client import KrakenClient
from krakenbot.models import OrderSide
from krakenbot.persistence import InMemoryStateStore
from krakenbot.signing import sign

SECRET = base64.b64encode(b"kraken-test-secret").decode()

DEFAULTS = {
    "/0/private/Balance": {"error": [], "result": {"XXBT": "0.0500000000", "ZEUR": "1234.5600", "XETH": "1.0"}},
    "/0/private/OpenOrders": {"error": [], "result": {"open": {
        "OABC-1": {"status": "open", "opentm": 1700000000.5, "vol": "0.01000000", "vol_exec": "0",
                   "descr": {"pair": "XBTEUR", "type": "buy", "ordertype": "limit", "price": "29000.0"}},
    }}},
    "/0/private/ClosedOrders": {"error": [], "result": {"count": 2, "closed": {
        "OOLD-1": {"status": "closed", "closetm": 1690000000.0, "vol": "0.02", "price": "25000.0", "fee": "0.00005",
                   "descr": {"pair": "XBTEUR", "type": "buy", "ordertype": "market", "price": "0"}},
        "ONEW-1": {"status": "closed", "closetm": 1700000000.0, "vol": "0.02", "price": "31000.0", "fee": "1.6",
                   "descr": {"pair": "XBTEUR", "type": "sell", "ordertype": "limit", "price": "31000.0"}},
    }}},
    "/0/private/AddOrder": {"error": [], "result": {"descr": {"order": "buy 0.01 XBTEUR @ limit 30000"}, "txid": ["OTX-123"]}},
    "/0/private/CancelOrder": {"error": [], "result": {"count": 1}},
}


class FakeKraken:
    """Minimal Kraken REST double that verifies API-Sign on every private call."""

    def __init__(self, secret=SECRET):
        self.secret = secret
        self.private_calls = []
        self.public_calls = []
        self.scripts = {}

    def script(self, path, *responses):
        self.scripts.setdefault(path, []).extend(responses)

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/0/public/Ticker", self.ticker)
        app.router.add_post("/0/private/{method}", self.private)
        return app

    def _next(self, path):
        script = self.scripts.get(path)
        return script.pop(0) if script else DEFAULTS.get(path, {"error": ["EGeneral:Unknown method"]})

    async def ticker(self, request: web.Request) -> web.Response:
        pair = request.query.get("pair")
        self.public_calls.append(pair)
        payload = self._next("/0/public/Ticker") if "/0/public/Ticker" in self.scripts else {
            "error": [], "result": {pair: {"a": ["30001.0", "1", "1.0"], "b": ["30000.0", "1", "1.0"], "c": ["30000.50000", "0.001"]}},
        }
        return web.json_response(payload)

    async def private(self, request: web.Request) -> web.Response:
        form = dict(parse_qsl(await request.text()))
        params = {k: v for k, v in form.items() if k != "nonce"}
        expected = sign(request.path, params, self.secret, int(form["nonce"]))
        if request.headers.get("API-Sign") != expected or request.headers.get("API-Key") != "test-key":
            return web.json_response({"error": ["EAPI:Invalid signature"]})
        self.private_calls.append((request.path, form))
        payload = self._next(request.path)
        if isinstance(payload, int):
            return web.Response(status=payload, text="upstream failure")
        if isinstance(payload, str):
            return web.Response(status=200, text=payload)
        return web.json_response(payload)


@contextlib.asynccontextmanager
async def running_client(fake: FakeKraken, **kwargs):
    server = TestServer(fake.app())
    await server.start_server()
    kwargs.setdefault("min_request_interval", 0.0)
    kwargs.setdefault("retry_delay", 0.0)
    kwargs.setdefault("rate_limit_cooldown", 0.0)
    try:
        async with KrakenClient("test-key", SECRET, base_url=str(server.make_url("")), **kwargs) as client:
            yield client
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_get_price_reads_last_trade():
    fake = FakeKraken()
    async with running_client(fake) as client:
        price = await client.get_price()

    assert price == Decimal("30000.50000")
    assert fake.public_calls == ["XXBTZEUR"]
    assert fake.private_calls == []


@pytest.mark.asyncio
async def test_get_balance_signs_request_and_parses_amounts():
    fake = FakeKraken()
    async with running_client(fake) as client:
        asset, fiat = await client.get_balance()

    assert asset == Decimal("0.0500000000")
    assert fiat == Decimal("1234.5600")
    path, form = fake.private_calls[0]
    assert path == "/0/private/Balance"
    assert int(form["nonce"]) > 0


@pytest.mark.asyncio
async def test_missing_currencies_count_as_zero():
    fake = FakeKraken()
    fake.script("/0/private/Balance", {"error": [], "result": {}})
    async with running_client(fake) as client:
        assert await client.get_balance() == (Decimal("0"), Decimal("0"))


@pytest.mark.asyncio
async def test_concurrent_private_calls_reach_exchange_in_submission_order():
    fake = FakeKraken()
    async with running_client(fake) as client:
        await asyncio.gather(client.get_balance(), client.get_open_orders(), client.get_closed_orders())

    assert [p for p, _ in fake.private_calls] == [
        "/0/private/Balance",
        "/0/private/OpenOrders",
        "/0/private/ClosedOrders",
    ]
    nonces = [int(f["nonce"]) for _, f in fake.private_calls]
    assert nonces == sorted(nonces) and len(set(nonces)) == 3


@pytest.mark.asyncio
async def test_open_orders_are_typed():
    fake = FakeKraken()
    async with running_client(fake) as client:
        orders = await client.get_open_orders()

    assert len(orders) == 1
    order = orders[0]
    assert order.order_id == "OABC-1"
    assert order.side is OrderSide.BUY
    assert order.limit_price == Decimal("29000.0")
    assert order.amount == Decimal("0.01000000")


@pytest.mark.asyncio
async def test_closed_orders_sorted_most_recent_first():
    fake = FakeKraken()
    async with running_client(fake) as client:
        orders = await client.get_closed_orders()

    assert [o.order_id for o in orders] == ["ONEW-1", "OOLD-1"]
    assert fake.private_calls[0][1]["trades"] == "true"


@pytest.mark.asyncio
async def test_place_limit_order():
    fake = FakeKraken()
    async with running_client(fake) as client:
        txid = await client.place_order(OrderSide.BUY, Decimal("0.0123456789"), Decimal("30000.456"))

    assert txid == "OTX-123"
    _, form = fake.private_calls[0]
    assert form["pair"] == "XXBTZEUR"
    assert form["type"] == "buy"
    assert form["ordertype"] == "limit"
    assert form["volume"] == "0.01234567"
    assert form["price"] == "30000.46"


@pytest.mark.asyncio
async def test_place_market_order_without_price():
    fake = FakeKraken()
    async with running_client(fake) as client:
        await client.place_order("sell", Decimal("0.5"))

    _, form = fake.private_calls[0]
    assert form["type"] == "sell"
    assert form["ordertype"] == "market"
    assert "price" not in form


@pytest.mark.asyncio
@pytest.mark.parametrize("side,amount,price", [
    ("buy", Decimal("0"), None),
    ("buy", Decimal("-1"), None),
    ("sell", Decimal("0.1"), Decimal("0")),
    ("sell", Decimal("0.1"), Decimal("-5")),
    ("hold", Decimal("0.1"), None),
    ("buy", Decimal("NaN"), None),
    ("buy", Decimal("Infinity"), None),
    ("sell", Decimal("0.1"), Decimal("NaN")),
    ("sell", Decimal("0.1"), Decimal("-Infinity")),
    ("buy", "lots", None),
])
async def test_place_order_validation_happens_before_any_request(side, amount, price):
    fake = FakeKraken()
    async with running_client(fake) as client:
        with pytest.raises(OrderValidationError):
            await client.place_order(side, amount, price)
        assert client.nonces.state.increment == 0

    assert fake.private_calls == []


@pytest.mark.asyncio
async def test_cancel_order_success_and_failure():
    fake = FakeKraken()
    fake.script("/0/private/CancelOrder", {"error": [], "result": {"count": 1}}, {"error": ["EOrder:Unknown order"]})
    async with running_client(fake) as client:
        assert await client.cancel_order("OABC-1") is True
        assert await client.cancel_order("OMISSING") is False

    assert [f["txid"] for _, f in fake.private_calls] == ["OABC-1", "OMISSING"]


@pytest.mark.asyncio
async def test_rate_limit_error_is_retried_with_new_nonce():
    fake = FakeKraken()
    fake.script("/0/private/Balance", {"error": ["EAPI:Rate limit exceeded"]})
    async with running_client(fake) as client:
        asset, _ = await client.get_balance()

    assert asset == Decimal("0.0500000000")
    assert len(fake.private_calls) == 2
    first, second = (int(f["nonce"]) for _, f in fake.private_calls)
    assert second > first


@pytest.mark.asyncio
async def test_exchange_error_raises_rejection():
    fake = FakeKraken()
    fake.script("/0/private/AddOrder", {"error": ["EOrder:Insufficient funds"]})
    async with running_client(fake) as client:
        with pytest.raises(ExchangeRejection) as exc_info:
            await client.place_order("buy", Decimal("1"), Decimal("30000"))

    assert exc_info.value.errors == ["EOrder:Insufficient funds"]
    assert len(fake.private_calls) == 1


@pytest.mark.asyncio
async def test_server_errors_are_retried_then_surface_as_connectivity_error():
    fake = FakeKraken()
    fake.script("/0/private/Balance", 502, 502, 502)
    async with running_client(fake, max_retries=2) as client:
        with pytest.raises(ConnectivityError):
            await client.get_balance()
        # queue keeps working for the next caller
        orders = await client.get_open_orders()

    assert len(orders) == 1
    # one attempt plus two retries, each with a fresh nonce
    assert [p for p, _ in fake.private_calls] == ["/0/private/Balance"] * 3 + ["/0/private/OpenOrders"]
    nonces = [int(f["nonce"]) for _, f in fake.private_calls]
    assert nonces == sorted(nonces) and len(set(nonces)) == 4


@pytest.mark.asyncio
async def test_service_unavailable_is_transient():
    fake = FakeKraken()
    fake.script("/0/private/Balance", {"error": ["EService:Unavailable"]})
    async with running_client(fake) as client:
        asset, _ = await client.get_balance()

    assert asset == Decimal("0.0500000000")


@pytest.mark.asyncio
async def test_malformed_responses_are_rejected():
    fake = FakeKraken()
    fake.script("/0/private/AddOrder", {"error": [], "result": {"txid": []}})
    fake.script("/0/private/Balance", "<html>maintenance</html>")
    async with running_client(fake) as client:
        with pytest.raises(MalformedResponse):
            await client.place_order("buy", Decimal("1"), Decimal("1"))
        with pytest.raises(MalformedResponse):
            await client.get_balance()


@pytest.mark.asyncio
async def test_malformed_order_entry_is_quarantined():
    fake = FakeKraken()
    fake.script("/0/private/OpenOrders", {"error": [], "result": {"open": {
        "OGOOD": {"status": "open", "vol": "0.1", "descr": {"pair": "XBTEUR", "type": "sell", "ordertype": "limit", "price": "31000"}},
        "OBAD": {"status": "open", "vol": "lots", "descr": {"pair": "XBTEUR", "type": "sell"}},
    }}})
    async with running_client(fake) as client:
        orders = await client.get_open_orders()

    assert [o.order_id for o in orders] == ["OGOOD"]


@pytest.mark.asyncio
async def test_verify_connection():
    fake = FakeKraken()
    fake.script("/0/private/Balance", {"error": ["EAPI:Invalid key"]})
    async with running_client(fake) as client:
        assert await client.verify_connection() is False
        assert await client.verify_connection() is True


@pytest.mark.asyncio
async def test_nonce_persisted_through_store():
    fake = FakeKraken()
    store = InMemoryStateStore()
    async with running_client(fake, store=store) as client:
        await client.get_balance()

    _, form = fake.private_calls[0]
    assert store.load_nonce().value == int(form["nonce"])


@pytest.mark.asyncio
async def test_request_without_session_raises():
    client = KrakenClient("test-key", SECRET)
    with pytest.raises(KrakenAPIError, match="Session not initialized"):
        await client.get_price()


def test_calculations_exposed_on_client():
    assert KrakenClient.calculate_total_capital(Decimal("0.5"), Decimal("100.005"), Decimal("30000")) == Decimal("15100.01")
    assert KrakenClient.calculate_net_profit(
        Decimal("30000.00"), Decimal("29000.00"), Decimal("0.01"), Decimal("0.000026"), Decimal("0.026")
    ) == Decimal("1.45")
