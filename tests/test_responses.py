from decimal import Decimal

import pytest

from krakenbot.errors import ConnectivityError, ExchangeRejection, MalformedResponse, RateLimitExceeded
from krakenbot.models import OrderSide
from krakenbot.responses import (
    parse_balance,
    parse_cancel_order,
    parse_closed_orders,
    parse_ticker,
    raise_for_errors,
    unwrap,
)


def test_unwrap_returns_result():
    assert unwrap({"error": [], "result": {"count": 1}}, "/0/private/CancelOrder") == {"count": 1}


@pytest.mark.parametrize("errors,exc", [
    (["EAPI:Rate limit exceeded"], RateLimitExceeded),
    (["EService:Unavailable"], ConnectivityError),
    (["EService:Busy"], ConnectivityError),
    (["EOrder:Insufficient funds"], ExchangeRejection),
    (["EAPI:Invalid nonce"], ExchangeRejection),
])
def test_error_mapping(errors, exc):
    with pytest.raises(exc):
        raise_for_errors(errors, "/0/private/AddOrder")


def test_rejection_keeps_error_list():
    with pytest.raises(ExchangeRejection) as exc_info:
        unwrap({"error": ["EGeneral:Invalid arguments", "EOrder:Invalid price"]}, "/0/private/AddOrder")
    assert exc_info.value.errors == ["EGeneral:Invalid arguments", "EOrder:Invalid price"]


@pytest.mark.parametrize("payload", [
    {"error": "not a list"},
    {"error": []},
    ["result"],
])
def test_malformed_envelope(payload):
    with pytest.raises(MalformedResponse):
        unwrap(payload, "/0/private/Balance")


def test_ticker_requires_pair_entry():
    result = {"XXBTZEUR": {"c": ["30000.1", "0.1"]}}
    assert parse_ticker(result, "XXBTZEUR") == Decimal("30000.1")
    with pytest.raises(MalformedResponse):
        parse_ticker(result, "XETHZEUR")
    with pytest.raises(MalformedResponse):
        parse_ticker({"XXBTZEUR": {"c": []}}, "XXBTZEUR")


def test_balance_rejects_non_numeric_amounts():
    with pytest.raises(MalformedResponse):
        parse_balance({"XXBT": "lots"}, "XXBT", "ZEUR")


def test_closed_orders_skip_malformed_entries_and_sort_newest_first():
    result = {"closed": {
        "A": {"status": "closed", "closetm": 1.0, "vol": "1", "price": "10", "fee": "0.1",
              "descr": {"pair": "XBTEUR", "type": "buy", "ordertype": "limit"}},
        "B": {"status": "closed", "closetm": 3.0, "vol": "1", "price": "12", "fee": "0.1",
              "descr": {"pair": "XBTEUR", "type": "sell", "ordertype": "limit"}},
        "BAD": {"status": "closed", "descr": {"pair": "XBTEUR", "type": "swap"}},
    }}

    orders = parse_closed_orders(result)

    assert [o.order_id for o in orders] == ["B", "A"]
    assert orders[0].side is OrderSide.SELL
    assert orders[1].price == Decimal("10")


def test_cancel_count():
    assert parse_cancel_order({"count": 2}) == 2
