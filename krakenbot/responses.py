"""
Typed records for Kraken REST responses.

Every payload is validated with pydantic before it reaches the client's
callers. A malformed envelope or result raises ``MalformedResponse``; a single
malformed entry inside an order map is logged and skipped so one bad record
does not hide the rest of the book.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .errors import ConnectivityError, ExchangeRejection, MalformedResponse, RateLimitExceeded
from .logging_setup import logger
from .models import ClosedOrder, OpenOrder, OrderSide

RATE_LIMIT_ERROR = "EAPI:Rate limit exceeded"
TRANSIENT_ERRORS = frozenset({"EService:Unavailable", "EService:Busy"})


class _WireModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class Envelope(_WireModel):
    error: List[str] = Field(default_factory=list)
    result: Optional[Any] = None


class TickerEntry(_WireModel):
    # c = last trade closed: [price, lot volume]
    c: List[Decimal] = Field(min_length=1)


class OrderDescription(_WireModel):
    pair: str
    type: OrderSide
    ordertype: str
    price: Decimal = Decimal("0")


class OrderInfo(_WireModel):
    status: str
    descr: OrderDescription
    vol: Decimal
    vol_exec: Decimal = Decimal("0")
    price: Decimal = Decimal("0")
    cost: Decimal = Decimal("0")
    fee: Decimal = Decimal("0")
    opentm: float = 0.0
    closetm: Optional[float] = None


class OpenOrdersResult(_WireModel):
    open: Dict[str, Any] = Field(default_factory=dict)


class ClosedOrdersResult(_WireModel):
    closed: Dict[str, Any] = Field(default_factory=dict)
    count: Optional[int] = None


class AddOrderResult(_WireModel):
    txid: List[str] = Field(min_length=1)


class CancelOrderResult(_WireModel):
    count: int = 0


_balance_adapter = TypeAdapter(Dict[str, Decimal])


def _validate(model, data: Any, what: str):
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise MalformedResponse(f"Malformed {what} response: {e.error_count()} validation error(s)") from e


def raise_for_errors(errors: List[str], endpoint: Optional[str] = None) -> None:
    """Map a non-empty Kraken error list onto the error taxonomy."""
    if not errors:
        return
    if RATE_LIMIT_ERROR in errors:
        raise RateLimitExceeded(f"{RATE_LIMIT_ERROR} ({endpoint})")
    if any(e in TRANSIENT_ERRORS for e in errors):
        raise ConnectivityError(f"Kraken service unavailable ({endpoint}): {', '.join(errors)}")
    raise ExchangeRejection(errors, endpoint=endpoint)


def unwrap(payload: Any, endpoint: str) -> Any:
    """Validate the ``{"error": [...], "result": ...}`` envelope and return ``result``."""
    envelope = _validate(Envelope, payload, endpoint)
    raise_for_errors(envelope.error, endpoint)
    if envelope.result is None:
        raise MalformedResponse(f"Missing result in {endpoint} response")
    return envelope.result


def parse_ticker(result: Any, pair: str) -> Decimal:
    if not isinstance(result, dict) or pair not in result:
        raise MalformedResponse(f"Ticker response has no entry for {pair}")
    return _validate(TickerEntry, result[pair], "ticker").c[0]


def parse_balance(result: Any, asset_code: str, fiat_code: str) -> Tuple[Decimal, Decimal]:
    try:
        balances = _balance_adapter.validate_python(result)
    except ValidationError as e:
        raise MalformedResponse(f"Malformed balance response: {e.error_count()} validation error(s)") from e
    return balances.get(asset_code, Decimal("0")), balances.get(fiat_code, Decimal("0"))


def _order_entries(orders: Dict[str, Any], what: str):
    for order_id, raw in orders.items():
        try:
            yield order_id, OrderInfo.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Quarantined malformed {what} order | order_id={order_id} errors={e.error_count()}")


def parse_open_orders(result: Any) -> List[OpenOrder]:
    parsed = _validate(OpenOrdersResult, result, "open orders")
    return [
        OpenOrder(
            order_id=order_id,
            side=info.descr.type,
            limit_price=info.descr.price,
            amount=info.vol,
            opened_at=info.opentm,
        )
        for order_id, info in _order_entries(parsed.open, "open")
    ]


def parse_closed_orders(result: Any) -> List[ClosedOrder]:
    """Return closed orders sorted most recent first."""
    parsed = _validate(ClosedOrdersResult, result, "closed orders")
    orders = [
        ClosedOrder(
            order_id=order_id,
            side=info.descr.type,
            pair=info.descr.pair,
            status=info.status,
            price=info.price,
            volume=info.vol,
            fee=info.fee,
            closed_at=info.closetm or 0.0,
        )
        for order_id, info in _order_entries(parsed.closed, "closed")
    ]
    orders.sort(key=lambda o: o.closed_at, reverse=True)
    return orders


def parse_add_order(result: Any) -> str:
    return _validate(AddOrderResult, result, "add order").txid[0]


def parse_cancel_order(result: Any) -> int:
    return _validate(CancelOrderResult, result, "cancel order").count
