"""
Domain records shared by the client, the engine and the stores.

All price and quantity values are Decimal. Records that are persisted expose
``to_dict()`` / ``from_dict()`` with decimals serialized as strings so the JSON
representation never passes through a float.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class TradeStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


def _dec(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def _str(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


@dataclass(frozen=True)
class NonceState:
    """Persisted nonce counter.

    The last emitted nonce is ``last_nonce + increment``.
    """

    last_nonce: int = 0
    increment: int = 0

    @property
    def value(self) -> int:
        return self.last_nonce + self.increment

    def to_dict(self) -> Dict[str, int]:
        return {"last_nonce": self.last_nonce, "increment": self.increment}

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "NonceState":
        return NonceState(last_nonce=int(d["last_nonce"]), increment=int(d.get("increment", 0)))


@dataclass(frozen=True)
class Balance:
    asset_amount: Decimal
    fiat_amount: Decimal
    total_capital: Decimal

    def to_dict(self) -> Dict[str, str]:
        return {
            "asset_amount": str(self.asset_amount),
            "fiat_amount": str(self.fiat_amount),
            "total_capital": str(self.total_capital),
        }


@dataclass(frozen=True)
class OpenOrder:
    """A resting order as reported live by the exchange."""

    order_id: str
    side: OrderSide
    limit_price: Decimal
    amount: Decimal
    opened_at: float = 0.0


@dataclass(frozen=True)
class ClosedOrder:
    """An entry of the closed-order history.

    ``price`` is the average execution price, ``fee`` is the fee charged on
    the order as reported by the exchange.
    """

    order_id: str
    side: OrderSide
    pair: str
    status: str
    price: Decimal
    volume: Decimal
    fee: Decimal
    closed_at: float


@dataclass(frozen=True)
class Trade:
    """Ledger entry for an order placed by the engine.

    Attributes:
        id: Exchange transaction id (or a local id for failed placements)
        side: buy or sell
        price: Reference price the order was placed at
        amount: Asset quantity
        timestamp: Milliseconds since the epoch
        is_manual: True when triggered by an operator rather than the cycle
        fee: Estimated fee; asset units for buys, fiat for sells
        status: pending, confirmed or failed
    """

    id: str
    side: OrderSide
    price: Decimal
    amount: Decimal
    timestamp: int
    is_manual: bool
    fee: Decimal
    status: TradeStatus = TradeStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "side": self.side.value,
            "price": str(self.price),
            "amount": str(self.amount),
            "timestamp": self.timestamp,
            "is_manual": self.is_manual,
            "fee": str(self.fee),
            "status": self.status.value,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Trade":
        return Trade(
            id=d["id"],
            side=OrderSide(d["side"]),
            price=Decimal(d["price"]),
            amount=Decimal(d["amount"]),
            timestamp=int(d["timestamp"]),
            is_manual=bool(d["is_manual"]),
            fee=Decimal(d["fee"]),
            status=TradeStatus(d.get("status", TradeStatus.PENDING.value)),
        )


@dataclass
class LastOperationsState:
    """Reference prices of the most recent buy and sell."""

    last_buy_price: Optional[Decimal] = None
    last_sell_price: Optional[Decimal] = None
    timestamp: Optional[int] = field(default=None, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_buy_price": _str(self.last_buy_price),
            "last_sell_price": _str(self.last_sell_price),
            "timestamp": self.timestamp,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "LastOperationsState":
        return LastOperationsState(
            last_buy_price=_dec(d.get("last_buy_price")),
            last_sell_price=_dec(d.get("last_sell_price")),
            timestamp=d.get("timestamp"),
        )
