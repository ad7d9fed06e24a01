"""Append-only trade ledger."""
from dataclasses import replace
from typing import Dict, Iterator, List, Optional, Tuple

from .logging_setup import logger
from .models import Trade, TradeStatus
from .persistence import StateStore


class TradeLedger:
    """Ordered record of trades placed by the engine.

    Entries are never deleted. The only permitted change to a recorded trade
    is its status moving from ``pending`` to ``confirmed`` or ``failed``.
    When a store is given, existing trades are loaded on construction and
    every change is written through.
    """

    def __init__(self, store: Optional[StateStore] = None):
        self.store = store
        self._trades: List[Trade] = []
        self._index: Dict[str, int] = {}
        if store is not None:
            for trade in store.load_trades():
                self._append(trade)

    def __len__(self) -> int:
        return len(self._trades)

    def __iter__(self) -> Iterator[Trade]:
        return iter(self.all())

    def _append(self, trade: Trade) -> None:
        self._index[trade.id] = len(self._trades)
        self._trades.append(trade)

    def record(self, trade: Trade) -> None:
        if trade.id in self._index:
            raise ValueError(f"Trade {trade.id} already recorded")
        self._append(trade)
        self._persist(trade)

    def transition(self, trade_id: str, status: TradeStatus) -> Trade:
        """Resolve a pending trade as confirmed or failed."""
        pos = self._index.get(trade_id)
        if pos is None:
            raise KeyError(trade_id)
        current = self._trades[pos]
        if current.status is not TradeStatus.PENDING or status is TradeStatus.PENDING:
            raise ValueError(f"Illegal trade status transition {current.status.value} -> {status.value}")
        updated = replace(current, status=status)
        self._trades[pos] = updated
        self._persist(updated)
        return updated

    def get(self, trade_id: str) -> Optional[Trade]:
        pos = self._index.get(trade_id)
        return self._trades[pos] if pos is not None else None

    def all(self) -> Tuple[Trade, ...]:
        """Snapshot of all trades in insertion order."""
        return tuple(self._trades)

    def _persist(self, trade: Trade) -> None:
        if self.store is None:
            return
        try:
            self.store.save_trade(trade)
        except Exception as e:
            logger.error(f"Failed to persist trade | trade_id={trade.id} error={e}")
