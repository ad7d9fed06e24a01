"""
State storage interface.

The nonce manager, the engine and the trade ledger only talk to a
``StateStore``; the mechanism behind it (memory, JSON file, SQLite) is
swappable without touching pipeline logic.
"""

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from .models import LastOperationsState, NonceState, Trade


class StateStore(ABC):
    """Durable home of the nonce counter, the last operations and the ledger."""

    @abstractmethod
    def load_nonce(self) -> Optional[NonceState]:
        pass

    @abstractmethod
    def save_nonce(self, state: NonceState) -> None:
        pass

    @abstractmethod
    def load_last_operations(self) -> Optional[LastOperationsState]:
        pass

    @abstractmethod
    def save_last_operations(self, state: LastOperationsState) -> None:
        pass

    @abstractmethod
    def load_trades(self) -> List[Trade]:
        """Return persisted trades in insertion order."""
        pass

    @abstractmethod
    def save_trade(self, trade: Trade) -> None:
        """Insert a trade, or overwrite the entry with the same id."""
        pass

    def close(self) -> None:
        pass


class InMemoryStateStore(StateStore):
    """Store used by tests and dry runs; nothing survives the process."""

    def __init__(self):
        self.nonce: Optional[NonceState] = None
        self.last_operations: Optional[LastOperationsState] = None
        self.trades: Dict[str, Trade] = {}

    def load_nonce(self) -> Optional[NonceState]:
        return self.nonce

    def save_nonce(self, state: NonceState) -> None:
        self.nonce = state

    def load_last_operations(self) -> Optional[LastOperationsState]:
        if self.last_operations is None:
            return None
        return LastOperationsState.from_dict(self.last_operations.to_dict())

    def save_last_operations(self, state: LastOperationsState) -> None:
        self.last_operations = LastOperationsState.from_dict(state.to_dict())

    def load_trades(self) -> List[Trade]:
        return list(self.trades.values())

    def save_trade(self, trade: Trade) -> None:
        self.trades[trade.id] = trade


class JSONFileStateStore(StateStore):
    """JSON documents on disk, rewritten atomically on every save.

    Last operations and trades share ``path``. The nonce is drawn once per
    private request, so it lives in a small sibling file (``<stem>.nonce.json``)
    and a nonce save never rewrites the trade list. Saving trades still
    rewrites the whole document; use the SQLite backend for long-running bots.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.nonce_path = self.path.with_name(f"{self.path.stem}.nonce.json")
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _read(self, path: Optional[Path] = None) -> dict:
        path = path or self.path
        if not path.exists():
            return {}
        with path.open("r", encoding="utf-8") as f:
            return json.load(f)

    def _write(self, data: dict, path: Optional[Path] = None) -> None:
        path = path or self.path
        tmp = path.with_suffix(".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        tmp.replace(path)

    def _update(self, key: str, value) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def load_nonce(self) -> Optional[NonceState]:
        d = self._read(self.nonce_path)
        return NonceState.from_dict(d) if d else None

    def save_nonce(self, state: NonceState) -> None:
        self._write(state.to_dict(), self.nonce_path)

    def load_last_operations(self) -> Optional[LastOperationsState]:
        d = self._read().get("last_operations")
        return LastOperationsState.from_dict(d) if d else None

    def save_last_operations(self, state: LastOperationsState) -> None:
        self._update("last_operations", state.to_dict())

    def load_trades(self) -> List[Trade]:
        return [Trade.from_dict(d) for d in self._read().get("trades", [])]

    def save_trade(self, trade: Trade) -> None:
        data = self._read()
        trades = data.get("trades", [])
        for i, existing in enumerate(trades):
            if existing["id"] == trade.id:
                trades[i] = trade.to_dict()
                break
        else:
            trades.append(trade.to_dict())
        data["trades"] = trades
        self._write(data)
