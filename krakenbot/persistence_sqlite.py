import json
import sqlite3
from pathlib import Path
from typing import List, Optional

from .models import LastOperationsState, NonceState, Trade
from .persistence import StateStore

NONCE_KEY = "nonce"
LAST_OPERATIONS_KEY = "last_operations"


class SQLiteStateStore(StateStore):
    """SQLite-backed state store.

    - nonce and last operations live in the ``kv`` table as JSON documents
    - trades live in ``trades``, ordered by an autoincrement sequence

    All writes use ``BEGIN IMMEDIATE`` transactions for atomicity.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None: transactions are opened explicitly below
        self.conn = sqlite3.connect(str(self.path), timeout=30, check_same_thread=False, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self._init_db()

    def _init_db(self):
        from .db_migrations import apply_migrations

        apply_migrations(self.conn)

    # --- kv helpers ---
    def _put(self, key: str, value: dict) -> None:
        cur = self.conn.cursor()
        cur.execute("BEGIN IMMEDIATE")
        try:
            cur.execute(
                "INSERT OR REPLACE INTO kv(key, value, updated_at) VALUES(?, ?, strftime('%s','now'))",
                (key, json.dumps(value)),
            )
            self.conn.commit()
        except sqlite3.Error:
            self.conn.rollback()
            raise

    def _get(self, key: str) -> Optional[dict]:
        cur = self.conn.cursor()
        cur.execute("SELECT value FROM kv WHERE key = ?", (key,))
        row = cur.fetchone()
        return json.loads(row[0]) if row else None

    # --- nonce ---
    def load_nonce(self) -> Optional[NonceState]:
        d = self._get(NONCE_KEY)
        return NonceState.from_dict(d) if d else None

    def save_nonce(self, state: NonceState) -> None:
        self._put(NONCE_KEY, state.to_dict())

    # --- last operations ---
    def load_last_operations(self) -> Optional[LastOperationsState]:
        d = self._get(LAST_OPERATIONS_KEY)
        return LastOperationsState.from_dict(d) if d else None

    def save_last_operations(self, state: LastOperationsState) -> None:
        self._put(LAST_OPERATIONS_KEY, state.to_dict())

    # --- trades ---
    def load_trades(self) -> List[Trade]:
        cur = self.conn.cursor()
        cur.execute("SELECT value FROM trades ORDER BY seq")
        return [Trade.from_dict(json.loads(r[0])) for r in cur.fetchall()]

    def save_trade(self, trade: Trade) -> None:
        cur = self.conn.cursor()
        cur.execute("BEGIN IMMEDIATE")
        try:
            cur.execute(
                "INSERT INTO trades(trade_id, value, status, created_at, updated_at) VALUES(?, ?, ?, strftime('%s','now'), strftime('%s','now')) "
                "ON CONFLICT(trade_id) DO UPDATE SET value = excluded.value, status = excluded.status, updated_at = excluded.updated_at",
                (trade.id, json.dumps(trade.to_dict()), trade.status.value),
            )
            self.conn.commit()
        except sqlite3.Error:
            self.conn.rollback()
            raise

    def close(self):
        try:
            self.conn.close()
        except sqlite3.Error:
            pass
