"""Command-line entry point.

Usage:
    krakenbot --config config.yaml run
    krakenbot --config config.yaml status
    krakenbot --config config.yaml trades
    krakenbot --config config.yaml nonce
    krakenbot --config config.yaml migrate list
    krakenbot --config config.yaml migrate rollback --last
    krakenbot credentials set --path ~/.kraken_config.json
    krakenbot credentials show
"""
import argparse
import asyncio
import getpass
import sqlite3
import sys
from pathlib import Path
from typing import List, Optional

from .config import BotConfig, PersistenceConfig
from .db_migrations import MIGRATIONS, apply_migrations, rollback_last, rollback_migration
from .engine import TradingEngine
from .kraken_client import KrakenClient
from .ledger import TradeLedger
from .logging_setup import logger, setup_logging
from .persistence import InMemoryStateStore, JSONFileStateStore, StateStore
from .persistence_sqlite import SQLiteStateStore
from .secrets import find_credentials, load_credentials, save_credentials


def open_store(config: PersistenceConfig) -> StateStore:
    if config.backend == "sqlite":
        return SQLiteStateStore(Path(config.db_path))
    if config.backend == "json":
        return JSONFileStateStore(Path(config.db_path))
    if config.backend == "memory":
        return InMemoryStateStore()
    raise ValueError(f"Unknown persistence backend: {config.backend}")


def load_config(path: Optional[str]) -> BotConfig:
    if path and Path(path).exists():
        return BotConfig.from_yaml(path)
    if path:
        logger.warning(f"Config file {path} not found, using defaults")
    return BotConfig()


async def run_bot(config: BotConfig, store: StateStore) -> int:
    credentials = load_credentials()
    async with KrakenClient.from_config(credentials, config.exchange, store=store) as client:
        engine = TradingEngine(
            client,
            config.strategy,
            pair_names=(config.exchange.pair, config.exchange.pair_altname),
            store=store,
        )
        if not await engine.initialize():
            logger.error("Bot initialization failed")
            return 1
        engine.start()
        try:
            await asyncio.Event().wait()
        finally:
            await engine.shutdown()
    return 0


async def show_status(config: BotConfig, store: StateStore) -> int:
    credentials = load_credentials()
    async with KrakenClient.from_config(credentials, config.exchange, store=store) as client:
        engine = TradingEngine(client, config.strategy, pair_names=(config.exchange.pair, config.exchange.pair_altname), store=store)
        if not await engine.initialize():
            return 1
        balance = await engine.get_balance()
        price = await engine.get_current_price()
        result = await engine.trading_result()
    print(f"Pair:            {config.exchange.pair}")
    print(f"Price:           {price}")
    print(f"Asset balance:   {balance.asset_amount}")
    print(f"Fiat balance:    {balance.fiat_amount}")
    print(f"Total capital:   {balance.total_capital}")
    print(f"Trading result:  {result}")
    print(f"Last buy price:  {engine.get_last_buy_price()}")
    print(f"Last sell price: {engine.get_last_sell_price()}")
    return 0


def show_trades(store: StateStore) -> int:
    ledger = TradeLedger(store)
    if not len(ledger):
        print("No trades recorded")
        return 0
    print(f"{'ID':<24} {'SIDE':<5} {'PRICE':>12} {'AMOUNT':>14} {'FEE':>12} {'STATUS':<10} MANUAL")
    for t in ledger:
        print(f"{t.id:<24} {t.side.value:<5} {t.price:>12} {t.amount:>14} {t.fee:>12} {t.status.value:<10} {t.is_manual}")
    return 0


def show_nonce(store: StateStore) -> int:
    state = store.load_nonce()
    if state is None:
        print("No nonce state persisted")
    else:
        print(f"last_nonce={state.last_nonce} increment={state.increment} last_emitted={state.value}")
    return 0


def credentials(action: str, path: Optional[str] = None) -> int:
    """Write the credentials file from prompted input, or show which credentials are in use."""
    if action == "set":
        api_key = input("Kraken API key: ")
        api_secret = getpass.getpass("Kraken API secret: ")
        saved = save_credentials(api_key, api_secret, path)
        print(f"Credentials written to {saved}")
        return 0
    found, source = find_credentials(path)
    print(f"API key: {found.masked_key()} (from {source})")
    return 0


def migrate(db_path: str, action: str, version: Optional[int] = None, last: bool = False) -> int:
    """List, apply or roll back schema migrations of the SQLite state DB."""
    db = Path(db_path)
    db.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db), timeout=30, isolation_level=None)
    try:
        if action == "apply":
            applied = apply_migrations(conn)
            print(f"Applied migrations: {applied}" if applied else "No migrations applied; database up-to-date.")
        elif action == "rollback":
            if version is not None:
                rollback_migration(conn, version)
                print(f"Rolled back migration {version}")
            elif last:
                v = rollback_last(conn)
                print("No applied migrations to rollback" if v is None else f"Rolled back migration {v}")
            else:
                print("Error: rollback needs --version or --last", file=sys.stderr)
                return 2
        else:
            cur = conn.cursor()
            cur.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='schema_migrations'")
            applied = {}
            if cur.fetchone():
                cur.execute("SELECT version, applied_at FROM schema_migrations ORDER BY version")
                applied = {row[0]: row[1] for row in cur.fetchall()}
            print("Available migrations:")
            for v in sorted(MIGRATIONS):
                status = "applied" if v in applied else "pending"
                print(f"  {v}: {status} (applied_at={applied.get(v, '-')})")
    except (RuntimeError, sqlite3.Error) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    finally:
        conn.close()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Kraken spot trading bot")
    parser.add_argument("--config", default="config.yaml", help="YAML config file")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="Initialize and run the trading cycle until interrupted")
    sub.add_parser("status", help="Show balance, price and reference prices")
    sub.add_parser("trades", help="List the recorded trade ledger")
    sub.add_parser("nonce", help="Show the persisted nonce state")
    mig = sub.add_parser("migrate", help="Manage schema migrations of the SQLite state DB")
    mig.add_argument("action", choices=["list", "apply", "rollback"])
    mig.add_argument("--db", help="Path to the SQLite DB (defaults to persistence.db_path)")
    mig.add_argument("--version", type=int, help="Rollback a specific migration version")
    mig.add_argument("--last", action="store_true", help="Rollback the last applied migration")
    cred = sub.add_parser("credentials", help="Write or inspect the Kraken API credentials file")
    cred.add_argument("action", choices=["set", "show"])
    cred.add_argument("--path", help="Credentials file (defaults to KRAKEN_CONFIG_PATH or ~/.kraken_config.json)")
    args = parser.parse_args(argv)

    try:
        if args.command == "credentials":
            return credentials(args.action, args.path)
        config = load_config(args.config)
        if args.command == "migrate":
            return migrate(args.db or config.persistence.db_path, args.action, args.version, args.last)
        store = open_store(config.persistence)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    setup_logging(
        log_file=config.persistence.log_file,
        level=config.persistence.log_level,
        enable_console=args.command == "run",
    )
    try:
        if args.command == "run":
            return asyncio.run(run_bot(config, store))
        if args.command == "status":
            return asyncio.run(show_status(config, store))
        if args.command == "trades":
            return show_trades(store)
        return show_nonce(store)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
        return 0
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
