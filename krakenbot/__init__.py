"""
Kraken Spot Trading Bot.

Automated spot trading of one crypto asset against one fiat currency on a
single Kraken account:
- Strictly increasing, persisted nonces for authenticated calls
- HMAC-SHA512 request signing (API-Sign)
- Serialized FIFO for private requests with rate-limit cooldown and bounded retries
- Shared minimum spacing between all requests
- Decimal-exact capital and net profit accounting
- Periodic buy/sell decision cycle with a capital floor
- Append-only trade ledger
- SQLite or JSON state storage
- Structured logging via loguru
- Configuration-driven (YAML)

Core Modules:
    nonce: Nonce manager
    signing: Request signer
    request_queue: Private request queue
    rate_limit_policy: Shared request spacing
    kraken_client: Kraken REST client
    responses: Typed exchange response records
    pnl: Capital and profit calculations
    engine: Trading decision engine
    ledger: Trade ledger
    persistence / persistence_sqlite: State storage
    config: Configuration loading and validation
    secrets: Credential management
    cli: Console entry point

Example:
    >>> from pathlib import Path
    >>> from krakenbot.config import BotConfig
    >>> from krakenbot.engine import TradingEngine
    >>> from krakenbot.kraken_client import KrakenClient
    >>> from krakenbot.persistence_sqlite import SQLiteStateStore
    >>> from krakenbot.secrets import load_credentials
    >>>
    >>> config = BotConfig.from_yaml("config.yaml")
    >>> store = SQLiteStateStore(Path("state/krakenbot.db"))
    >>> async with KrakenClient.from_config(load_credentials(), config.exchange, store=store) as client:
    ...     engine = TradingEngine(client, config.strategy, store=store)
"""

__version__ = "0.1.0"
__all__ = [
    "nonce",
    "signing",
    "request_queue",
    "rate_limit_policy",
    "kraken_client",
    "responses",
    "pnl",
    "engine",
    "ledger",
    "models",
    "errors",
    "persistence",
    "persistence_sqlite",
    "db_migrations",
    "config",
    "secrets",
    "cli",
]
