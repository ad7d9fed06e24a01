"""Configuration loader for the bot.

Supports YAML format with environment variable interpolation.
"""
import os
from dataclasses import asdict, dataclass, field, fields
from decimal import Decimal
from pathlib import Path
from typing import Optional

import yaml


@dataclass
class ExchangeConfig:
    """Kraken connection and request pipeline settings."""
    base_url: str = "https://api.kraken.com"
    pair: str = "XXBTZEUR"
    pair_altname: str = "XBTEUR"  # name used in order descriptions
    asset_code: str = "XXBT"
    fiat_code: str = "ZEUR"
    price_decimals: int = 2
    timeout: int = 10
    min_request_interval: float = 1.0
    rate_limit_cooldown: float = 3.0
    max_rate_limit_retries: int = 10
    max_retries: int = 3
    retry_delay: float = 1.0


@dataclass
class StrategyConfig:
    """Trading cycle parameters."""
    initial_investment: Decimal = Decimal("0")
    min_security_capital: Decimal = Decimal("50")  # capital floor
    investment_percentage: Decimal = Decimal("10")  # % of fiat per buy
    fee_rate: Decimal = Decimal("0.0026")
    min_lot: Decimal = Decimal("0.0001")
    check_interval: float = 10.0
    cancel_delay: float = 1.0
    use_market_orders: bool = False

    def __post_init__(self):
        for name in ("initial_investment", "min_security_capital", "investment_percentage", "fee_rate", "min_lot"):
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                setattr(self, name, Decimal(str(value)))
        if not Decimal("0") < self.investment_percentage <= Decimal("100"):
            raise ValueError(f"investment_percentage must be in (0, 100], got {self.investment_percentage}")
        if self.min_security_capital < 0:
            raise ValueError("min_security_capital must be non-negative")
        if self.check_interval <= 0:
            raise ValueError("check_interval must be positive")


@dataclass
class PersistenceConfig:
    """State storage and logging settings."""
    backend: str = "sqlite"  # sqlite | json | memory
    db_path: str = "state/krakenbot.db"
    log_file: str = "logs/krakenbot.log"
    log_level: str = "INFO"


@dataclass
class BotConfig:
    """Complete bot configuration."""
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    strategy: StrategyConfig = field(default_factory=StrategyConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)

    @classmethod
    def from_yaml(cls, config_path: str) -> "BotConfig":
        """Load configuration from YAML file with env var interpolation.

        Args:
            config_path: Path to YAML config file

        Returns:
            BotConfig instance

        Example YAML:
            exchange:
              pair: XXBTZEUR
              min_request_interval: 1.0
            strategy:
              min_security_capital: 50
              investment_percentage: 10
            persistence:
              db_path: "${STATE_DIR}/krakenbot.db"
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with config_file.open("r") as f:
            raw = f.read()

        # Interpolate environment variables: ${VAR_NAME}
        for key, value in os.environ.items():
            raw = raw.replace(f"${{{key}}}", value)

        data = yaml.safe_load(raw) or {}
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> "BotConfig":
        return cls(
            exchange=ExchangeConfig(**_known(ExchangeConfig, data.get("exchange"))),
            strategy=StrategyConfig(**_known(StrategyConfig, data.get("strategy"))),
            persistence=PersistenceConfig(**_known(PersistenceConfig, data.get("persistence"))),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["strategy"] = {
            k: str(v) if isinstance(v, Decimal) else v
            for k, v in data["strategy"].items()
        }
        return data

    def to_yaml(self, output_path: str) -> None:
        """Save configuration to YAML file."""
        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        with output_file.open("w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)


def _known(section_cls, section: Optional[dict]) -> dict:
    section = section or {}
    names = {f.name for f in fields(section_cls)}
    unknown = set(section) - names
    if unknown:
        raise ValueError(f"Unknown {section_cls.__name__} keys: {', '.join(sorted(unknown))}")
    return section
