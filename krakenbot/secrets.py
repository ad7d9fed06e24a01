"""Kraken API credentials.

Lookup order:
1. Environment variables: KRAKEN_API_KEY, KRAKEN_API_SECRET
2. JSON credentials file: KRAKEN_CONFIG_PATH, else ~/.kraken_config.json

The private key Kraken issues is base64; it is checked on load and on save so
a pasted-in typo fails here instead of as a ``SigningError`` on the first
private call.
"""
import base64
import binascii
import json
import os
from pathlib import Path
from typing import NamedTuple, Optional, Tuple

from .logging_setup import logger


class KrakenCredentials(NamedTuple):
    api_key: str
    api_secret: str

    def masked_key(self) -> str:
        return f"{self.api_key[:4]}...{self.api_key[-4:]}" if len(self.api_key) > 8 else "****"


def default_credentials_path() -> Path:
    return Path(os.getenv("KRAKEN_CONFIG_PATH") or Path.home() / ".kraken_config.json")


def _check_secret(api_secret: str) -> None:
    try:
        base64.b64decode(api_secret, validate=True)
    except (binascii.Error, ValueError):
        raise ValueError("Kraken API secret is not valid base64")


def find_credentials(config_path: Optional[str] = None) -> Tuple[KrakenCredentials, str]:
    """Return the credentials and where they came from ("environment" or a file path).

    Raises:
        ValueError: credentials missing, unreadable or with a malformed secret
    """
    api_key = os.getenv("KRAKEN_API_KEY")
    api_secret = os.getenv("KRAKEN_API_SECRET")
    source = "environment"

    if not (api_key and api_secret):
        path = Path(config_path) if config_path else default_credentials_path()
        source = str(path)
        if path.exists():
            try:
                with path.open("r") as f:
                    stored = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                raise ValueError(f"Failed to load config from {path}: {e}")
            api_key = stored.get("api_key") or api_key
            api_secret = stored.get("api_secret") or api_secret

    if not api_key or not api_secret:
        raise ValueError(
            "Missing Kraken credentials. Provide via:\n"
            "  - Environment: KRAKEN_API_KEY, KRAKEN_API_SECRET\n"
            f"  - Credentials file: {source}\n"
            "  - `krakenbot credentials set` to write the file"
        )
    _check_secret(api_secret)
    return KrakenCredentials(api_key=api_key, api_secret=api_secret), source


def load_credentials(config_path: Optional[str] = None) -> KrakenCredentials:
    return find_credentials(config_path)[0]


def save_credentials(api_key: str, api_secret: str, config_path: Optional[str] = None) -> Path:
    """Write the credentials file (mode 600) and return its path.

    WARNING: the secret is stored in plaintext.
    """
    api_key, api_secret = api_key.strip(), api_secret.strip()
    if not api_key:
        raise ValueError("Kraken API key must not be empty")
    _check_secret(api_secret)

    path = Path(config_path) if config_path else default_credentials_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    # restrict before the secret is written
    fd = os.open(str(tmp), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        json.dump({"api_key": api_key, "api_secret": api_secret}, f, indent=2)
    tmp.replace(path)
    try:
        path.chmod(0o600)
    except OSError as e:
        logger.warning(f"Could not restrict credentials file permissions | path={path} error={e}")
    logger.info(f"Credentials saved | path={path}")
    return path
