"""Error taxonomy for the Kraken pipeline.

Retry eligibility:
    RateLimitExceeded   - retried by the private request queue after a cooldown
    ConnectivityError   - retried a bounded number of times with a fixed delay
    everything else     - surfaced to the caller immediately
"""
from typing import List, Optional


class KrakenAPIError(Exception):
    pass


class ConnectivityError(KrakenAPIError):
    """Transport failure, timeout, HTTP 5xx or a temporarily unavailable service."""
    pass


class RateLimitExceeded(KrakenAPIError):
    """Raised when Kraken reports the API rate limit, or retries are exhausted."""
    pass


class ExchangeRejection(KrakenAPIError):
    """Kraken answered with a non-empty error list."""

    def __init__(self, errors: List[str], endpoint: Optional[str] = None):
        self.errors = list(errors)
        self.endpoint = endpoint
        where = f" ({endpoint})" if endpoint else ""
        super().__init__(f"Kraken API Error{where}: {', '.join(self.errors)}")


class MalformedResponse(KrakenAPIError):
    """Response body did not match the expected shape."""
    pass


class SigningError(KrakenAPIError):
    pass


class OrderValidationError(KrakenAPIError, ValueError):
    """Order parameters rejected locally, before any request is built."""
    pass
