import asyncio
import functools
import json
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple, Union

import aiohttp

from . import pnl
from .config import ExchangeConfig
from .errors import (
    ConnectivityError,
    ExchangeRejection,
    KrakenAPIError,
    MalformedResponse,
    OrderValidationError,
    RateLimitExceeded,
)
from .logging_setup import logger
from .models import ClosedOrder, OpenOrder, OrderSide
from .nonce import NonceManager
from .persistence import StateStore
from .rate_limit_policy import RateLimiter
from .request_queue import PrivateRequestQueue
from .responses import (
    parse_add_order,
    parse_balance,
    parse_cancel_order,
    parse_closed_orders,
    parse_open_orders,
    parse_ticker,
    unwrap,
)
from .secrets import KrakenCredentials
from .signing import SignedRequest

VOLUME_STEP = Decimal("0.00000001")


class KrakenClient:
    """Async Kraken spot client.

    Features:
    - Public ticker calls spaced by the shared rate limiter.
    - Private calls serialized through ``PrivateRequestQueue``: nonce drawn at
      dispatch, ``API-Key``/``API-Sign`` headers, form-encoded body.
    - Rate-limit cooldown and bounded retries for transient failures.
    - Responses validated into typed records (see ``responses``).

    The client keeps no persistent state of its own; the nonce manager it
    owns persists through the given ``store``.

    Usage:
        async with KrakenClient.from_config(creds, config.exchange, store=store) as client:
            price = await client.get_price()
    """

    def __init__(
        self,
        api_key: str,
        secret: str,
        *,
        base_url: str = "https://api.kraken.com",
        pair: str = "XXBTZEUR",
        asset_code: str = "XXBT",
        fiat_code: str = "ZEUR",
        price_decimals: int = 2,
        timeout: int = 10,
        min_request_interval: float = 1.0,
        rate_limit_cooldown: float = 3.0,
        max_rate_limit_retries: int = 10,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        store: Optional[StateStore] = None,
        nonces: Optional[NonceManager] = None,
        limiter: Optional[RateLimiter] = None,
    ):
        self.api_key = api_key
        self.secret = secret
        self.base_url = base_url.rstrip("/")
        self.pair = pair
        self.asset_code = asset_code
        self.fiat_code = fiat_code
        self.price_step = Decimal(1).scaleb(-price_decimals)
        self.timeout = timeout
        self.limiter = limiter or RateLimiter(min_interval=min_request_interval)
        self.nonces = nonces or NonceManager(store=store)
        self.queue = PrivateRequestQueue(
            self.nonces,
            self._send_private,
            self.limiter,
            max_retries=max_retries,
            retry_delay=retry_delay,
            rate_limit_cooldown=rate_limit_cooldown,
            max_rate_limit_retries=max_rate_limit_retries,
        )
        self.session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_config(cls, credentials: KrakenCredentials, config: ExchangeConfig, **kwargs) -> "KrakenClient":
        """Create a client from loaded credentials and the exchange config section."""
        return cls(
            api_key=credentials.api_key,
            secret=credentials.api_secret,
            base_url=config.base_url,
            pair=config.pair,
            asset_code=config.asset_code,
            fiat_code=config.fiat_code,
            price_decimals=config.price_decimals,
            timeout=config.timeout,
            min_request_interval=config.min_request_interval,
            rate_limit_cooldown=config.rate_limit_cooldown,
            max_rate_limit_retries=config.max_rate_limit_retries,
            max_retries=config.max_retries,
            retry_delay=config.retry_delay,
            **kwargs,
        )

    async def __aenter__(self):
        self.session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        await self.queue.join()
        if self.session:
            await self.session.close()

    # --- transport ---
    async def _http(self, method: str, endpoint: str, *, data: Optional[str] = None, params: Optional[dict] = None, headers: Optional[dict] = None) -> Any:
        if not self.session:
            raise KrakenAPIError("Session not initialized; use 'async with' context manager")

        url = f"{self.base_url}{endpoint}"
        try:
            async with self.session.request(method, url, data=data, params=params, headers=headers) as resp:
                text = await resp.text()
                if resp.status == 429:
                    raise RateLimitExceeded(f"HTTP 429 ({endpoint})")
                if resp.status >= 500:
                    raise ConnectivityError(f"{resp.status}: {text}")
                if not (200 <= resp.status < 300):
                    raise ExchangeRejection([f"HTTP {resp.status}: {text}"], endpoint=endpoint)
        except asyncio.TimeoutError as e:
            raise ConnectivityError(f"Request timeout ({endpoint}): {e}")
        except aiohttp.ClientError as e:
            raise ConnectivityError(f"Request failed ({endpoint}): {e}")

        try:
            return json.loads(text)
        except json.JSONDecodeError:
            raise MalformedResponse(f"Non-JSON response from {endpoint}: {text[:200]}")

    async def _send_private(self, request: SignedRequest) -> Any:
        headers = {
            "API-Key": self.api_key,
            "API-Sign": request.sign(self.secret),
            "Content-Type": "application/x-www-form-urlencoded; charset=utf-8",
        }
        payload = await self._http("POST", request.endpoint, data=request.post_data(), headers=headers)
        return unwrap(payload, request.endpoint)

    async def _private(self, endpoint: str, params: Optional[Dict[str, Union[str, int]]] = None) -> Any:
        build = functools.partial(SignedRequest.build, endpoint, dict(params or {}))
        return await self.queue.submit(build)

    async def _public(self, endpoint: str, params: Optional[dict] = None) -> Any:
        await self.limiter.wait()
        payload = await self._http("GET", endpoint, params=params)
        return unwrap(payload, endpoint)

    # --- public ---
    async def get_price(self, pair: Optional[str] = None) -> Decimal:
        """Last traded price of ``pair`` (defaults to the configured pair)."""
        pair = pair or self.pair
        result = await self._public("/0/public/Ticker", {"pair": pair})
        return parse_ticker(result, pair)

    # --- private ---
    async def get_balance(self) -> Tuple[Decimal, Decimal]:
        """Return ``(asset_amount, fiat_amount)``; missing currencies count as zero."""
        result = await self._private("/0/private/Balance")
        return parse_balance(result, self.asset_code, self.fiat_code)

    async def get_open_orders(self) -> List[OpenOrder]:
        result = await self._private("/0/private/OpenOrders")
        return parse_open_orders(result)

    async def get_closed_orders(self) -> List[ClosedOrder]:
        """Closed-order history, most recent first."""
        result = await self._private("/0/private/ClosedOrders", {"trades": "true"})
        return parse_closed_orders(result)

    async def place_order(self, side: Union[OrderSide, str], amount: Decimal, price: Optional[Decimal] = None) -> str:
        """Place a market order, or a limit order when ``price`` is given.

        Raises:
            OrderValidationError: bad side, amount <= 0 or price <= 0;
                raised before any request is queued
        """
        params = self._order_params(side, amount, price)
        result = await self._private("/0/private/AddOrder", params)
        order_id = parse_add_order(result)
        logger.info(f"Order placed | order_id={order_id} side={params['type']} type={params['ordertype']} volume={params['volume']} price={params.get('price')}")
        return order_id

    def _order_params(self, side: Union[OrderSide, str], amount: Decimal, price: Optional[Decimal]) -> Dict[str, str]:
        try:
            side = OrderSide(side)
        except ValueError:
            raise OrderValidationError(f"Invalid order side: {side!r}")
        amount = _to_decimal(amount, "amount")
        if amount <= 0:
            raise OrderValidationError(f"Order amount must be positive, got {amount}")
        volume = amount.quantize(VOLUME_STEP, rounding=ROUND_DOWN)
        if volume <= 0:
            raise OrderValidationError(f"Order amount {amount} is below the volume precision")

        params = {
            "pair": self.pair,
            "type": side.value,
            "ordertype": "market" if price is None else "limit",
            "volume": str(volume),
        }
        if price is not None:
            price = _to_decimal(price, "price")
            if price <= 0:
                raise OrderValidationError(f"Limit price must be positive, got {price}")
            params["price"] = str(price.quantize(self.price_step, rounding=ROUND_HALF_UP))
        return params

    async def cancel_order(self, order_id: str) -> bool:
        """Best-effort cancel; failures are logged and reported as ``False``."""
        try:
            result = await self._private("/0/private/CancelOrder", {"txid": order_id})
            count = parse_cancel_order(result)
        except KrakenAPIError as e:
            logger.warning(f"Failed to cancel order | order_id={order_id} error={e}")
            return False
        logger.info(f"Order cancelled | order_id={order_id} count={count}")
        return True

    async def verify_connection(self) -> bool:
        try:
            await self.get_balance()
            return True
        except KrakenAPIError as e:
            logger.error(f"Connection check failed | error={e}")
            return False

    calculate_total_capital = staticmethod(pnl.total_capital)
    calculate_net_profit = staticmethod(pnl.net_profit)


def _to_decimal(value: Any, name: str) -> Decimal:
    try:
        value = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation:
        raise OrderValidationError(f"Invalid {name}: {value!r}")
    if not value.is_finite():
        raise OrderValidationError(f"{name.capitalize()} must be a finite number, got {value}")
    return value
