"""
Trading decision engine.

Runs a periodic cycle against the exchange client:

    1. Capital guard   - stop the engine when total capital falls below the floor
    2. Buy evaluation  - never buy above the last exit price; cancel resting
                         buys priced above the market; size a new buy from the
                         fiat balance and skip it below the minimum lot
    3. Sell evaluation - when a sale at the current price is profitable after
                         fees, replace resting sells that would realize less

The engine owns the last buy/sell reference prices and the trade ledger. It
holds no process-wide state; the service shell creates one engine per
account and passes it around.

Example:
    >>> async with KrakenClient.from_config(creds, config.exchange, store=store) as client:
    ...     engine = TradingEngine(client, config.strategy, store=store)
    ...     if await engine.initialize():
    ...         engine.start()
"""

import asyncio
import time
import uuid
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from . import pnl
from .config import StrategyConfig
from .errors import KrakenAPIError
from .ledger import TradeLedger
from .logging_setup import logger
from .models import Balance, ClosedOrder, LastOperationsState, OrderSide, Trade, TradeStatus
from .persistence import StateStore

VOLUME_STEP = Decimal("0.00000001")


class EngineState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _as_decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


class TradingEngine:
    """Periodic buy/sell decision loop for a single pair.

    Args:
        client: Exchange client (``KrakenClient`` or any object with the same
            async operations)
        strategy: Strategy parameters
        pair_names: Names under which the traded pair appears in order history
        store: Optional state store for the last operations
        ledger: Trade ledger; a new one backed by ``store`` by default
    """

    def __init__(
        self,
        client,
        strategy: StrategyConfig,
        *,
        pair_names: Iterable[str] = ("XXBTZEUR", "XBTEUR"),
        store: Optional[StateStore] = None,
        ledger: Optional[TradeLedger] = None,
    ):
        self.client = client
        self.strategy = strategy
        self.pair_names = frozenset(pair_names)
        self.store = store
        self.ledger = ledger if ledger is not None else TradeLedger(store)
        self.state = EngineState.STOPPED
        self._last_ops = LastOperationsState()
        self._schedule: Optional[asyncio.Task] = None
        self._cycle_task: Optional[asyncio.Task] = None
        self._cycle_running = False

    # --- lifecycle ---
    async def initialize(self) -> bool:
        """Check connectivity and recover the last buy/sell prices."""
        try:
            if not await self.client.verify_connection():
                logger.error("Engine initialization failed | reason=cannot reach Kraken API")
                return False
            await self._load_last_operations()
            return True
        except Exception as e:
            logger.exception(f"Engine initialization failed | error={e}")
            return False

    async def _load_last_operations(self) -> None:
        if self.store is not None:
            persisted = self.store.load_last_operations()
            if persisted is not None:
                self._last_ops = persisted

        try:
            closed_orders = await self.client.get_closed_orders()
        except KrakenAPIError as e:
            logger.error(f"Failed to load last operations from history | error={e}")
            return

        last_buy: Optional[Decimal] = None
        last_sell: Optional[Decimal] = None
        for order in closed_orders:
            if order.pair not in self.pair_names or order.status != "closed":
                continue
            if order.side is OrderSide.BUY and last_buy is None:
                last_buy = order.price
            elif order.side is OrderSide.SELL and last_sell is None:
                last_sell = order.price
            if last_buy is not None and last_sell is not None:
                break

        if last_buy is not None:
            self._last_ops.last_buy_price = last_buy
        if last_sell is not None:
            self._last_ops.last_sell_price = last_sell
        self._save_last_operations()
        logger.info(
            f"Last operations loaded | last_buy_price={self._last_ops.last_buy_price} "
            f"last_sell_price={self._last_ops.last_sell_price}"
        )

    def start(self) -> None:
        """Schedule the cycle every ``check_interval`` seconds. No-op when running."""
        if self.state is EngineState.RUNNING:
            return
        loop = asyncio.get_running_loop()
        self.state = EngineState.RUNNING
        self._schedule = loop.create_task(self._run_schedule())
        logger.info(f"Trading engine started | interval={self.strategy.check_interval}s")

    def stop(self) -> None:
        """Cancel future cycles. An in-flight cycle runs to completion."""
        if self.state is EngineState.STOPPED:
            return
        self.state = EngineState.STOPPED
        if self._schedule is not None:
            self._schedule.cancel()
            self._schedule = None
        logger.info("Trading engine stopped")

    def is_active(self) -> bool:
        return self.state is EngineState.RUNNING

    async def shutdown(self) -> None:
        """Stop scheduling and wait for the in-flight cycle, if any."""
        self.stop()
        if self._cycle_task is not None and not self._cycle_task.done():
            await asyncio.wait([self._cycle_task])

    async def _run_schedule(self) -> None:
        loop = asyncio.get_running_loop()
        while self.state is EngineState.RUNNING:
            await asyncio.sleep(self.strategy.check_interval)
            if self.state is not EngineState.RUNNING:
                break
            if self._cycle_task is not None and not self._cycle_task.done():
                logger.warning("Previous trading cycle still running, skipping tick")
                continue
            self._cycle_task = loop.create_task(self.run_cycle())

    # --- cycle ---
    async def run_cycle(self) -> bool:
        """Run one trading cycle. Returns False if another cycle was in flight."""
        if self._cycle_running:
            logger.warning("Trading cycle already running, skipping")
            return False
        self._cycle_running = True
        try:
            await self._execute_cycle()
        except Exception as e:
            logger.exception(f"Trading cycle error | error={e}")
        finally:
            self._cycle_running = False
        return True

    async def _execute_cycle(self) -> None:
        balance, price = await self._snapshot()

        if balance.total_capital < self.strategy.min_security_capital:
            logger.warning(
                f"Capital below minimum security threshold, stopping | total_capital={balance.total_capital} "
                f"minimum={self.strategy.min_security_capital}"
            )
            self.stop()
            return

        await self._check_buy_opportunity(price)
        await self._check_sell_opportunity(balance, price)

    async def _snapshot(self) -> Tuple[Balance, Decimal]:
        asset, fiat = await self.client.get_balance()
        price = await self.client.get_price()
        balance = Balance(asset_amount=asset, fiat_amount=fiat, total_capital=pnl.total_capital(asset, fiat, price))
        return balance, price

    def size_buy(self, fiat_amount: Decimal, price: Decimal) -> Decimal:
        """Asset quantity bought with ``investment_percentage`` of the fiat balance."""
        if price <= 0:
            return Decimal("0")
        investment = fiat_amount * self.strategy.investment_percentage / Decimal("100")
        return (investment / price).quantize(VOLUME_STEP, rounding=ROUND_DOWN)

    async def _check_buy_opportunity(self, price: Decimal) -> None:
        last_sell = self._last_ops.last_sell_price
        if last_sell is not None and price > last_sell:
            logger.debug(f"Buy skipped, price above last sell | price={price} last_sell_price={last_sell}")
            return

        for order in await self.client.get_open_orders():
            if order.side is OrderSide.BUY and order.limit_price > price:
                logger.info(f"Cancelling stale buy order | order_id={order.order_id} limit_price={order.limit_price} price={price}")
                await self.client.cancel_order(order.order_id)
                await asyncio.sleep(self.strategy.cancel_delay)

        _, fiat = await self.client.get_balance()
        amount = self.size_buy(fiat, price)
        if amount < self.strategy.min_lot:
            logger.info(f"Buy skipped, below minimum lot | amount={amount} min_lot={self.strategy.min_lot}")
            return

        await self.execute_buy(amount, price, is_manual=False)

    async def _check_sell_opportunity(self, balance: Balance, price: Decimal) -> None:
        if balance.asset_amount <= 0:
            return
        if self._last_ops.last_buy_price is None:
            return

        last_buy = self._find_last_buy_order(await self.client.get_closed_orders())
        if last_buy is None:
            return

        profit = self._net_profit(price, last_buy)
        if profit <= 0:
            logger.debug(f"Sell skipped, no net profit | price={price} net_profit={profit}")
            return

        sell_orders = [o for o in await self.client.get_open_orders() if o.side is OrderSide.SELL]
        replace_needed = not sell_orders
        for order in sell_orders:
            existing = self._net_profit(order.limit_price, last_buy)
            if existing < profit:
                logger.info(
                    f"Replacing resting sell order | order_id={order.order_id} "
                    f"order_profit={existing} achievable_profit={profit}"
                )
                await self.client.cancel_order(order.order_id)
                await asyncio.sleep(self.strategy.cancel_delay)
                replace_needed = True

        if replace_needed:
            asset, _ = await self.client.get_balance()
            if asset > 0:
                await self.execute_sell(asset, price, is_manual=False)

    def _find_last_buy_order(self, closed_orders: List[ClosedOrder]) -> Optional[ClosedOrder]:
        buys = [
            o for o in closed_orders
            if o.side is OrderSide.BUY and o.pair in self.pair_names and o.status == "closed"
        ]
        return max(buys, key=lambda o: o.closed_at) if buys else None

    def _net_profit(self, price: Decimal, purchase: ClosedOrder) -> Decimal:
        return pnl.net_profit(price, purchase.price, purchase.volume, purchase.fee, self.strategy.fee_rate)

    # --- order execution ---
    async def execute_buy(self, amount, price, is_manual: bool = False) -> bool:
        """Place a buy; never raises. Returns True when the order was accepted."""
        try:
            amount, price = _as_decimal(amount), _as_decimal(price)
            balance, _ = await self._snapshot()
            if balance.total_capital < self.strategy.min_security_capital:
                logger.warning(
                    f"Buy refused, capital below minimum security threshold | total_capital={balance.total_capital} "
                    f"minimum={self.strategy.min_security_capital}"
                )
                return False

            last_sell = self._last_ops.last_sell_price
            if not is_manual and last_sell is not None and price > last_sell:
                logger.warning(f"Buy refused, price above last sell | price={price} last_sell_price={last_sell}")
                return False

            fee = amount * self.strategy.fee_rate
            order_id = await self._place(OrderSide.BUY, amount, price, is_manual, fee)
            if order_id is None:
                return False

            self._last_ops.last_buy_price = price
            self._save_last_operations()
            return True
        except Exception as e:
            logger.exception(f"Buy execution failed | error={e}")
            return False

    async def execute_sell(self, amount, price, is_manual: bool = False) -> bool:
        """Place a sell; never raises. Returns True when the order was accepted."""
        try:
            amount, price = _as_decimal(amount), _as_decimal(price)
            asset, _ = await self.client.get_balance()
            if asset <= 0:
                logger.warning("Sell refused, no asset available")
                return False

            fee = amount * price * self.strategy.fee_rate
            order_id = await self._place(OrderSide.SELL, amount, price, is_manual, fee)
            if order_id is None:
                return False

            self._last_ops.last_sell_price = price
            self._save_last_operations()
            return True
        except Exception as e:
            logger.exception(f"Sell execution failed | error={e}")
            return False

    async def _place(self, side: OrderSide, amount: Decimal, price: Decimal, is_manual: bool, fee: Decimal) -> Optional[str]:
        limit_price = None if self.strategy.use_market_orders else price
        try:
            order_id = await self.client.place_order(side, amount, limit_price)
        except KrakenAPIError as e:
            logger.error(f"Order placement failed | side={side.value} amount={amount} price={price} error={e}")
            self.ledger.record(Trade(
                id=f"failed-{uuid.uuid4().hex[:12]}",
                side=side,
                price=price,
                amount=amount,
                timestamp=_now_ms(),
                is_manual=is_manual,
                fee=fee,
                status=TradeStatus.FAILED,
            ))
            return None

        trade = Trade(
            id=order_id,
            side=side,
            price=price,
            amount=amount,
            timestamp=_now_ms(),
            is_manual=is_manual,
            fee=fee,
            status=TradeStatus.CONFIRMED,
        )
        self.ledger.record(trade)
        logger.info(f"{side.value.capitalize()} order executed | order_id={order_id} amount={amount} price={price} manual={is_manual}")
        return order_id

    def _save_last_operations(self) -> None:
        self._last_ops.timestamp = _now_ms()
        if self.store is None:
            return
        try:
            self.store.save_last_operations(self._last_ops)
        except Exception as e:
            logger.error(f"Failed to persist last operations | error={e}")

    # --- service boundary ---
    async def get_balance(self) -> Balance:
        balance, _ = await self._snapshot()
        return balance

    async def get_current_price(self) -> Decimal:
        return await self.client.get_price()

    def get_last_buy_price(self) -> Optional[Decimal]:
        return self._last_ops.last_buy_price

    def get_last_sell_price(self) -> Optional[Decimal]:
        return self._last_ops.last_sell_price

    def get_trades(self) -> Tuple[Trade, ...]:
        return self.ledger.all()

    async def trading_result(self, initial_capital: Optional[Decimal] = None) -> Decimal:
        """Current total capital minus the initial investment."""
        initial = self.strategy.initial_investment if initial_capital is None else initial_capital
        balance = await self.get_balance()
        return pnl.trading_result(initial, balance.total_capital)
