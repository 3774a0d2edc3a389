# bazaar_flipper/strategy.py
import asyncio
import logging
import math
from collections import Counter
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .catalog import ProductCatalog
from .clock import Clock
from .errors import ActionError, ContextError
from .execution import ExecutionService
from .interfaces import GameClient
from .inventory import InventoryEngine
from .models import CycleMetrics, FlipperState, Order, OrderType, Product
from .order_book import OrderBookSynchronizer
from .parser import ChatEventKind, parse_chat
from .risk_engine import RiskEngine
from .rpc import SolverClient
from .schedule import HOUR, is_scheduled, parse_windows, remaining_time, utc_hours
from .solver import SolveRequest

TRADING_LOCATION = "island"
# Long waits are slept in slices so a stopped loop notices quickly
SLEEP_SLICE = 1.0


def compute_pacing_delay(
    remaining_seconds: float,
    remaining_quota: float,
    used_since_start: float,
    cycles: int,
    active_seconds: float,
) -> Optional[float]:
    """
    Spreads the remaining daily limit evenly over the remaining trading time.

    Average usage and duration per cycle give the number of cycles the limit
    still allows; the slack between them is the wait. Returns None when there
    is nothing to wait for.
    """
    if cycles <= 0 or used_since_start <= 0:
        return None
    avg_usage = used_since_start / cycles
    avg_duration = active_seconds / cycles
    remaining_cycles = remaining_quota / avg_usage
    if remaining_cycles <= 1:
        return None
    delay = (remaining_seconds - remaining_cycles * avg_duration) / (remaining_cycles - 1)
    if not math.isfinite(delay) or delay <= 0:
        return None
    return delay


class FlipControlLoop:
    """
    Runs the flip cycle: reconcile orders, act on the most urgent one, top up
    buy orders from the solver, then wait so the daily limit lasts the day.
    """
    def __init__(
        self,
        game: GameClient,
        catalog: ProductCatalog,
        order_book: OrderBookSynchronizer,
        inventory: InventoryEngine,
        execution: ExecutionService,
        risk: RiskEngine,
        solver: SolverClient,
        config: dict,
        logger: logging.Logger,
        on_metrics: Optional[Callable[[Dict[str, Any]], None]] = None,
        clock: Optional[Clock] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        hours: Callable[[], float] = utc_hours,
    ):
        self.game = game
        self.catalog = catalog
        self.order_book = order_book
        self.inventory = inventory
        self.execution = execution
        self.risk = risk
        self.solver = solver
        self.cfg = config
        self.logger = logger
        self.on_metrics = on_metrics
        self.clock = clock or Clock()
        self._sleep = sleep
        self._hours = hours

        self.state = FlipperState.STOPPED
        self.run_id = 0
        self.metrics = CycleMetrics()
        self.active_activity = "default"
        self.online_members: List[str] = []
        self.in_timeout = False
        self._timeout_started = 0.0
        self.context_failures = 0
        self.task: Optional[asyncio.Task] = None

    # --- STATE ---

    def start(self) -> Optional[asyncio.Task]:
        if self.state == FlipperState.RUNNING:
            return None
        self.logger.info("Starting up..." if self.state == FlipperState.STOPPED else "Resuming...")
        if self.state == FlipperState.STOPPED:
            self.metrics.reset()
        self.state = FlipperState.RUNNING
        self.run_id += 1
        self.clock.start()
        self.task = asyncio.create_task(self.run(self.run_id))
        return self.task

    def pause(self):
        if self.state != FlipperState.RUNNING:
            return
        self.logger.info("Pausing...")
        self.state = FlipperState.PAUSED
        self.clock.pause()

    def stop(self):
        if self.state == FlipperState.STOPPED:
            return
        self.logger.info("Stopping...")
        self.state = FlipperState.STOPPED
        self.active_activity = "default"
        self.in_timeout = False
        self.clock.stop()
        self.metrics.reset()

    def is_current(self, run_id: int) -> bool:
        return self.state == FlipperState.RUNNING and run_id == self.run_id

    async def _wait(self, seconds: float, run_id: int) -> float:
        """Sleeps up to `seconds`, returning how long it actually waited."""
        slept = 0.0
        while slept < seconds and self.is_current(run_id):
            step = min(SLEEP_SLICE, seconds - slept)
            await self._sleep(step)
            slept += step
        return slept

    # --- LOOP ---

    async def run(self, run_id: int):
        metrics_task = asyncio.create_task(self._emit_metrics(run_id))
        try:
            while self.is_current(run_id):
                try:
                    await self._tick(run_id)
                except (ActionError, ContextError, asyncio.TimeoutError) as e:
                    self.logger.error(f"Cycle skipped: {e}")
                except Exception as e:
                    self.logger.exception(f"An error occurred in the flip loop: {e}")
                await self._sleep(self.cfg['system']['iteration_delay_seconds'])
        finally:
            metrics_task.cancel()

    async def _emit_metrics(self, run_id: int):
        interval = self.cfg['system']['metrics_interval_seconds']
        while self.is_current(run_id):
            await asyncio.sleep(interval)
            if self.on_metrics is not None and self.is_current(run_id):
                self.on_metrics(self.serialize())

    async def _tick(self, run_id: int):
        windows = parse_windows(self.cfg['general']['timeouts'])
        if is_scheduled(windows, self._hours()):
            if self.in_timeout:
                self.metrics.total_timeout_time += self.clock.elapsed() - self._timeout_started
                self.in_timeout = False
                self.logger.info("Scheduled timeout has ended, logging back in")
                await self.game.connect()
        elif not self.in_timeout:
            self._timeout_started = self.clock.elapsed()
            self.in_timeout = True
            self.logger.info("Scheduled timeout has started, disconnecting")
            await self.game.disconnect()

        if not self.in_timeout:
            await self.iterate(run_id)

    async def iterate(self, run_id: int):
        """
        One flip cycle. Returns early whenever an action was taken, and at
        every await once `run_id` is no longer the current run.
        """
        if self.game.online_status != "online":
            return
        if not await self.ensure_location() or not self.is_current(run_id):
            return

        if self.cfg['failsafe'].get('coop_failsafe') and self.online_members:
            await self.coop_failsafe(run_id)
            return

        is_new_day = self.risk.refresh_day()
        await self.risk.save()
        if not self.is_current(run_id):
            return
        if is_new_day:
            self.metrics.reset()
            self.metrics.starting_quota_usage = 0.0
            self.clock.stop()
            self.clock.start()
        elif self.risk.is_at_limit():
            return

        refreshed = await self.catalog.refresh()
        if not self.is_current(run_id) or (not refreshed and not self.catalog.products):
            return

        orders = await self.execution.open_manage_orders()
        if not self.is_current(run_id):
            return
        total = self.inventory.total(orders)
        if self.metrics.starting_total_value is None:
            self.metrics.starting_total_value = total
        if self.metrics.starting_quota_usage is None:
            self.metrics.starting_quota_usage = self.risk.quota.used_amount
        self._log_status(orders, total)

        if await self.manage_positions(run_id) or not self.is_current(run_id):
            return

        windows = parse_windows(self.cfg['general']['timeouts'])
        remaining = remaining_time(windows, self._hours())
        await self.place_buy_orders(remaining, run_id)
        if not self.is_current(run_id):
            return

        self.metrics.cycles_completed += 1
        await self.pace(remaining, run_id)

    def _log_status(self, orders: List[Order], total: float):
        start = self.metrics.starting_total_value or 0.0
        elapsed_hours = self.clock.elapsed() / HOUR
        profit = total - start
        self.logger.debug(
            f"Found {len(orders)} orders worth {self.inventory.orders_worth(orders):,.0f} | "
            f"Purse: {self.game.purse():,.0f} | "
            f"Inventory: {self.inventory.inventory_worth():,.0f} ({self.game.empty_inventory_slots()} empty slots) | "
            f"Total: {total:,.0f} | Profit: {profit:,.0f} | "
            f"Profit/h: {profit / elapsed_hours if elapsed_hours > 0 else 0.0:,.0f} | "
            f"Daily limit: {self.risk.quota.used_amount:,.0f} / {self.risk.true_limit():,.0f} | "
            f"Cycles: {self.metrics.cycles_completed}"
        )

    # --- CONTEXT ---

    async def change_activity(self, activity: str, func: Callable[[], Awaitable[Any]]) -> bool:
        """Runs `func` as `activity` unless that activity is already running."""
        if activity == self.active_activity:
            return False
        previous = self.active_activity
        self.active_activity = activity
        try:
            await func()
            return True
        except Exception as e:
            self.logger.error(f"{activity} failed: {e}")
            return False
        finally:
            self.active_activity = previous

    async def ensure_location(self) -> bool:
        try:
            location = await self.game.update_location()
        except asyncio.TimeoutError:
            location = None

        if location == TRADING_LOCATION:
            self.context_failures = 0
            return True

        if location is None:
            self.context_failures += 1
            if self.context_failures >= self.cfg['failsafe']['max_context_failures']:
                self.logger.warning(f"Location unknown {self.context_failures} times in a row, reconnecting")
                self.context_failures = 0
                await self.game.disconnect()
                await self.game.connect()
            return False

        self.context_failures = 0
        await self.change_activity("failsafe", lambda: self._recover_context(location))
        return False

    async def _recover_context(self, location: str):
        self.logger.warning(f"Failsafe activated: current location {location}")
        command = self.cfg['failsafe']['recovery_commands'].get(location)
        if command:
            await self.game.send_chat(command)

    # --- DECISIONS ---

    async def manage_positions(self, run_id: int) -> bool:
        book = self.order_book
        held = self.inventory.bazaar_products()
        last: Optional[Product] = held[0][0] if held else None

        if book.remaining_space(OrderType.SELL) <= 0:
            await self.free_sell_slot(last)
            return True

        if self.inventory.is_full():
            await self.sell_inventory(run_id)
            return True

        order = next(
            (o for o in book.orders
             if last is None or o.product_id == last.id or (o.filled and o.type == OrderType.SELL)),
            None,
        )
        if order is not None:
            if order.amount is None or order.undercut_amount is None:
                self.logger.warning(f"Ignoring order with missing data: {order.to_dict()}")
            else:
                if order.filled:
                    if order.type == OrderType.SELL or self.inventory.fits(order):
                        await self.execution.claim_order(order)
                        return True
                    await self.execution.flip_order(order)
                    return True
                if order.amount and order.undercut_amount / order.amount > book.relist_ratio:
                    await self.execution.cancel_order(order)
                    return True

        if len(held) == 1:
            await self.execution.create_order(Order(product_id=held[0][0].id, type=OrderType.SELL))
            return True
        if len(held) > 1:
            await self.sell_inventory(run_id)
            return True
        return False

    async def free_sell_slot(self, last: Optional[Product]):
        """No sell slot left: claim or cancel one offer, held products first, then the most duplicated."""
        self.logger.debug("0 remaining space for sell offers")
        offers = self.order_book.get_orders(OrderType.SELL)
        if not offers:
            return
        dupes = Counter(o.product_id for o in offers)
        offers.sort(key=lambda o: (0 if last is not None and o.product_id == last.id else 1, -dupes[o.product_id]))
        order = offers[0]
        if order.filled:
            await self.execution.claim_order(order)
        else:
            await self.execution.cancel_order(order)

    async def place_buy_orders(self, remaining_seconds: float, run_id: int):
        orders = self.order_book.orders
        slots = self.order_book.remaining_space(OrderType.BUY)
        budget = min(
            self.game.purse(),
            self.cfg['general']['max_usage'] - self.inventory.spent(orders),
            self.risk.remaining_limit(),
        )
        if slots <= 0 or budget <= 0:
            self.logger.debug(
                f"Not creating any more buy orders | slots {slots} | budget {budget:,.0f} | "
                f"remaining limit {self.risk.remaining_limit():,.0f}"
            )
            return

        request = SolveRequest(
            budget=budget,
            order_slot_count=slots,
            remaining_quota=self.risk.remaining_limit(),
            horizon_hours=remaining_seconds / HOUR,
            existing_orders=list(orders),
            elapsed_time=self.clock.elapsed(),
            cycle_count=self.metrics.cycles_completed,
            filter=dict(self.cfg['filter']),
            max_order_size=self.cfg['orders']['max_order_size'],
        )
        new_orders = await self.solver.get_optimal_orders(request)
        self.logger.debug(f"Creating {len(new_orders)} buy orders with budget {budget:,.0f}")
        for order in new_orders:
            if not self.is_current(run_id):
                break
            await self.execution.create_order(order)

    async def pace(self, remaining_seconds: float, run_id: int):
        used = self.risk.quota.used_amount - (self.metrics.starting_quota_usage or 0.0)
        active = self.clock.elapsed() - self.metrics.total_wait_time - self.metrics.total_timeout_time
        delay = compute_pacing_delay(
            remaining_seconds,
            self.risk.remaining_limit(),
            used,
            self.metrics.cycles_completed,
            active,
        )
        if delay is None:
            return
        self.logger.debug(f"Waiting for {delay:,.0f}s...")
        self.metrics.total_wait_time += await self._wait(delay, run_id)

    # --- LIQUIDATION ---

    async def sell_inventory(self, run_id: int, instant: bool = False):
        """Empties inventory and stash, via sell offers or instantly."""
        self.logger.debug("Selling inventory and stash")
        max_fails = self.cfg['failsafe']['max_liquidation_failures']
        while (
            self.is_current(run_id)
            and self.game.online_status == "online"
            and (instant or self.order_book.remaining_space(OrderType.SELL) > 0)
            and not self.risk.is_at_limit()
        ):
            try:
                await self.execution.open_manage_orders()
                await self._sleep(2)
                if not self.is_current(run_id):
                    break
                stash_empty = await self.execution.pickup_stash()
                if not self.is_current(run_id):
                    break
                if instant:
                    success = await self.execution.instant_sell()
                else:
                    held = self.inventory.bazaar_products()
                    if not held:
                        break
                    success = await self.execution.create_order(Order(product_id=held[0][0].id, type=OrderType.SELL))
                if stash_empty and not self.inventory.bazaar_products():
                    break
            except (ActionError, ContextError, asyncio.TimeoutError) as e:
                self.logger.error(f"Error while selling inventory: {e}")
                success = False
            if self.risk.record_execution_result(success, max_fails):
                break
        self.logger.debug("Finished selling inventory and stash")

    async def coop_failsafe(self, run_id: int) -> bool:
        return await self.change_activity("coop_failsafe", lambda: self.liquidate(run_id))

    async def liquidate(self, run_id: int):
        """Sells everything and closes every order while co-op members are online."""
        if not self.online_members:
            return
        self.logger.warning(f"Co-op members online ({', '.join(self.online_members)}), liquidating...")
        max_fails = self.cfg['failsafe']['max_liquidation_failures']
        while self.is_current(run_id) and not self.risk.is_at_limit():
            try:
                orders = await self.execution.open_manage_orders()
                if not self.is_current(run_id):
                    break
                success = True
                if self.inventory.bazaar_products():
                    success = await self.execution.instant_sell()
                    if not self.is_current(run_id):
                        break
                if orders:
                    order = max(orders, key=lambda o: o.notional)
                    if order.filled:
                        closed = await self.execution.claim_order(order)
                    else:
                        closed = await self.execution.cancel_order(order)
                    success = success and closed
                elif not self.inventory.bazaar_products():
                    break
            except (ActionError, ContextError, asyncio.TimeoutError) as e:
                self.logger.error(f"Error while liquidating: {e}")
                success = False
            if self.risk.record_execution_result(success, max_fails):
                break
        self.logger.debug("Finished liquidating")

    # --- CHAT ---

    async def on_chat(self, message: str):
        event = parse_chat(message)
        if event is None:
            return
        if event.kind == ChatEventKind.DAILY_LIMIT:
            self.risk.on_limit_signal()
            await self.risk.save()
            return
        if self.state != FlipperState.RUNNING:
            return
        if event.kind == ChatEventKind.LAGGY_SERVER:
            await self.game.send_chat("/l")
        elif event.kind == ChatEventKind.MEMBER_JOINED:
            if event.name != self.game.username and event.name not in self.online_members:
                self.online_members.append(event.name)
        elif event.kind == ChatEventKind.MEMBER_LEFT:
            if event.name in self.online_members:
                self.online_members.remove(event.name)

    # --- METRICS ---

    def serialize(self) -> Dict[str, Any]:
        orders = self.order_book.orders
        total = self.inventory.total(orders)
        elapsed = self.clock.elapsed()
        start = self.metrics.starting_total_value
        profit = total - start if start is not None else 0.0
        return {
            "state": self.state.value,
            "activity": self.active_activity,
            "in_timeout": self.in_timeout,
            "elapsed": elapsed,
            "cycles": self.metrics.cycles_completed,
            "total_wait_time": self.metrics.total_wait_time,
            "total_timeout_time": self.metrics.total_timeout_time,
            "purse": self.game.purse(),
            "total": total,
            "profit": profit,
            "profit_per_hour": profit / (elapsed / HOUR) if elapsed > 0 else 0.0,
            "used_daily_limit": self.risk.quota.used_amount,
            "true_limit": self.risk.true_limit(),
            "orders": [o.to_dict() for o in orders],
            "online_members": list(self.online_members),
        }
