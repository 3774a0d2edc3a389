# bazaar_flipper/execution.py
import asyncio
import logging
import math
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, TypeVar

from .catalog import ProductCatalog
from .config import save_config
from .errors import ActionError, ContextError
from .interfaces import GameClient
from .inventory import InventoryEngine
from .logger import AsyncAuditLogger
from .market_engine import PRICE_STEP
from .models import Order, OrderType, Product, Window
from .order_book import ORDERS_TITLE, OrderBookSynchronizer
from .parser import (
    ConfirmationKind,
    is_stash_empty,
    parse_confirmation,
    parse_flip_offer,
    parse_max_amount,
    parse_unit_price,
)
from .risk_engine import RiskEngine

T = TypeVar("T")

# Action failures that abandon the current action but never the cycle
ACTION_FAILURES = (ActionError, ContextError, asyncio.TimeoutError)


class ExecutionService:
    """
    Drives the bazaar screens to create, cancel, claim and flip orders.

    Every spend-increasing action is refused once the daily limit is used up,
    and counts its value against the limit (persisted right away) before the
    final confirming click. Individual clicks are retried a few times; an
    action that still fails is logged and reported as False.
    """
    DEFAULT_MAX_AMOUNT = 256
    MAX_SLOT_CLICKS = 20

    def __init__(
        self,
        game: GameClient,
        catalog: ProductCatalog,
        order_book: OrderBookSynchronizer,
        inventory: InventoryEngine,
        risk: RiskEngine,
        config: dict,
        logger: logging.Logger,
        audit_logger: Optional[AsyncAuditLogger] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.game = game
        self.catalog = catalog
        self.order_book = order_book
        self.inventory = inventory
        self.risk = risk
        self.cfg = config
        self.logger = logger
        self.audit_logger = audit_logger
        self._sleep = sleep
        # Order count we believe is on screen; guards against half-rendered reads
        self.expected_orders: Optional[int] = None

    # --- PRIMITIVES ---

    async def _retry(self, label: str, action: Callable[[], Awaitable[T]]) -> T:
        attempts = self.cfg['system']['action_retries']
        delay = self.cfg['system']['action_retry_delay_seconds']
        for attempt in range(1, attempts + 1):
            try:
                return await action()
            except (ActionError, asyncio.TimeoutError) as e:
                if attempt == attempts:
                    raise ActionError(f"{label} failed after {attempts} attempts: {e}") from e
                self.logger.debug(f"{label} failed (attempt {attempt}/{attempts}): {e}")
                await self._sleep(delay)

    async def _click_item(self, name: str, button: int = 0, sign_text: Optional[str] = None):
        await self._retry(f"Click '{name}'", lambda: self.game.click_item(name, button, sign_text))

    async def _click_slot(self, slot: int, button: int = 0):
        await self._retry(f"Click slot {slot}", lambda: self.game.click_slot(slot, button))

    def _window(self) -> Window:
        window = self.game.current_window()
        if window is None:
            raise ContextError("No window open")
        return window

    async def _audit(self, action: str, product_id: str, order_type: Optional[OrderType], amount, price):
        if self.audit_logger is None:
            return
        await self.audit_logger.log_action([
            datetime.now(timezone.utc).isoformat(),
            action,
            product_id,
            order_type.value if order_type else "",
            amount if amount is not None else "",
            f"{price:.1f}" if price is not None else "",
            f"{self.risk.quota.used_amount:.0f}",
        ])

    async def _count_usage(self, value: float):
        self.risk.record_usage(value)
        await self.risk.save()

    # --- SCREENS ---

    async def open_bazaar(self, search: Optional[str] = None):
        self.logger.debug(f"Opening Bazaar{f' for {search!r}' if search else ''}")
        if self.game.current_window() is not None:
            await self.game.close_window()
            await self._sleep(0.4)
        await self.game.send_chat(f"/bz {search}" if search else "/bz")
        await self.game.wait_for_event("windowOpen")
        await self._sleep(0.5)

    async def _open_orders_screen(self):
        await self.open_bazaar()
        for _ in range(5):
            if ORDERS_TITLE in self._window().title:
                return
            await self._click_item("Manage Orders")
        raise ContextError(f"Could not reach '{ORDERS_TITLE}' (in window {self._window().title})")

    async def open_manage_orders(self) -> List[Order]:
        """Opens the orders screen and returns the freshly synchronized order list."""
        await self._open_orders_screen()
        orders = await self.order_book.sync(self.expected_orders or None, reopen=self._open_orders_screen)
        self.expected_orders = len(orders)
        return orders

    # --- ORDERS ---

    async def create_order(self, order: Order) -> bool:
        product = self.catalog.get(order.product_id)
        if product is None:
            self.logger.error(f"Cannot create order for unknown product {order.product_id}")
            return False

        backoff = self.cfg['system']['cooldown_backoff_seconds']
        for _ in range(self.cfg['system']['max_cooldown_retries'] + 1):
            if self.risk.is_at_limit():
                self.logger.debug(f"Not creating {order.to_dict()}: daily limit reached")
                return False
            self.logger.debug(f"Creating order {order.to_dict()}")
            try:
                outcome = await self._place_order(order, product)
            except ACTION_FAILURES as e:
                self.logger.error(f"Failed to create order {order.to_dict()}: {e}")
                return False
            if outcome != ConfirmationKind.COOLDOWN:
                return outcome == ConfirmationKind.READY
            self.logger.info(f"Placing orders is on cooldown, trying again in {backoff:.0f}s...")
            await self._sleep(backoff)
        self.logger.error(f"Gave up creating {order.to_dict()}: still on cooldown")
        return False

    async def _place_order(self, order: Order, product: Product) -> ConfirmationKind:
        is_buy = order.type == OrderType.BUY
        await self.open_bazaar(product.name)
        await self._click_item(product.name)
        await self._click_item("Create Buy Order" if is_buy else "Create Sell Offer")

        if is_buy:
            custom = self._window().find("Custom Amount")
            max_amount = parse_max_amount(custom.lore) if custom else None
            if max_amount is None:
                self.logger.debug(f"Failed to find maximum amount for {product.id}, using {self.DEFAULT_MAX_AMOUNT}")
                max_amount = self.DEFAULT_MAX_AMOUNT
            amount = math.floor(min(order.amount or 1, max_amount))
            await self._click_item("Custom Amount", sign_text=str(amount))
            await self.game.wait_for_event("windowOpen")
            await self._sleep(0.25)

        top_button = "Top Order +0.1" if is_buy else "Best Offer -0.1"
        top = self._window().find(top_button)
        top_price = parse_unit_price(top.lore) if top else None
        if top_price is None:
            self.logger.warning(f"Failed to read top price for {product.id}")

        max_price = self.cfg['filter']['max_price']
        if top_price is not None and top_price > max_price:
            await self._click_item("Custom Price", sign_text=str(max_price))
        else:
            await self._click_item(top_button)

        confirm_name = "Buy Order" if is_buy else "Sell Offer"
        window = self._window()
        confirm = window.find(confirm_name) or window.find(f"Confirm {confirm_name}")
        if confirm is None:
            raise ActionError(f"Failed to find '{confirm_name}' in {window.title}")

        confirmation = parse_confirmation(confirm.lore)
        if confirmation.kind == ConfirmationKind.COOLDOWN:
            return confirmation.kind
        if confirmation.kind == ConfirmationKind.TOO_MANY_ORDERS:
            await self._shrink_order_slots()
            return confirmation.kind
        if confirmation.kind == ConfirmationKind.DAILY_LIMIT:
            self.risk.on_limit_signal()
            await self.risk.save()
            return confirmation.kind

        price = confirmation.price
        if price is None:
            price = (product.buy_price if is_buy else product.sell_price) or 1
            self.logger.debug(f"Failed to find price for {order.to_dict()}, assuming {price}")
        amount = confirmation.amount
        if amount is None:
            amount = order.amount or 1
            self.logger.debug(f"Failed to find amount for {order.to_dict()}, assuming {amount}")

        await self._count_usage(amount * price)
        self.expected_orders = (self.expected_orders or 0) + 1
        await self._click_item(confirm.name)
        await self.game.wait_for_event("windowClose")
        await self._audit("create", product.id, order.type, amount, price)
        return ConfirmationKind.READY

    async def _shrink_order_slots(self):
        count = len(self.order_book.orders)
        self.logger.info(f"Order limit reached with {count} orders")
        if not count:
            return
        self.cfg['orders']['max_orders'] = count
        try:
            await save_config(self.cfg)
        except OSError as e:
            self.logger.error(f"Failed to save config: {e}")

    def _order_gone(self, order: Order, slot: int) -> bool:
        before = len(self.order_book.orders)
        orders = self.order_book.read_orders()
        return len(orders) != before or self.order_book.find_order_slot(order) != slot

    async def cancel_order(self, order: Order) -> bool:
        self.logger.debug(f"Cancelling order {order.to_dict()}")
        if self.catalog.get(order.product_id) is None:
            return False
        try:
            await self.open_manage_orders()
            slot = self.order_book.find_order_slot(order)
            if slot == -1:
                return False

            # Clicking first claims whatever already filled; the options menu opens once nothing is left
            for _ in range(self.MAX_SLOT_CLICKS):
                if order.type == OrderType.BUY and self.inventory.is_full():
                    return False
                await self._click_slot(slot)
                window = self.game.current_window()
                if window is not None and "Order options" in window.title:
                    await self._click_item("Cancel Order")
                    if self.expected_orders:
                        self.expected_orders -= 1
                    await self._audit("cancel", order.product_id, order.type, order.amount, order.price)
                    return True
                if self._order_gone(order, slot):
                    return False
            return False
        except ACTION_FAILURES as e:
            self.logger.error(f"Failed to cancel order {order.to_dict()}: {e}")
            return False

    async def claim_order(self, order: Order) -> bool:
        self.logger.debug(f"Claiming order {order.to_dict()}")
        if self.catalog.get(order.product_id) is None:
            return False
        try:
            await self.open_manage_orders()
            slot = self.order_book.find_order_slot(order)
            if slot == -1:
                return False

            claimed = False
            for _ in range(self.MAX_SLOT_CLICKS):
                # Sell offers pay out coins, buy orders need room for the items
                if order.type == OrderType.BUY and self.inventory.is_full():
                    break
                await self._click_slot(slot)
                if self._order_gone(order, slot):
                    claimed = True
                    break
            if claimed:
                if self.expected_orders:
                    self.expected_orders -= 1
                await self._audit("claim", order.product_id, order.type, order.amount, order.price)
            return claimed
        except ACTION_FAILURES as e:
            self.logger.error(f"Failed to claim order {order.to_dict()}: {e}")
            return False

    async def flip_order(self, order: Order) -> bool:
        """Turns a filled buy order straight into a sell offer just under the best offer."""
        self.logger.debug(f"Flipping order {order.to_dict()}")
        product = self.catalog.get(order.product_id)
        if product is None:
            return False
        if self.risk.is_at_limit():
            return False
        try:
            await self.open_manage_orders()
            slot = self.order_book.find_order_slot(order)
            if slot == -1:
                return False

            await self._click_slot(slot, button=1)
            item = self._window().find("Flip Order")
            amount, best_offer = parse_flip_offer(item.lore if item else "")
            if amount is None:
                amount = order.amount or 1
                self.logger.debug(f"Failed to find flip amount for {order.to_dict()}")
            price = round(best_offer - PRICE_STEP, 1) if best_offer is not None else product.sell_price
            if best_offer is None:
                self.logger.debug(f"Failed to find best offer for {order.to_dict()}, using {price}")

            await self._count_usage(amount * price)
            await self._click_item("Flip Order", sign_text=str(price))
            await self._audit("flip", product.id, OrderType.SELL, amount, price)
            return True
        except ACTION_FAILURES as e:
            self.logger.error(f"Failed to flip order {order.to_dict()}: {e}")
            return False

    # --- INSTANT ---

    async def instant_buy(self, product: Product, amount: int) -> bool:
        self.logger.debug(f"Instant-buying {amount}x {product.id}")
        if self.risk.is_at_limit():
            return False
        try:
            await self.open_bazaar(product.name)
            await self._click_item(product.name)
            await self._click_item("Buy Instantly")
            custom = self._window().find("Custom Amount")
            max_amount = (parse_max_amount(custom.lore) if custom else None) or self.DEFAULT_MAX_AMOUNT
            amount = math.floor(min(amount, max_amount))
            await self._click_item("Custom Amount", sign_text=str(amount))
            await self.game.wait_for_event("windowOpen")
            await self._sleep(0.25)
            await self._count_usage(amount * product.instant_buy_price)
            await self._click_item("Custom Amount")
            await self._audit("instant-buy", product.id, OrderType.BUY, amount, product.instant_buy_price)
            return True
        except ACTION_FAILURES as e:
            self.logger.error(f"Error while instant-buying {amount}x {product.id}: {e}")
            return False

    async def instant_sell(self, product: Optional[Product] = None) -> bool:
        """Sells one product, or the whole inventory when `product` is None."""
        label = product.id if product else "INVENTORY"
        self.logger.debug(f"Instant-selling {label}")
        if self.risk.is_at_limit():
            return False
        held = self.inventory.bazaar_products()
        try:
            if product is not None:
                amount = sum(a for p, a in held if p.id == product.id)
                await self.open_bazaar(product.name)
                await self._count_usage(amount * product.instant_sell_price)
                await self._click_item(product.name)
                await self._click_item("Sell Instantly")
            else:
                await self.open_bazaar()
                await self._count_usage(sum(p.instant_sell_price * a for p, a in held))
                await self._click_item("Sell Inventory Now")
                await self._click_item("Selling whole inventory")
            await self._audit("instant-sell", label, OrderType.SELL, None, None)
            return True
        except ACTION_FAILURES as e:
            self.logger.error(f"Error while instant-selling {label}: {e}")
            return False

    async def pickup_stash(self) -> bool:
        """Pulls items from the stash. Returns True once the stash is empty."""
        if self.game.current_window() is not None:
            await self.game.close_window()
        await self.game.send_chat("/pickupstash")
        message = await self.game.wait_for_message([r"stash"])
        return is_stash_empty(message)
