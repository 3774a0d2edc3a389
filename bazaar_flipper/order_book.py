# bazaar_flipper/order_book.py
import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from .catalog import ProductCatalog
from .interfaces import ScreenReader
from .models import Order, OrderType, Skipped
from .parser import parse_order_slot, slot_matches_order
from .undercut import estimate_undercut

ORDERS_TITLE = "Bazaar Orders"


class OrderBookSynchronizer:
    """
    Rebuilds the account's open orders from the 'Bazaar Orders' screen.

    After each read every order carries its undercut amount and the list is
    ordered by urgency, so the flip loop only ever looks at the head.
    """
    def __init__(self, screen: ScreenReader, catalog: ProductCatalog, config: dict, logger: logging.Logger):
        self.screen = screen
        self.catalog = catalog
        self.cfg = config
        self.logger = logger
        self.orders: List[Order] = []

    @property
    def relist_ratio(self) -> float:
        return self.cfg['orders']['relist_ratio']

    def in_orders_screen(self) -> bool:
        window = self.screen.current_window()
        return window is not None and ORDERS_TITLE in window.title

    def read_orders(self) -> List[Order]:
        """
        One pass over the visible slots. Outside the orders screen this
        returns [] and leaves the last good list untouched.
        """
        window = self.screen.current_window()
        if window is None or ORDERS_TITLE not in window.title:
            title = window.title if window else None
            self.logger.debug(f"Tried to read orders outside of the orders window: {title}")
            return []

        orders: List[Order] = []
        for slot in window.slots:
            if slot is None:
                continue
            result = parse_order_slot(slot, self.catalog.by_name)
            if result is None:
                continue
            if isinstance(result, Skipped):
                self.logger.warning(f"Skipping order slot: {result.reason}")
                continue
            orders.append(result.value)

        self.orders = self.rank(orders)
        return self.orders

    async def sync(
        self,
        expected_count: Optional[int] = None,
        reopen: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> List[Order]:
        """
        Reads the order list, re-reading while the count disagrees with
        `expected_count` (the screen sometimes renders half-populated).
        """
        orders = self.read_orders()
        retries = self.cfg['system']['sync_retries']
        while expected_count is not None and len(orders) != expected_count and retries > 0:
            self.logger.debug(f"Expected {expected_count} orders, found {len(orders)}")
            retries -= 1
            if reopen is not None:
                await reopen()
            else:
                await asyncio.sleep(0.5)
            orders = self.read_orders()
        return orders

    def rank(self, orders: List[Order]) -> List[Order]:
        for order in orders:
            product = self.catalog.get(order.product_id)
            if product is None or order.amount is None or order.price is None:
                order.undercut_amount = None
                continue
            order.undercut_amount = estimate_undercut(order, orders, product)
        return sorted(orders, key=self._urgency_key)

    def _urgency_key(self, order: Order):
        if order.amount is None or order.price is None or order.undercut_amount is None:
            return (3, 0, 0.0)
        if order.filled:
            # Claim sells before buys, biggest first
            return (0, 0 if order.type == OrderType.SELL else 1, -order.notional)
        if not order.amount:
            return (3, 0, 0.0)
        ratio = order.undercut_amount / order.amount
        return (1 if ratio >= self.relist_ratio else 2, 0, -ratio)

    def find_order_slot(self, order: Order) -> int:
        product = self.catalog.get(order.product_id)
        window = self.screen.current_window()
        if product is None or window is None:
            return -1
        for index, slot in enumerate(window.slots):
            if slot is not None and slot_matches_order(slot, order, product):
                return index
        self.logger.debug(f"Failed to find order {order.to_dict()}")
        return -1

    def get_orders(self, order_type: Optional[OrderType] = None) -> List[Order]:
        if order_type is None:
            return list(self.orders)
        return [o for o in self.orders if o.type == order_type]

    def remaining_space(self, order_type: Optional[OrderType] = None) -> int:
        """Free order slots overall, or for one side (bounded by the overall cap)."""
        limits = self.cfg['orders']
        overall = limits['max_orders'] - len(self.orders)
        if order_type is None:
            return overall
        side_cap = limits['max_buy_orders'] if order_type == OrderType.BUY else limits['max_sell_orders']
        return min(overall, side_cap - len(self.get_orders(order_type)))
