from typing import Iterable, List, Tuple
import logging

from .catalog import ProductCatalog
from .interfaces import ScreenReader
from .models import Order, OrderType, Product


class InventoryEngine:
    INVENTORY_SLOTS = 9 * 4

    def __init__(self, screen: ScreenReader, catalog: ProductCatalog, logger: logging.Logger):
        self.screen = screen
        self.catalog = catalog
        self.logger = logger

    def bazaar_products(self) -> List[Tuple[Product, int]]:
        """Bazaar-tradable stacks in the inventory, merged per product, in slot order."""
        totals: dict = {}
        for item in self.screen.inventory_items():
            if item.product_id is None:
                continue
            product = self.catalog.get(item.product_id)
            if product is None:
                continue
            if product.id in totals:
                totals[product.id] = (product, totals[product.id][1] + item.count)
            else:
                totals[product.id] = (product, item.count)
        return list(totals.values())

    def is_full(self) -> bool:
        return self.screen.empty_inventory_slots() == 0

    def is_empty(self) -> bool:
        return self.screen.empty_inventory_slots() >= self.INVENTORY_SLOTS

    def fits(self, order: Order) -> bool:
        product = self.catalog.get(order.product_id)
        if product is None:
            raise ValueError(f"Product not found for {order.product_id}")
        if order.amount is None:
            raise ValueError(f"Order amount undefined for {order.to_dict()}")
        return self.screen.empty_inventory_slots() * product.max_stack - order.amount >= 0

    # --- VALUATION ---

    def order_value(self, order: Order) -> float:
        if not order.amount:
            return 0.0
        if order.type == OrderType.BUY:
            return order.amount * (order.price or 0.0)
        product = self.catalog.get(order.product_id)
        return order.amount * (product.instant_sell_price if product else 0.0)

    def orders_worth(self, orders: Iterable[Order]) -> float:
        return sum(self.order_value(o) for o in orders)

    def inventory_worth(self) -> float:
        return sum(product.instant_sell_price * amount for product, amount in self.bazaar_products())

    def spent(self, orders: Iterable[Order]) -> float:
        return self.orders_worth(orders) + self.inventory_worth()

    def total(self, orders: Iterable[Order]) -> float:
        """Net worth: purse plus everything tied up in orders and inventory."""
        return self.screen.purse() + self.spent(orders)
