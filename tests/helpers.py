from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Union

from bazaar_flipper.catalog import ProductCatalog
from bazaar_flipper.config import _deep_merge, load_config
from bazaar_flipper.errors import ActionError
from bazaar_flipper.models import InventoryItem, Order, OrderType, PriceRecord, Product, ScreenSlot, Window


def make_config(**sections):
    """Defaults with per-section overrides, e.g. make_config(orders={"max_orders": 3})."""
    return _deep_merge(load_config(None), sections)


def quiet_logger(name: str = "bazaar_flipper.tests") -> logging.Logger:
    logger = logging.getLogger(name)
    logger.addHandler(logging.NullHandler())
    logger.propagate = False
    return logger


async def no_sleep(seconds: float) -> None:
    await asyncio.sleep(0)


class SleepRecorder:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def build_product(
    product_id: str = "ENCHANTED_SUGAR",
    name: Optional[str] = None,
    buy_price: float = 100_000.0,
    sell_price: float = 120_000.0,
    movement: float = 200.0,
    max_stack: int = 64,
    instant_sell_price: Optional[float] = None,
    buy_orders: Optional[List[Order]] = None,
    sell_orders: Optional[List[Order]] = None,
) -> Product:
    return Product(
        id=product_id,
        name=name or product_id.replace("_", " ").title(),
        max_stack=max_stack,
        buy_price=buy_price,
        sell_price=sell_price,
        instant_buy_price=sell_price,
        instant_sell_price=buy_price if instant_sell_price is None else instant_sell_price,
        buy_orders=buy_orders or [],
        sell_orders=sell_orders or [],
        hourly_buy_movement=movement,
        hourly_sell_movement=movement,
        margin=sell_price * 0.99 - buy_price,
    )


def depth(order_type: OrderType, product_id: str, *levels) -> List[Order]:
    """depth(BUY, "X", (amount, price), ...) -> market depth orders."""
    return [Order(product_id=product_id, type=order_type, amount=a, price=p) for a, p in levels]


def price_records(buy_prices: List[float], sell_prices: List[float], start: float = 0.0, step: float = 600.0):
    return [
        PriceRecord(time=start + i * step, buy_price=b, sell_price=s)
        for i, (b, s) in enumerate(zip(buy_prices, sell_prices))
    ]


def order_slot(order_type: OrderType, product_name: str, amount: int, price: float, filled: bool = False) -> ScreenSlot:
    is_buy = order_type == OrderType.BUY
    lines = [
        f"§7{'Order' if is_buy else 'Offer'} amount: §a{amount:,}§7x",
        f"§7Price per unit: §6{price:,.1f} coins",
    ]
    if filled:
        lines.append(f"§7Filled: §a{amount:,}§7/{amount:,} §a§l100%!")
    return ScreenSlot(name=f"§{'a' if is_buy else '6'}{'BUY' if is_buy else 'SELL'} {product_name}", lore="\n".join(lines))


class StaticProvider:
    def __init__(self, products: List[Product], fail: bool = False):
        self.products = products
        self.fail = fail
        self.calls = 0

    async def get_products(self) -> List[Product]:
        self.calls += 1
        if self.fail:
            raise ConnectionError("solver service unavailable")
        return list(self.products)


def build_catalog(*products: Product) -> ProductCatalog:
    catalog = ProductCatalog(StaticProvider(list(products)), quiet_logger())
    catalog.replace(list(products))
    return catalog


ScreenTarget = Union[Window, None, Callable[[], Optional[Window]]]


class FakeGame:
    """
    Scripted game client. `screens` maps an item name to the window shown
    after clicking it (or a callable producing it); `slot_handlers` map a slot
    index to a callable(button). Clicking an item that is not on screen
    raises ActionError like a real miss would.
    """
    def __init__(self):
        self.online_status = "online"
        self.username = "Flipper"
        self.location: Optional[str] = "island"
        self.window: Optional[Window] = None
        self.bazaar_window: Optional[Window] = None
        self.screens: Dict[str, ScreenTarget] = {}
        self.slot_handlers: Dict[int, Callable[[int], None]] = {}
        self.items: List[InventoryItem] = []
        self.empty_slots = 36
        self.purse_value = 0.0
        self.messages: List[str] = []
        self.chat: List[str] = []
        self.clicks: List[tuple] = []
        self.slot_clicks: List[tuple] = []
        self.failing_clicks = 0
        self.connects = 0
        self.disconnects = 0
        self.listeners = []
        # when set, location lookups block until the event fires
        self.location_gate: Optional[asyncio.Event] = None

    # --- ScreenReader ---

    def current_window(self) -> Optional[Window]:
        return self.window

    def inventory_items(self) -> List[InventoryItem]:
        return list(self.items)

    def empty_inventory_slots(self) -> int:
        return self.empty_slots

    def purse(self) -> float:
        return self.purse_value

    # --- GameClient ---

    async def connect(self):
        self.connects += 1
        self.online_status = "online"

    async def disconnect(self):
        self.disconnects += 1
        self.online_status = "offline"

    async def send_chat(self, message: str):
        self.chat.append(message)
        if message.startswith("/bz"):
            self.window = self.bazaar_window

    async def click_item(self, name: str, button: int = 0, sign_text: Optional[str] = None):
        if self.failing_clicks > 0:
            self.failing_clicks -= 1
            raise ActionError(f"click on {name} did not land")
        if self.window is None or self.window.find(name) is None:
            raise ActionError(f"{name} not found")
        self.clicks.append((name, sign_text))
        if name in self.screens:
            target = self.screens[name]
            self.window = target() if callable(target) else target

    async def click_slot(self, slot: int, button: int = 0):
        self.slot_clicks.append((slot, button))
        handler = self.slot_handlers.get(slot)
        if handler is not None:
            handler(button)

    async def close_window(self):
        self.window = None

    async def wait_for_event(self, event: str, timeout: float = 10.0):
        return None

    async def wait_for_message(self, patterns, timeout: float = 10.0) -> str:
        return self.messages.pop(0)

    async def update_location(self) -> Optional[str]:
        if self.location_gate is not None:
            await self.location_gate.wait()
        return self.location

    def add_message_listener(self, callback):
        self.listeners.append(callback)
