from __future__ import annotations

import unittest

from bazaar_flipper.execution import ExecutionService
from bazaar_flipper.inventory import InventoryEngine
from bazaar_flipper.models import InventoryItem, Order, OrderType, ScreenSlot, Window
from bazaar_flipper.order_book import ORDERS_TITLE, OrderBookSynchronizer
from bazaar_flipper.risk_engine import RiskEngine
from tests.helpers import FakeGame, SleepRecorder, build_catalog, build_product, make_config, order_slot, quiet_logger


class AuditRecorder:
    def __init__(self):
        self.rows = []

    async def log_action(self, row) -> None:
        self.rows.append(row)


def _confirm(lore: str) -> Window:
    return Window(title="Confirm Buy Order", slots=[ScreenSlot("Buy Order", lore)])


READY = "Price per unit: 10.1 coins\nOrder: 64x Enchanted Sugar"


class ExecutionTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.config = make_config()
        self.product = build_product("ENCHANTED_SUGAR", name="Enchanted Sugar", buy_price=10.1, sell_price=12.0)
        self.catalog = build_catalog(self.product)
        self.game = FakeGame()
        self.logger = quiet_logger()
        self.order_book = OrderBookSynchronizer(self.game, self.catalog, self.config, self.logger)
        self.inventory = InventoryEngine(self.game, self.catalog, self.logger)
        self.risk = RiskEngine(self.config, self.logger)
        self.audit = AuditRecorder()
        self.sleep = SleepRecorder()
        self.execution = ExecutionService(
            self.game, self.catalog, self.order_book, self.inventory, self.risk,
            self.config, self.logger, self.audit, sleep=self.sleep,
        )

        self.orders_window = Window(title=ORDERS_TITLE, slots=[ScreenSlot(" ")])
        self.game.bazaar_window = Window(
            title="Bazaar ➜ Farming",
            slots=[ScreenSlot("Enchanted Sugar"), ScreenSlot("Manage Orders"), ScreenSlot("Sell Inventory Now")],
        )
        self.product_window = Window(
            title="Farming ➜ Enchanted Sugar",
            slots=[ScreenSlot("Create Buy Order"), ScreenSlot("Create Sell Offer"), ScreenSlot("Buy Instantly")],
        )
        self.game.screens.update({
            "Enchanted Sugar": self.product_window,
            "Manage Orders": self.orders_window,
            "Create Buy Order": Window("How many?", [ScreenSlot("Custom Amount", "Buy up to 71,680x.")]),
            "Custom Amount": Window(
                "How much do you want to pay?",
                [ScreenSlot("Top Order +0.1", "Unit price: 10.1 coins"), ScreenSlot("Custom Price")],
            ),
            "Top Order +0.1": _confirm(READY),
            "Custom Price": _confirm(READY),
            "Buy Order": None,
        })


class CreateOrderTests(ExecutionTestCase):
    async def test_buy_order_counts_usage_and_expected_orders(self) -> None:
        created = await self.execution.create_order(Order("ENCHANTED_SUGAR", OrderType.BUY, amount=64, price=10.1))
        self.assertTrue(created)
        self.assertIn(("Custom Amount", "64"), self.game.clicks)
        self.assertIn(("Top Order +0.1", None), self.game.clicks)
        self.assertEqual(self.game.chat, ["/bz Enchanted Sugar"])
        self.assertAlmostEqual(self.risk.quota.used_amount, 64 * 10.1)
        self.assertEqual(self.execution.expected_orders, 1)
        self.assertEqual(self.audit.rows[0][1:5], ["create", "ENCHANTED_SUGAR", "buy", 64])

    async def test_amount_is_capped_by_the_screen(self) -> None:
        self.game.screens["Create Buy Order"] = Window("How many?", [ScreenSlot("Custom Amount", "Buy up to 10x.")])
        await self.execution.create_order(Order("ENCHANTED_SUGAR", OrderType.BUY, amount=64, price=10.1))
        self.assertIn(("Custom Amount", "10"), self.game.clicks)

    async def test_top_price_above_max_uses_custom_price(self) -> None:
        self.config["filter"]["max_price"] = 5
        await self.execution.create_order(Order("ENCHANTED_SUGAR", OrderType.BUY, amount=64, price=10.1))
        self.assertIn(("Custom Price", "5"), self.game.clicks)

    async def test_cooldown_is_retried_after_backoff(self) -> None:
        confirms = [_confirm("Placing orders is on cooldown!"), _confirm(READY)]
        self.game.screens["Top Order +0.1"] = lambda: confirms.pop(0)
        created = await self.execution.create_order(Order("ENCHANTED_SUGAR", OrderType.BUY, amount=64, price=10.1))
        self.assertTrue(created)
        self.assertIn(60.0, self.sleep.calls)
        self.assertAlmostEqual(self.risk.quota.used_amount, 64 * 10.1)

    async def test_too_many_orders_shrinks_the_slot_limit(self) -> None:
        self.game.screens["Top Order +0.1"] = _confirm("Too many orders!")
        self.order_book.orders = [Order("ENCHANTED_SUGAR", OrderType.SELL, 1, 1.0) for _ in range(3)]
        created = await self.execution.create_order(Order("ENCHANTED_SUGAR", OrderType.BUY, amount=64, price=10.1))
        self.assertFalse(created)
        self.assertEqual(self.config["orders"]["max_orders"], 3)
        self.assertEqual(self.risk.quota.used_amount, 0)

    async def test_daily_limit_confirmation_clamps_usage(self) -> None:
        self.game.screens["Top Order +0.1"] = _confirm("You reached the daily limit!")
        created = await self.execution.create_order(Order("ENCHANTED_SUGAR", OrderType.BUY, amount=64, price=10.1))
        self.assertFalse(created)
        self.assertTrue(self.risk.is_at_limit())

    async def test_nothing_is_attempted_at_the_limit(self) -> None:
        self.risk.quota.used_amount = RiskEngine.DAILY_LIMIT
        created = await self.execution.create_order(Order("ENCHANTED_SUGAR", OrderType.BUY, amount=64, price=10.1))
        self.assertFalse(created)
        self.assertEqual(self.game.chat, [])

    async def test_flaky_clicks_are_retried(self) -> None:
        self.game.failing_clicks = 2
        created = await self.execution.create_order(Order("ENCHANTED_SUGAR", OrderType.BUY, amount=64, price=10.1))
        self.assertTrue(created)

    async def test_missing_button_abandons_the_action(self) -> None:
        self.product_window.slots = [ScreenSlot("Create Sell Offer")]
        created = await self.execution.create_order(Order("ENCHANTED_SUGAR", OrderType.BUY, amount=64, price=10.1))
        self.assertFalse(created)
        self.assertEqual(self.risk.quota.used_amount, 0)


class OrderManagementTests(ExecutionTestCase):
    def _show_order(self, order: Order) -> None:
        self.orders_window.slots = [
            ScreenSlot(" "),
            order_slot(order.type, "Enchanted Sugar", order.amount, order.price, filled=order.filled),
        ]

    async def test_cancel_through_order_options(self) -> None:
        order = Order("ENCHANTED_SUGAR", OrderType.BUY, amount=64, price=10.1)
        self._show_order(order)
        options = Window("Order options", [ScreenSlot("Cancel Order")])

        def open_options(button: int) -> None:
            self.game.window = options

        self.game.slot_handlers[1] = open_options
        self.game.screens["Cancel Order"] = self.orders_window
        self.assertTrue(await self.execution.cancel_order(order))
        self.assertIn(("Cancel Order", None), self.game.clicks)
        self.assertEqual(self.execution.expected_orders, 0)

    async def test_claim_until_the_order_disappears(self) -> None:
        order = Order("ENCHANTED_SUGAR", OrderType.SELL, amount=64, price=12.0, filled=True)
        self._show_order(order)

        def claim(button: int) -> None:
            self.orders_window.slots = [ScreenSlot(" ")]

        self.game.slot_handlers[1] = claim
        self.assertTrue(await self.execution.claim_order(order))
        self.assertEqual(self.game.slot_clicks, [(1, 0)])
        self.assertEqual(self.execution.expected_orders, 0)

    async def test_buy_claim_stops_on_full_inventory(self) -> None:
        order = Order("ENCHANTED_SUGAR", OrderType.BUY, amount=64, price=10.1, filled=True)
        self._show_order(order)
        self.game.empty_slots = 0
        self.assertFalse(await self.execution.claim_order(order))
        self.assertEqual(self.game.slot_clicks, [])

    async def test_missing_order_is_not_touched(self) -> None:
        self._show_order(Order("ENCHANTED_SUGAR", OrderType.BUY, amount=1, price=1.0))
        self.assertFalse(await self.execution.cancel_order(Order("ENCHANTED_SUGAR", OrderType.BUY, amount=64, price=10.1)))
        self.assertEqual(self.game.slot_clicks, [])

    async def test_flip_undercuts_the_best_offer(self) -> None:
        order = Order("ENCHANTED_SUGAR", OrderType.BUY, amount=64, price=10.1, filled=True)
        self._show_order(order)
        flip = Window("Order options", [ScreenSlot(
            "Flip Order", "Create a new offer for 64x Enchanted Sugar\n- 12.0 coins each | 1,000x from 3 offers"
        )])

        def open_flip(button: int) -> None:
            self.game.window = flip

        self.game.slot_handlers[1] = open_flip
        self.game.screens["Flip Order"] = None
        self.assertTrue(await self.execution.flip_order(order))
        self.assertEqual(self.game.slot_clicks, [(1, 1)])
        self.assertIn(("Flip Order", "11.9"), self.game.clicks)
        self.assertAlmostEqual(self.risk.quota.used_amount, 64 * 11.9)


class InstantActionTests(ExecutionTestCase):
    async def test_instant_sell_whole_inventory(self) -> None:
        self.game.items = [InventoryItem("ENCHANTED_SUGAR", 100)]
        self.game.screens["Sell Inventory Now"] = Window("Are you sure?", [ScreenSlot("Selling whole inventory")])
        self.game.screens["Selling whole inventory"] = None
        self.assertTrue(await self.execution.instant_sell())
        self.assertEqual(self.game.chat, ["/bz"])
        self.assertAlmostEqual(self.risk.quota.used_amount, 100 * self.product.instant_sell_price)

    async def test_instant_buy_caps_amount(self) -> None:
        confirm = Window("Confirm", [ScreenSlot("Custom Amount", "Buy up to 2,240x")])
        self.game.screens["Buy Instantly"] = confirm
        self.game.screens["Custom Amount"] = confirm
        self.assertTrue(await self.execution.instant_buy(self.product, 5000))
        self.assertIn(("Custom Amount", "2240"), self.game.clicks)
        self.assertAlmostEqual(self.risk.quota.used_amount, 2240 * self.product.instant_buy_price)

    async def test_pickup_stash_reports_empty_stash(self) -> None:
        self.game.messages = ["You picked up all items from your item stash!"]
        self.assertTrue(await self.execution.pickup_stash())
        self.assertEqual(self.game.chat, ["/pickupstash"])


if __name__ == "__main__":
    unittest.main()
