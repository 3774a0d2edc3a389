from __future__ import annotations

import unittest

from bazaar_flipper.catalog import ProductCatalog
from bazaar_flipper.inventory import InventoryEngine
from bazaar_flipper.models import InventoryItem, Order, OrderType
from tests.helpers import FakeGame, StaticProvider, build_catalog, build_product, quiet_logger


class InventoryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.sugar = build_product("SUGAR", instant_sell_price=10.0, max_stack=64)
        self.cane = build_product("CANE", instant_sell_price=2.0)
        self.game = FakeGame()
        self.inventory = InventoryEngine(self.game, build_catalog(self.sugar, self.cane), quiet_logger())

    def test_stacks_are_merged_per_product(self) -> None:
        self.game.items = [
            InventoryItem("SUGAR", 64),
            InventoryItem(None, 1, name="Skyblock Menu"),
            InventoryItem("CANE", 10),
            InventoryItem("SUGAR", 36),
            InventoryItem("NOT_ON_BAZAAR", 1),
        ]
        held = [(p.id, amount) for p, amount in self.inventory.bazaar_products()]
        self.assertEqual(held, [("SUGAR", 100), ("CANE", 10)])
        self.assertEqual(self.inventory.inventory_worth(), 100 * 10.0 + 10 * 2.0)

    def test_fits_uses_stack_size(self) -> None:
        self.game.empty_slots = 2
        self.assertTrue(self.inventory.fits(Order("SUGAR", OrderType.BUY, amount=128, price=1.0)))
        self.assertFalse(self.inventory.fits(Order("SUGAR", OrderType.BUY, amount=129, price=1.0)))
        with self.assertRaises(ValueError):
            self.inventory.fits(Order("SUGAR", OrderType.BUY))

    def test_full_and_empty(self) -> None:
        self.game.empty_slots = 0
        self.assertTrue(self.inventory.is_full())
        self.game.empty_slots = 36
        self.assertTrue(self.inventory.is_empty())

    def test_total_counts_purse_orders_and_inventory(self) -> None:
        self.game.purse_value = 1_000.0
        self.game.items = [InventoryItem("CANE", 5)]
        orders = [
            Order("SUGAR", OrderType.BUY, amount=10, price=3.0),
            Order("SUGAR", OrderType.SELL, amount=4, price=50.0),
        ]
        # buy orders at their price, sell offers at the instant-sell price
        self.assertEqual(self.inventory.orders_worth(orders), 30.0 + 40.0)
        self.assertEqual(self.inventory.spent(orders), 70.0 + 10.0)
        self.assertEqual(self.inventory.total(orders), 1_080.0)


class CatalogTests(unittest.IsolatedAsyncioTestCase):
    async def test_failed_refresh_keeps_previous_snapshot(self) -> None:
        provider = StaticProvider([build_product("SUGAR", name="Sugar")])
        catalog = ProductCatalog(provider, quiet_logger())
        self.assertTrue(await catalog.refresh())
        self.assertEqual(catalog.by_name("Sugar").id, "SUGAR")

        provider.fail = True
        self.assertFalse(await catalog.refresh())
        self.assertIsNotNone(catalog.get("SUGAR"))


if __name__ == "__main__":
    unittest.main()
