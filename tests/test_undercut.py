from __future__ import annotations

import unittest

from bazaar_flipper.models import Order, OrderType
from bazaar_flipper.undercut import estimate_undercut
from tests.helpers import build_product, depth


class UndercutTests(unittest.TestCase):
    def test_better_priced_depth_counts_fully(self) -> None:
        order = Order("SUGAR", OrderType.BUY, amount=100, price=10.0)
        product = build_product(
            "SUGAR",
            buy_orders=depth(OrderType.BUY, "SUGAR", (70, 10.5), (50, 10.2), (100, 10.0), (999, 9.0)),
        )
        # The 100 at 10.0 is this order itself
        self.assertEqual(estimate_undercut(order, [order], product), 120)

    def test_equal_price_depth_without_own_orders(self) -> None:
        order = Order("SUGAR", OrderType.BUY, amount=100, price=10.0)
        product = build_product("SUGAR", buy_orders=depth(OrderType.BUY, "SUGAR", (120, 10.0)))
        self.assertEqual(estimate_undercut(order, [], product), 120)

    def test_sell_side_uses_the_same_rule(self) -> None:
        order = Order("SUGAR", OrderType.SELL, amount=100, price=10.0)
        product = build_product(
            "SUGAR",
            sell_orders=depth(OrderType.SELL, "SUGAR", (30, 9.5), (100, 10.0), (500, 10.5)),
        )
        self.assertEqual(estimate_undercut(order, [order], product), 30)

    def test_own_quantity_never_makes_it_negative(self) -> None:
        order = Order("SUGAR", OrderType.BUY, amount=200, price=10.0)
        other = Order("SUGAR", OrderType.BUY, amount=300, price=10.0)
        product = build_product("SUGAR", buy_orders=depth(OrderType.BUY, "SUGAR", (50, 10.0)))
        self.assertEqual(estimate_undercut(order, [order, other], product), 0)

    def test_own_orders_on_other_products_are_not_subtracted(self) -> None:
        order = Order("SUGAR", OrderType.BUY, amount=100, price=10.0)
        elsewhere = Order("CANE", OrderType.BUY, amount=100, price=10.0)
        product = build_product("SUGAR", buy_orders=depth(OrderType.BUY, "SUGAR", (120, 10.0)))
        self.assertEqual(estimate_undercut(order, [elsewhere], product), 120)

    def test_filled_order_is_never_undercut(self) -> None:
        order = Order("SUGAR", OrderType.BUY, amount=100, price=10.0, filled=True)
        product = build_product("SUGAR", buy_orders=depth(OrderType.BUY, "SUGAR", (500, 11.0)))
        self.assertEqual(estimate_undercut(order, [order], product), 0)

    def test_missing_price_raises(self) -> None:
        order = Order("SUGAR", OrderType.BUY, amount=100)
        with self.assertRaises(ValueError):
            estimate_undercut(order, [order], build_product("SUGAR"))


if __name__ == "__main__":
    unittest.main()
