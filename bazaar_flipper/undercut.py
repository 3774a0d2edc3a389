# bazaar_flipper/undercut.py
from typing import Iterable

from .models import Order, OrderType, Product


def _at_least_as_good(level_price: float, price: float, order_type: OrderType) -> bool:
    if order_type == OrderType.BUY:
        return level_price >= price
    return level_price <= price


def estimate_undercut(order: Order, all_own_orders: Iterable[Order], product: Product) -> float:
    """
    Quantity of market depth priced at least as competitively as `order`.

    The depth list is walked best price first and the scan stops at the first
    level priced strictly worse than the order. The account's own unfilled
    orders for the same product/side at exactly the order's price sit inside
    that depth, so their amount is taken off the equal-price levels, once.
    `all_own_orders` is expected to contain `order` itself.
    """
    if order.filled:
        return 0.0
    if order.amount is None or order.price is None:
        raise ValueError(f"Order without amount/price cannot be ranked: {order}")

    price = order.price
    own_at_price = sum(
        o.amount or 0
        for o in all_own_orders
        if o.product_id == order.product_id
        and o.type == order.type
        and not o.filled
        and o.price == price
    )

    depth = product.buy_orders if order.type == OrderType.BUY else product.sell_orders
    undercut = 0.0
    for level in depth:
        if not level.amount or level.price is None:
            continue
        if not _at_least_as_good(level.price, price, order.type):
            break
        if level.price == price:
            own_share = min(own_at_price, level.amount)
            own_at_price -= own_share
            undercut += level.amount - own_share
        else:
            undercut += level.amount
    return undercut
