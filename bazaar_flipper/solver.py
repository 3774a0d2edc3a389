# bazaar_flipper/solver.py
"""
Budget allocation: picks which buy orders to open next.

Every candidate product is scored by expected hourly profit and weighted by
how much daily limit it will burn per hour; a bounded-count 0/1 knapsack
then fills the free order slots within the hourly share of the remaining
limit. Pure functions only: same inputs, same orders.
"""
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .models import Order, OrderType, PriceRecord, Product

# Largest amount the bazaar accepts in a single order
HARD_ORDER_CAP = 71_680
# Weights are expressed in thousandths of the remaining daily limit
WEIGHT_RESOLUTION = 1000


@dataclass(slots=True)
class SolveRequest:
    budget: float
    order_slot_count: int
    remaining_quota: float
    horizon_hours: float
    existing_orders: List[Order] = field(default_factory=list)
    elapsed_time: float = 0.0
    cycle_count: int = 0
    filter: Dict[str, Any] = field(default_factory=dict)
    max_order_size: int = HARD_ORDER_CAP

    def to_dict(self) -> Dict[str, Any]:
        return {
            "budget": self.budget,
            "orderSlotCount": self.order_slot_count,
            "remainingQuota": self.remaining_quota,
            "horizonHours": self.horizon_hours,
            "existingOrders": [o.to_dict() for o in self.existing_orders],
            "elapsedTime": self.elapsed_time,
            "cycleCount": self.cycle_count,
            "filter": self.filter,
            "maxOrderSize": self.max_order_size,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SolveRequest":
        return cls(
            budget=float(data["budget"]),
            order_slot_count=int(data["orderSlotCount"]),
            remaining_quota=float(data["remainingQuota"]),
            horizon_hours=float(data["horizonHours"]),
            existing_orders=[Order.from_dict(o) for o in data.get("existingOrders", [])],
            elapsed_time=float(data.get("elapsedTime", 0.0)),
            cycle_count=int(data.get("cycleCount", 0)),
            filter=dict(data.get("filter") or {}),
            max_order_size=int(data.get("maxOrderSize", HARD_ORDER_CAP)),
        )


@dataclass(slots=True)
class SolveResult:
    max_hourly_profit: float
    new_orders: List[Order]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "maxHourlyProfit": self.max_hourly_profit,
            "newOrders": [o.to_dict() for o in self.new_orders],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SolveResult":
        if not isinstance(data, dict) or not isinstance(data.get("newOrders"), list):
            raise ValueError(f"Invalid solve reply: {data!r}")
        return cls(
            max_hourly_profit=float(data.get("maxHourlyProfit") or 0.0),
            new_orders=[Order.from_dict(o) for o in data["newOrders"]],
        )


@dataclass(slots=True)
class Candidate:
    product_id: str
    buy_price: float
    sell_price: float
    amount: int
    margin: float
    buy_usage: float
    sell_usage: float
    profitability: float
    hourly_buy_movement: float
    hourly_sell_movement: float
    hourly_buy_undercuts: float
    hourly_sell_undercuts: float
    avg_buy_price: Optional[float]
    avg_sell_price: Optional[float]
    uptime: float


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def passes_pattern_filter(product_id: str, filter: Mapping[str, Any]) -> bool:
    if any(re.search(pattern, product_id) for pattern in filter.get("blacklist") or []):
        return False
    whitelist = filter.get("whitelist") or []
    if whitelist and not any(re.search(pattern, product_id) for pattern in whitelist):
        return False
    return True


def hourly_undercuts(records: Sequence[PriceRecord]) -> Optional[Tuple[float, float]]:
    """
    (buy, sell) undercut events per hour seen in the hour buckets.
    A buy undercut is the top buy price going up, a sell undercut the top
    sell price going down. None when the history spans no time at all.
    """
    if len(records) < 2:
        return None
    hours = (records[-1].time - records[0].time) / 3600
    if hours <= 0:
        return None
    buy_undercuts = sell_undercuts = 0
    for prev, current in zip(records, records[1:]):
        if prev.sell_price > current.sell_price:
            sell_undercuts += 1
        if prev.buy_price < current.buy_price:
            buy_undercuts += 1
    return buy_undercuts / hours, sell_undercuts / hours


def _average(values: List[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None


def build_candidate(
    product: Product,
    request: SolveRequest,
    hour_records: Sequence[PriceRecord],
    day_records: Sequence[PriceRecord],
) -> Optional[Candidate]:
    buy_price, sell_price = product.buy_price, product.sell_price
    if buy_price <= 0 or sell_price <= 0:
        return None
    undercuts = hourly_undercuts(hour_records)
    if undercuts is None:
        return None
    hourly_buy_undercuts, hourly_sell_undercuts = undercuts

    committed = sum(o.notional for o in request.existing_orders if o.product_id == product.id)
    max_usage_product = request.filter.get("max_usage_product")
    per_item_budget = min(
        max_usage_product - committed if max_usage_product else math.inf,
        request.budget / request.order_slot_count,
    )
    amount = math.floor(min(per_item_budget / buy_price, request.max_order_size, HARD_ORDER_CAP))

    avg_cycle_hours = None
    if request.cycle_count and request.elapsed_time > 0:
        avg_cycle_hours = request.elapsed_time / request.cycle_count / 3600
    relists_per_hour = 1 / avg_cycle_hours if avg_cycle_hours else math.inf

    buy_usage = amount * buy_price * min(relists_per_hour, hourly_buy_undercuts)
    sell_usage = amount * sell_price * min(relists_per_hour, hourly_sell_undercuts)

    # Share of a cycle the buy order is expected to stay on top
    uptime = 1.0
    if avg_cycle_hours:
        avg_undercut_interval = 1 / max(1.0, hourly_buy_undercuts)
        uptime = min(1.0, avg_undercut_interval / avg_cycle_hours)

    profitability = product.margin * min(product.hourly_buy_movement, product.hourly_sell_movement) * uptime

    return Candidate(
        product_id=product.id,
        buy_price=buy_price,
        sell_price=sell_price,
        amount=amount,
        margin=product.margin,
        buy_usage=buy_usage,
        sell_usage=sell_usage,
        profitability=profitability,
        hourly_buy_movement=product.hourly_buy_movement,
        hourly_sell_movement=product.hourly_sell_movement,
        hourly_buy_undercuts=hourly_buy_undercuts,
        hourly_sell_undercuts=hourly_sell_undercuts,
        avg_buy_price=_average([r.buy_price for r in day_records]),
        avg_sell_price=_average([r.sell_price for r in day_records]),
        uptime=uptime,
    )


def is_acceptable(candidate: Candidate, filter: Mapping[str, Any]) -> bool:
    if candidate.profitability <= 0:
        return False
    if candidate.amount < 1:
        return False
    if max(candidate.hourly_buy_undercuts, candidate.hourly_sell_undercuts) > filter.get("max_hourly_undercuts", math.inf):
        return False
    if min(candidate.hourly_buy_movement, candidate.hourly_sell_movement) < filter.get("min_movement", 0):
        return False
    if candidate.buy_price < filter.get("min_price", 0.1):
        return False
    if candidate.buy_price > filter.get("max_price", math.inf):
        return False

    max_diff_day = filter.get("max_diff_day")
    if max_diff_day is not None:
        if candidate.avg_sell_price is not None and \
           abs(candidate.avg_sell_price - candidate.sell_price) > candidate.sell_price * max_diff_day:
            return False
        if candidate.avg_buy_price is not None and \
           abs(candidate.avg_buy_price - candidate.buy_price) > candidate.buy_price * max_diff_day:
            return False

    ratio = candidate.sell_price / candidate.buy_price
    if ratio < filter.get("min_margin", 0.0) or ratio > filter.get("max_margin", math.inf):
        return False
    return True


def generate_candidates(
    products: Sequence[Product],
    request: SolveRequest,
    hour_history: Mapping[str, Sequence[PriceRecord]],
    day_history: Mapping[str, Sequence[PriceRecord]],
) -> List[Candidate]:
    held = {o.product_id for o in request.existing_orders if o.type == OrderType.BUY}
    candidates = []
    for product in products:
        if product.id in held or not passes_pattern_filter(product.id, request.filter):
            continue
        candidate = build_candidate(
            product, request, hour_history.get(product.id, ()), day_history.get(product.id, ())
        )
        if candidate is not None and is_acceptable(candidate, request.filter):
            candidates.append(candidate)
    return candidates


def knapsack(items: Sequence[Tuple[float, int]], capacity: int, item_count: int) -> Tuple[float, List[int]]:
    """
    0/1 knapsack over (value, weight) pairs with at most `item_count` picks.
    Equal values go to the later item. Returns (best value, selected indices).
    """
    capacity = max(0, capacity)
    item_count = max(0, item_count)
    usable = [(i, v, w) for i, (v, w) in enumerate(items) if 0 <= w <= capacity]
    # Cells past the total weight all hold the same solution
    capacity = min(capacity, sum(w for _, _, w in usable))

    best = [[0.0] * (capacity + 1) for _ in range(item_count + 1)]
    chosen: List[List[Tuple[int, ...]]] = [[() for _ in range(capacity + 1)] for _ in range(item_count + 1)]

    for index, value, weight in usable:
        for w in range(capacity, weight - 1, -1):
            for j in range(item_count, 0, -1):
                take = best[j - 1][w - weight] + value
                if take >= best[j][w]:
                    best[j][w] = take
                    chosen[j][w] = chosen[j - 1][w - weight] + (index,)

    return best[item_count][capacity], list(chosen[item_count][capacity])


def solve(
    request: SolveRequest,
    products: Sequence[Product],
    hour_history: Mapping[str, Sequence[PriceRecord]],
    day_history: Mapping[str, Sequence[PriceRecord]],
) -> SolveResult:
    if request.order_slot_count <= 0 or request.budget <= 0 \
       or request.remaining_quota <= 0 or request.horizon_hours <= 0:
        return SolveResult(0.0, [])

    candidates = generate_candidates(products, request, hour_history, day_history)
    divider = request.remaining_quota / WEIGHT_RESOLUTION
    items = [
        (c.profitability, _round_half_up((c.buy_usage + c.sell_usage) / divider))
        for c in candidates
    ]
    capacity = _round_half_up(request.remaining_quota / request.horizon_hours / divider)

    max_value, selected = knapsack(items, capacity, request.order_slot_count)
    return SolveResult(
        max_hourly_profit=max_value,
        new_orders=[
            Order(
                product_id=candidates[i].product_id,
                type=OrderType.BUY,
                amount=candidates[i].amount,
                price=candidates[i].buy_price,
            )
            for i in selected
        ],
    )
