# bazaar_flipper/models.py
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar, Union

T = TypeVar("T")


class OrderType(str, Enum):
    BUY = "buy"
    SELL = "sell"


class FlipperState(Enum):
    """
    Lifecycle states of the flip control loop.
    """
    STOPPED = "stopped"
    RUNNING = "running"
    PAUSED = "paused"


@dataclass(slots=True)
class Order:
    """
    One bazaar order, either read back from the 'Bazaar Orders' screen or
    taken from a product's market depth.
    The bazaar hands out no ids, so identity is the structural tuple in `key`.
    """
    product_id: str
    type: OrderType
    amount: Optional[int] = None
    price: Optional[float] = None
    filled: bool = False
    undercut_amount: Optional[float] = None

    @property
    def key(self) -> tuple:
        return (self.product_id, self.type, self.amount, self.price, self.filled)

    @property
    def notional(self) -> float:
        return (self.amount or 0) * (self.price or 0.0)

    @property
    def undercut_ratio(self) -> Optional[float]:
        if self.undercut_amount is None or not self.amount:
            return None
        return self.undercut_amount / self.amount

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "productId": self.product_id,
            "type": self.type.value,
            "filled": self.filled,
        }
        if self.amount is not None:
            data["amount"] = self.amount
        if self.price is not None:
            data["price"] = self.price
        if self.undercut_amount is not None:
            data["undercutAmount"] = self.undercut_amount
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Order":
        amount = data.get("amount")
        price = data.get("price")
        undercut = data.get("undercutAmount")
        return cls(
            product_id=str(data["productId"]),
            type=OrderType(data["type"]),
            amount=int(amount) if amount is not None else None,
            price=float(price) if price is not None else None,
            filled=bool(data.get("filled", False)),
            undercut_amount=float(undercut) if undercut is not None else None,
        )


@dataclass(slots=True)
class Product:
    """
    Per-cycle market snapshot of a single tradable item.

    `buy_orders` is sorted best (highest) price first and `sell_orders` best
    (lowest) price first, exactly as the market API hands them out.
    """
    id: str
    name: str
    max_stack: int = 64
    buy_price: float = 0.0
    sell_price: float = 0.0
    instant_buy_price: float = 0.0
    instant_sell_price: float = 0.0
    buy_orders: List[Order] = field(default_factory=list)
    sell_orders: List[Order] = field(default_factory=list)
    hourly_buy_movement: float = 0.0
    hourly_sell_movement: float = 0.0
    margin: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "maxStack": self.max_stack,
            "buyPrice": self.buy_price,
            "sellPrice": self.sell_price,
            "instantBuyPrice": self.instant_buy_price,
            "instantSellPrice": self.instant_sell_price,
            "buyOrders": [o.to_dict() for o in self.buy_orders],
            "sellOrders": [o.to_dict() for o in self.sell_orders],
            "hourlyBuyMovement": self.hourly_buy_movement,
            "hourlySellMovement": self.hourly_sell_movement,
            "margin": self.margin,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Product":
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            max_stack=int(data.get("maxStack", 64)),
            buy_price=float(data.get("buyPrice", 0.0)),
            sell_price=float(data.get("sellPrice", 0.0)),
            instant_buy_price=float(data.get("instantBuyPrice", 0.0)),
            instant_sell_price=float(data.get("instantSellPrice", 0.0)),
            buy_orders=[Order.from_dict(o) for o in data.get("buyOrders", [])],
            sell_orders=[Order.from_dict(o) for o in data.get("sellOrders", [])],
            hourly_buy_movement=float(data.get("hourlyBuyMovement", 0.0)),
            hourly_sell_movement=float(data.get("hourlySellMovement", 0.0)),
            margin=float(data.get("margin", 0.0)),
        )


@dataclass(slots=True)
class PriceRecord:
    """One price-history sample: top buy order / top sell offer at `time` (epoch seconds)."""
    time: float
    buy_price: float
    sell_price: float


@dataclass(slots=True)
class DailyQuota:
    """
    Spend + sell value used during the current bazaar day.
    `reset_timestamp` is epoch seconds of the next UTC midnight.
    """
    used_amount: float = 0.0
    reset_timestamp: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        # On-disk format keeps epoch milliseconds
        return {
            "usedDailyLimit": self.used_amount,
            "limitResetTime": int(self.reset_timestamp * 1000),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DailyQuota":
        return cls(
            used_amount=float(data.get("usedDailyLimit") or 0.0),
            reset_timestamp=float(data.get("limitResetTime") or 0) / 1000,
        )


@dataclass(slots=True)
class ScheduleWindow:
    """
    A blackout period in UTC hours. `start_hour > end_hour` wraps midnight.
    """
    start_hour: float
    end_hour: float

    def contains(self, hour: float) -> bool:
        if self.start_hour <= self.end_hour:
            return self.start_hour <= hour <= self.end_hour
        return hour >= self.start_hour or hour <= self.end_hour


@dataclass(slots=True)
class CycleMetrics:
    cycles_completed: int = 0
    total_wait_time: float = 0.0
    total_timeout_time: float = 0.0
    starting_total_value: Optional[float] = None
    starting_quota_usage: Optional[float] = None

    def reset(self) -> None:
        self.cycles_completed = 0
        self.total_wait_time = 0.0
        self.total_timeout_time = 0.0
        self.starting_total_value = None
        self.starting_quota_usage = None


# --- SCREEN PRIMITIVES ---

@dataclass(slots=True)
class ScreenSlot:
    """A rendered slot: its display name and joined tooltip text, colour codes stripped."""
    name: str
    lore: str = ""


@dataclass(slots=True)
class Window:
    title: str
    slots: List[Optional[ScreenSlot]] = field(default_factory=list)

    def find(self, name: str) -> Optional[ScreenSlot]:
        index = self.find_slot(name)
        return self.slots[index] if index != -1 else None

    def find_slot(self, name: str) -> int:
        for i, slot in enumerate(self.slots):
            if slot is not None and slot.name == name:
                return i
        return -1


@dataclass(slots=True)
class InventoryItem:
    product_id: Optional[str]
    count: int
    name: str = ""


# --- PARSE RESULTS ---

@dataclass(slots=True)
class Parsed(Generic[T]):
    value: T


@dataclass(slots=True)
class Skipped:
    reason: str


ParseResult = Union[Parsed[T], Skipped]
