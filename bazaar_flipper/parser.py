# bazaar_flipper/parser.py
"""
Everything that knows what the bazaar screens and chat lines look like.

Callers get typed values (or `Skipped` with a reason) back and never
touch the raw strings themselves.
"""
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .models import Order, OrderType, Parsed, ParseResult, Product, ScreenSlot, Skipped

COLOR_CODE = re.compile(r"§[0-9a-fk-or]", re.IGNORECASE)

# Numbers are rendered with thousands separators: "1,234.5"
_NUMBER = r"([\d,]*\.?\d+)"

ORDER_NAME = re.compile(r"^(BUY|SELL) (.+)$")
ORDER_AMOUNT = re.compile(r"(?:Order|Offer) amount: ([\d,]+)x")
ORDER_PRICE = re.compile(r"Price per unit: " + _NUMBER + r" coins")
FILLED_MARKER = "100%!"

MAX_AMOUNT = re.compile(r"Buy up to ([\d,]+)x")
UNIT_PRICE = re.compile(r"Unit price: " + _NUMBER + r" coins")
CONFIRM_PRICE = re.compile(r"Price per unit: " + _NUMBER)
CONFIRM_AMOUNT = re.compile(r"(?:Selling|Order): ([\d,]+)x")
FLIP_AMOUNT = re.compile(r"for ([\d,]+)x")
FLIP_BEST_OFFER = re.compile(r"- " + _NUMBER + r" coins each \| [\d,]+x from [\d,]+ offers?")

MEMBER_JOINED = re.compile(r"^([a-zA-Z0-9_]+) joined SkyBlock\.")
MEMBER_LEFT = re.compile(r"^([a-zA-Z0-9_]+) left SkyBlock\.")
DAILY_LIMIT_MESSAGES = (
    "[Bazaar] You reached the daily limit of coins you may spend on the Bazaar!",
    "[Bazaar] You reached the daily limit in items value that you may sell on the bazaar!",
)
LAGGY_SERVER_MESSAGE = "This server is too laggy to use the Bazaar, sorry!"


def clean(text: Optional[str]) -> str:
    return COLOR_CODE.sub("", text or "")


def parse_number(text: str) -> float:
    return float(text.replace(",", ""))


def _search_number(pattern: re.Pattern, text: str, group: int = 1) -> Optional[float]:
    match = pattern.search(text or "")
    if not match:
        return None
    try:
        return parse_number(match.group(group))
    except ValueError:
        return None


def parse_order_slot(
    slot: ScreenSlot, find_product: Callable[[str], Optional[Product]]
) -> Optional[ParseResult[Order]]:
    """
    Turns one 'Bazaar Orders' slot ("BUY Enchanted Sugar" plus its tooltip)
    into an Order. Slots that are not orders at all (borders, buttons) give None.
    """
    name = clean(slot.name)
    match = ORDER_NAME.match(name)
    if not match:
        return None

    product = find_product(match.group(2))
    if product is None:
        return Skipped(f"unknown product {match.group(2)!r}")

    lore = clean(slot.lore)
    amount = _search_number(ORDER_AMOUNT, lore)
    if amount is None:
        return Skipped(f"no amount in lore of {name!r}: {lore!r}")
    price = _search_number(ORDER_PRICE, lore)
    if price is None:
        return Skipped(f"no price in lore of {name!r}: {lore!r}")

    return Parsed(Order(
        product_id=product.id,
        type=OrderType.BUY if match.group(1) == "BUY" else OrderType.SELL,
        amount=int(amount),
        price=price,
        filled=FILLED_MARKER in lore,
    ))


def slot_matches_order(slot: ScreenSlot, order: Order, product: Product) -> bool:
    name = clean(slot.name)
    if product.name not in name or order.type.value.upper() not in name:
        return False
    lore = clean(slot.lore)
    amount = _search_number(ORDER_AMOUNT, lore)
    price = _search_number(ORDER_PRICE, lore)
    if amount is None or price is None:
        return False
    return (
        int(amount) == order.amount
        and price == order.price
        and (FILLED_MARKER in lore) == bool(order.filled)
    )


def parse_max_amount(lore: str) -> Optional[int]:
    value = _search_number(MAX_AMOUNT, clean(lore))
    return int(value) if value is not None else None


def parse_unit_price(lore: str) -> Optional[float]:
    return _search_number(UNIT_PRICE, clean(lore))


class ConfirmationKind(Enum):
    READY = "ready"
    COOLDOWN = "cooldown"
    TOO_MANY_ORDERS = "too_many_orders"
    DAILY_LIMIT = "daily_limit"


@dataclass(slots=True)
class Confirmation:
    kind: ConfirmationKind
    price: Optional[float] = None
    amount: Optional[int] = None


def parse_confirmation(lore: str) -> Confirmation:
    """Reads the tooltip of the final 'Buy Order' / 'Sell Offer' button."""
    lore = clean(lore)
    if "Placing orders is on cooldown!" in lore:
        return Confirmation(ConfirmationKind.COOLDOWN)
    if "Too many orders!" in lore:
        return Confirmation(ConfirmationKind.TOO_MANY_ORDERS)
    if "You reached the daily limit" in lore:
        return Confirmation(ConfirmationKind.DAILY_LIMIT)

    amount = _search_number(CONFIRM_AMOUNT, lore)
    return Confirmation(
        ConfirmationKind.READY,
        price=_search_number(CONFIRM_PRICE, lore),
        amount=int(amount) if amount is not None else None,
    )


def parse_flip_offer(lore: str):
    """Returns (amount, best competing offer price) from the 'Flip Order' tooltip."""
    lore = clean(lore)
    amount = _search_number(FLIP_AMOUNT, lore)
    return (
        int(amount) if amount is not None else None,
        _search_number(FLIP_BEST_OFFER, lore),
    )


class ChatEventKind(Enum):
    DAILY_LIMIT = "daily_limit"
    LAGGY_SERVER = "laggy_server"
    MEMBER_JOINED = "member_joined"
    MEMBER_LEFT = "member_left"


@dataclass(slots=True)
class ChatEvent:
    kind: ChatEventKind
    name: Optional[str] = None


def parse_chat(message: str) -> Optional[ChatEvent]:
    message = clean(message).lstrip()
    if message.startswith(DAILY_LIMIT_MESSAGES):
        return ChatEvent(ChatEventKind.DAILY_LIMIT)
    if message.startswith(LAGGY_SERVER_MESSAGE):
        return ChatEvent(ChatEventKind.LAGGY_SERVER)
    joined = MEMBER_JOINED.match(message)
    if joined:
        return ChatEvent(ChatEventKind.MEMBER_JOINED, joined.group(1))
    left = MEMBER_LEFT.match(message)
    if left:
        return ChatEvent(ChatEventKind.MEMBER_LEFT, left.group(1))
    return None


def is_stash_empty(message: str) -> bool:
    message = clean(message)
    return "all" in message or "isn't holding any" in message
