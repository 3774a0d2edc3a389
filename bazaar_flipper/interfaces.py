# bazaar_flipper/interfaces.py
"""
Collaborator contracts consumed by the trading core.

The game client itself (protocol, login, reconnects) lives outside this
package; anything exposing these members can drive the flipper.
"""
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence

from .models import InventoryItem, Product, Window


class ScreenReader(Protocol):
    def current_window(self) -> Optional[Window]: ...

    def inventory_items(self) -> List[InventoryItem]: ...

    def empty_inventory_slots(self) -> int: ...

    def purse(self) -> float: ...


class GameClient(ScreenReader, Protocol):
    """
    Primitive actions. `online_status` is one of 'online', 'connecting', 'offline'.
    `wait_for_event` and `wait_for_message` raise asyncio.TimeoutError past `timeout`.
    """
    online_status: str
    username: str

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def send_chat(self, message: str) -> None: ...

    async def click_slot(self, slot: int, button: int = 0) -> None: ...

    async def click_item(self, name: str, button: int = 0, sign_text: Optional[str] = None) -> None: ...

    async def close_window(self) -> None: ...

    async def wait_for_event(self, event: str, timeout: float = 10.0) -> None: ...

    async def wait_for_message(self, patterns: Sequence[str], timeout: float = 10.0) -> str: ...

    async def update_location(self) -> Optional[str]: ...

    def add_message_listener(self, callback: Callable[[str], Awaitable[None]]) -> None: ...


class MarketSnapshotProvider(Protocol):
    async def get_products(self) -> List[Product]: ...
