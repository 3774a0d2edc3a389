# bazaar_flipper/rpc.py
import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .errors import RpcError, RpcTimeoutError
from .models import Order, Product
from .solver import SolveRequest, SolveResult

Sender = Callable[[Dict[str, Any]], Awaitable[None]]


def envelope(event: str, data: Any, message_id: int) -> Dict[str, Any]:
    return {"event": event, "data": data, "id": message_id, "time": int(time.time() * 1000)}


def encode(message: Dict[str, Any]) -> bytes:
    return (json.dumps(message, separators=(",", ":")) + "\n").encode()


class RpcChannel:
    """
    Request/reply over a message stream shared with the solver service.

    Each request parks a future under (event, id); `dispatch` resolves it when
    the matching reply arrives and drops everything else. A request that
    outlives its deadline removes its own entry before raising.
    """
    def __init__(self, send: Sender, logger: logging.Logger, timeout: float = 20.0):
        self._send = send
        self.logger = logger
        self.timeout = timeout
        self._pending: Dict[Tuple[str, int], asyncio.Future] = {}
        self._last_id = 0

    def _next_id(self) -> int:
        # Millisecond timestamp, bumped when two requests land in the same ms
        candidate = int(time.time() * 1000)
        if candidate <= self._last_id:
            candidate = self._last_id + 1
        self._last_id = candidate
        return candidate

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def request(self, event: str, data: Any, timeout: Optional[float] = None) -> Any:
        message_id = self._next_id()
        key = (event, message_id)
        future = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        try:
            try:
                await self._send(envelope(event, data, message_id))
            except OSError as e:
                raise RpcError(f"Failed to send '{event}': {e}")
            return await asyncio.wait_for(future, timeout or self.timeout)
        except asyncio.TimeoutError:
            raise RpcTimeoutError(f"No reply to '{event}' ({message_id}) within {timeout or self.timeout}s")
        finally:
            self._pending.pop(key, None)

    def dispatch(self, message: Any) -> bool:
        """Routes one inbound message. Returns True if it completed a pending request."""
        if not isinstance(message, dict):
            return False
        if "event" not in message or "id" not in message or "data" not in message:
            return False
        future = self._pending.get((message["event"], message["id"]))
        if future is None or future.done():
            return False
        future.set_result(message["data"])
        return True

    async def read_from(self, reader: asyncio.StreamReader):
        """Feeds JSON lines from `reader` into `dispatch` until EOF."""
        while True:
            line = await reader.readline()
            if not line:
                break
            try:
                message = json.loads(line)
            except ValueError:
                self.logger.debug(f"Ignoring non-JSON line from solver service: {line[:100]!r}")
                continue
            self.dispatch(message)

        for future in self._pending.values():
            if not future.done():
                future.set_exception(RpcError("Solver service closed the stream"))


class SolverClient:
    """
    Bot-side stub for the solver service: the `get-products` catalog and
    `solve` order selection. Also serves as the MarketSnapshotProvider.
    """
    def __init__(self, channel: RpcChannel, logger: logging.Logger):
        self.channel = channel
        self.logger = logger

    async def get_products(self) -> List[Product]:
        data = await self.channel.request("get-products", None)
        if not isinstance(data, list):
            raise RpcError(f"Invalid get-products reply: {type(data).__name__}")
        return [Product.from_dict(p) for p in data]

    async def get_optimal_orders(self, request: SolveRequest) -> List[Order]:
        """Never raises: any failure means no new orders this cycle."""
        try:
            data = await self.channel.request("solve", request.to_dict())
            result = SolveResult.from_dict(data)
        except (RpcError, ValueError, KeyError, TypeError) as e:
            self.logger.error(f"Failed to get orders: {e}")
            return []
        self.logger.debug(f"Solver expects {result.max_hourly_profit:,.1f} coins/h")
        return result.new_orders


Handler = Callable[[Any], Awaitable[Any]]


class RpcServer:
    """Answers request envelopes read from `reader` with same-event/same-id replies."""
    def __init__(self, handlers: Dict[str, Handler], logger: logging.Logger):
        self.handlers = handlers
        self.logger = logger

    async def handle(self, message: Any) -> Optional[Dict[str, Any]]:
        if not isinstance(message, dict) or "event" not in message or "id" not in message:
            self.logger.debug(f"Received invalid message: {str(message)[:100]}")
            return None
        handler = self.handlers.get(message["event"])
        if handler is None:
            self.logger.warning(f"No handler for event '{message['event']}'")
            return None
        try:
            data = await handler(message.get("data"))
        except Exception as e:
            self.logger.error(f"Handler for '{message['event']}' failed: {e}")
            data = {"error": str(e)}
        return envelope(message["event"], data, message["id"])

    async def serve(self, reader: asyncio.StreamReader, write: Callable[[bytes], Awaitable[None]]):
        while True:
            line = await reader.readline()
            if not line:
                break
            try:
                message = json.loads(line)
            except ValueError:
                self.logger.debug(f"Ignoring non-JSON line: {line[:100]!r}")
                continue
            reply = await self.handle(message)
            if reply is not None:
                await write(encode(reply))
