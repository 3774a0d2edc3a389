# bazaar_flipper/market_engine.py
import asyncio
import logging
import time
from collections import deque
from typing import Any, Deque, Dict, List, Optional

import aiohttp

from .models import Order, OrderType, PriceRecord, Product

# Bazaar sales tax taken off every sell offer
SALES_TAX = 0.01
# Price step used to outbid / undercut the top of the book
PRICE_STEP = 0.1

HOUR = 60 * 60
DAY = 24 * HOUR


def display_name(product_id: str) -> str:
    return product_id.replace("_", " ").title()


def build_product(product_id: str, raw: Dict[str, Any], name: str, max_stack: int = 64) -> Product:
    """
    Maps one entry of the bazaar endpoint to a Product.

    `sell_summary` lists the standing buy orders (best first) and
    `buy_summary` the standing sell offers, hence the swap.
    """
    sell_summary = raw.get("sell_summary") or []
    buy_summary = raw.get("buy_summary") or []
    quick = raw.get("quick_status") or {}

    buy_price = sell_summary[0]["pricePerUnit"] + PRICE_STEP if sell_summary else 0.0
    sell_price = buy_summary[0]["pricePerUnit"] - PRICE_STEP if buy_summary else 0.0

    return Product(
        id=product_id,
        name=name,
        max_stack=max_stack,
        buy_price=buy_price,
        sell_price=sell_price,
        instant_buy_price=float(quick.get("buyPrice", 0.0)),
        instant_sell_price=float(quick.get("sellPrice", 0.0)),
        buy_orders=[
            Order(product_id=product_id, type=OrderType.BUY, amount=int(e["amount"]), price=float(e["pricePerUnit"]))
            for e in sell_summary
        ],
        sell_orders=[
            Order(product_id=product_id, type=OrderType.SELL, amount=int(e["amount"]), price=float(e["pricePerUnit"]))
            for e in buy_summary
        ],
        hourly_buy_movement=float(quick.get("buyMovingWeek", 0.0)) / 7 / 24,
        hourly_sell_movement=float(quick.get("sellMovingWeek", 0.0)) / 7 / 24,
        margin=sell_price * (1 - SALES_TAX) - buy_price,
    )


class PriceHistory:
    """
    Rolling top-of-book samples per product in two buckets: the last hour
    (dense, used for undercut frequency) and the last day (sparse, used for
    the trailing average).
    """
    def __init__(self):
        self.hour: Dict[str, Deque[PriceRecord]] = {}
        self.day: Dict[str, Deque[PriceRecord]] = {}

    @staticmethod
    def _record(bucket: Dict[str, Deque[PriceRecord]], products: List[Product], now: float, retention: float):
        for product in products:
            records = bucket.setdefault(product.id, deque())
            records.append(PriceRecord(time=now, buy_price=product.buy_price, sell_price=product.sell_price))
            while records and now - records[0].time > retention:
                records.popleft()

    def record_hour(self, products: List[Product], now: Optional[float] = None):
        self._record(self.hour, products, now if now is not None else time.time(), HOUR)

    def record_day(self, products: List[Product], now: Optional[float] = None):
        self._record(self.day, products, now if now is not None else time.time(), DAY)


class BazaarApi:
    """
    Pulls the public bazaar endpoint and item metadata, caches both briefly,
    and samples price history in the background.
    """
    def __init__(self, config: dict, logger: logging.Logger):
        self.cfg = config['market']
        self.logger = logger
        self.history = PriceHistory()
        self._session: Optional[aiohttp.ClientSession] = None
        self._products: Dict[str, Any] = {}
        self._products_time = 0.0
        self._items: Dict[str, str] = {}
        self._items_time = 0.0
        self.tasks: List[asyncio.Task] = []
        self.running = False

    async def initialize(self) -> bool:
        """
        Opens the HTTP session and checks that both endpoints answer.
        """
        timeout = aiohttp.ClientTimeout(total=self.cfg['network_timeout_seconds'])
        self._session = aiohttp.ClientSession(timeout=timeout)
        self.logger.info("📡 TESTING BAZAAR API...")

        products = await self.fetch_products()
        items = await self.fetch_known_items()
        if not products:
            self.logger.critical("   ❌ BAZAAR      | No products returned")
            return False
        self.logger.info(f"   ✅ BAZAAR      | {len(products)} products | {len(items)} known items")
        return True

    async def _get_json(self, url: str) -> Dict[str, Any]:
        async with self._session.get(url) as response:
            response.raise_for_status()
            return await response.json()

    async def fetch_products(self) -> Dict[str, Any]:
        if time.time() - self._products_time > self.cfg['products_max_age_seconds']:
            try:
                data = await self._get_json(self.cfg['bazaar_url'])
                if data.get("products"):
                    self._products = data["products"]
                    self._products_time = time.time()
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                self.logger.error(f"Failed to fetch products: {e}")
        return self._products

    async def fetch_known_items(self) -> Dict[str, str]:
        if time.time() - self._items_time > self.cfg['items_max_age_seconds']:
            try:
                data = await self._get_json(self.cfg['items_url'])
                items = data.get("items") or []
                if items:
                    self._items = {item["id"]: item.get("name") or display_name(item["id"]) for item in items}
                    self._items_time = time.time()
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                self.logger.error(f"Failed to fetch known items: {e}")
        return self._items

    async def get_products(self) -> List[Product]:
        raw_products = await self.fetch_products()
        names = await self.fetch_known_items()
        overrides = self.cfg.get('max_stack_overrides') or {}
        return [
            build_product(
                product_id,
                raw,
                names.get(product_id) or display_name(product_id),
                int(overrides.get(product_id, 64)),
            )
            for product_id, raw in raw_products.items()
        ]

    async def start(self):
        self.running = True
        hour_interval = HOUR / self.cfg['hour_samples_per_hour']
        day_interval = HOUR / self.cfg['day_samples_per_hour']
        self.tasks = [
            asyncio.create_task(self._sample_forever(self.history.record_hour, hour_interval)),
            asyncio.create_task(self._sample_forever(self.history.record_day, day_interval)),
        ]

    async def _sample_forever(self, record, interval: float):
        while self.running:
            try:
                record(await self.get_products())
            except Exception as e:
                self.logger.error(f"Price history sample failed: {e}")
            await asyncio.sleep(interval)

    async def shutdown(self):
        self.running = False
        for t in self.tasks:
            t.cancel()
        if self._session:
            await self._session.close()
