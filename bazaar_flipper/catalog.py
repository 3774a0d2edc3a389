# bazaar_flipper/catalog.py
import logging
from typing import Dict, List, Optional

from .interfaces import MarketSnapshotProvider
from .models import Product


class ProductCatalog:
    """
    Bot-side view of the market: the product list fetched once per cycle,
    indexed by id and by the display name shown on screen.
    """
    def __init__(self, provider: MarketSnapshotProvider, logger: logging.Logger):
        self.provider = provider
        self.logger = logger
        self._by_id: Dict[str, Product] = {}
        self._by_name: Dict[str, Product] = {}

    @property
    def products(self) -> List[Product]:
        return list(self._by_id.values())

    def replace(self, products: List[Product]):
        self._by_id = {p.id: p for p in products}
        self._by_name = {p.name: p for p in products}

    async def refresh(self) -> bool:
        """Returns False (keeping the previous snapshot) if the provider failed."""
        try:
            products = await self.provider.get_products()
        except Exception as e:
            self.logger.error(f"Failed to refresh products: {e}")
            return False
        self.replace(products)
        self.logger.debug(f"Loaded {len(products)} products")
        return True

    def get(self, product_id: str) -> Optional[Product]:
        return self._by_id.get(product_id)

    def by_name(self, name: str) -> Optional[Product]:
        return self._by_name.get(name)
