# webshop_backend/inventory.py
import asyncio
import weakref
from typing import List

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from webshop_backend.db.functions import (
    get_all_products,
    get_product_by_id,
    set_product_stock,
    store_guard,
)
from webshop_backend.db.schemas import ProductBase
from webshop_backend.errors import InvalidInput, NotFound
from webshop_backend.realtime import Broadcaster

logger = structlog.get_logger(__name__)


class InventoryService:
    """Catalog reads and stock availability changes.

    Reads go straight to the catalog tables. Availability changes are
    broadcast to every live connection, whoever owns it. Changes to one
    product are serialized and queued before its lock is released, so the
    last update clients see is the value the store holds.
    """

    def __init__(self, broadcaster: Broadcaster):
        self.broadcaster = broadcaster
        self._locks = weakref.WeakValueDictionary()

    def _lock_for(self, product_id: int) -> asyncio.Lock:
        lock = self._locks.get(product_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[product_id] = lock
        return lock

    def _publish(self, product_id: int, in_stock: bool):
        try:
            self.broadcaster.publish_inventory(product_id, in_stock)
        except Exception:
            logger.exception("Failed to publish inventory update", product_id=product_id)

    async def list_products(self, db: AsyncSession) -> List[ProductBase]:
        async with store_guard(db, "list_products"):
            products = await get_all_products(db)
        return [ProductBase.model_validate(product) for product in products]

    async def get_product(self, db: AsyncSession, product_id: int) -> ProductBase:
        async with store_guard(db, "get_product"):
            product = await get_product_by_id(db, product_id)
        if not product:
            raise NotFound("Product not found")
        return ProductBase.model_validate(product)

    async def set_availability(self, db: AsyncSession, product_id: int, in_stock: bool) -> ProductBase:
        if not isinstance(in_stock, bool):
            raise InvalidInput("inStock flag is required")

        async with self._lock_for(product_id), store_guard(db, "set_availability"):
            product = await set_product_stock(db, product_id, in_stock)
            if product:
                self._publish(product_id, product.in_stock)
        if not product:
            raise NotFound("Product not found")

        logger.info("Product availability changed", product_id=product_id, in_stock=in_stock)
        return ProductBase.model_validate(product)
