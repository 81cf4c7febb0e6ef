# webshop_backend/cart.py
"""Cart service: the only writer of cart line items.

Every mutating call for an owner runs under that owner's lock, so the
read-modify-write sequences below never interleave for the same cart.
Different owners use different locks and never wait on each other.
The fresh cart is handed to the broadcaster before the lock is released,
so the queue sees an owner's carts in commit order. That call only
enqueues and cannot fail the request.
"""
import asyncio
import weakref
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from webshop_backend.db.functions import (
    clear_cart_lines,
    delete_cart_line,
    get_cart_line,
    get_cart_lines,
    get_line_quantity,
    get_product_by_id,
    set_cart_line_quantity,
    store_guard,
    upsert_cart_line,
)
from webshop_backend.db.schemas import MAX_LINE_QUANTITY, CartSnapshot
from webshop_backend.errors import InvalidInput, NotFound, UnknownProduct
from webshop_backend.owners import CartOwner
from webshop_backend.realtime import Broadcaster, Connection

logger = structlog.get_logger(__name__)


class CartService:
    def __init__(self, broadcaster: Broadcaster):
        self.broadcaster = broadcaster
        self._locks = weakref.WeakValueDictionary()

    def _lock_for(self, owner: CartOwner) -> asyncio.Lock:
        lock = self._locks.get(owner.key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[owner.key] = lock
        return lock

    @asynccontextmanager
    async def _owner_lock(self, owner: CartOwner):
        lock = self._lock_for(owner)
        async with lock:
            yield

    async def _snapshot(self, db: AsyncSession, owner: CartOwner) -> CartSnapshot:
        items = await get_cart_lines(db, owner.key)
        return CartSnapshot(owner=owner.key, items=items)

    def _publish(self, cart: CartSnapshot, connection: Optional[Connection] = None):
        try:
            if connection is None:
                self.broadcaster.publish_cart(cart)
            else:
                self.broadcaster.publish_snapshot(connection, cart)
        except Exception:
            logger.exception("Failed to publish cart update", owner=cart.owner)

    async def get_cart(self, db: AsyncSession, owner: CartOwner) -> CartSnapshot:
        async with store_guard(db, "get_cart"):
            return await self._snapshot(db, owner)

    async def push_cart(self, db: AsyncSession, owner: CartOwner, connection: Connection) -> CartSnapshot:
        """Queue the owner's current cart for one connection only."""
        async with self._owner_lock(owner), store_guard(db, "push_cart"):
            cart = await self._snapshot(db, owner)
            self._publish(cart, connection)
        return cart

    async def add_item(self, db: AsyncSession, owner: CartOwner, product_id: int, quantity: int = 1) -> CartSnapshot:
        if product_id is None:
            raise InvalidInput("Product ID is required")
        if quantity is None or quantity < 1:
            raise InvalidInput("Quantity must be at least 1")
        if quantity > MAX_LINE_QUANTITY:
            raise InvalidInput(f"Quantity cannot exceed {MAX_LINE_QUANTITY}")

        async with self._owner_lock(owner), store_guard(db, "add_item"):
            product = await get_product_by_id(db, product_id)
            if not product:
                raise UnknownProduct(product_id)
            if not product.in_stock:
                raise InvalidInput(f"Product {product_id} is out of stock")
            if await get_line_quantity(db, owner.key, product_id) + quantity > MAX_LINE_QUANTITY:
                raise InvalidInput(f"Quantity cannot exceed {MAX_LINE_QUANTITY}")

            await upsert_cart_line(db, owner.key, product_id, quantity)
            await db.commit()
            cart = await self._snapshot(db, owner)
            self._publish(cart)

        logger.info("Added product to cart", owner=owner.key, product_id=product_id, quantity=quantity)
        return cart

    async def update_item(self, db: AsyncSession, owner: CartOwner, line_id: int, quantity: int) -> CartSnapshot:
        """Set a line's quantity. Zero or less removes the line."""
        if quantity is None:
            raise InvalidInput("Valid quantity is required")
        if quantity > MAX_LINE_QUANTITY:
            raise InvalidInput(f"Quantity cannot exceed {MAX_LINE_QUANTITY}")

        async with self._owner_lock(owner), store_guard(db, "update_item"):
            line = await get_cart_line(db, owner.key, line_id)
            if not line:
                raise NotFound(f"Item {line_id} not found in cart")

            if quantity <= 0:
                await delete_cart_line(db, owner.key, line_id)
                action = "removed"
            else:
                await set_cart_line_quantity(db, owner.key, line_id, quantity)
                action = "updated"
            await db.commit()
            cart = await self._snapshot(db, owner)
            self._publish(cart)

        logger.info("Cart line " + action, owner=owner.key, line_id=line_id, quantity=quantity)
        return cart

    async def remove_item(self, db: AsyncSession, owner: CartOwner, line_id: int, strict: bool = False) -> CartSnapshot:
        """Delete a line. Removing an absent line is a no-op unless ``strict``."""
        async with self._owner_lock(owner), store_guard(db, "remove_item"):
            deleted = await delete_cart_line(db, owner.key, line_id)
            await db.commit()
            cart = await self._snapshot(db, owner)
            if deleted:
                self._publish(cart)

        if not deleted:
            if strict:
                raise NotFound(f"Item {line_id} not found in cart")
            return cart

        logger.info("Removed line from cart", owner=owner.key, line_id=line_id)
        return cart

    async def clear_cart(self, db: AsyncSession, owner: CartOwner) -> None:
        async with self._owner_lock(owner), store_guard(db, "clear_cart"):
            deleted = await clear_cart_lines(db, owner.key)
            await db.commit()
            self._publish(CartSnapshot(owner=owner.key, items=[]))

        logger.info("Cart cleared", owner=owner.key, lines=deleted)
