# webshop_backend/db/functions.py
from contextlib import asynccontextmanager
from typing import List, Optional

from sqlalchemy import delete, func, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from webshop_backend.db.models import CartItem, Product
from webshop_backend.db.schemas import CartLineItem
from webshop_backend.errors import Unavailable


@asynccontextmanager
async def store_guard(db: AsyncSession, operation: str):
    """Roll back and re-raise store failures as Unavailable."""
    try:
        yield
    except SQLAlchemyError as exc:
        await db.rollback()
        raise Unavailable(f"Store unavailable during {operation}") from exc


# Получение всех продуктов
async def get_all_products(db: AsyncSession) -> List[Product]:
    result = await db.execute(select(Product).order_by(Product.id))
    return list(result.scalars().all())


# Получение одного продукта
async def get_product_by_id(db: AsyncSession, product_id: int) -> Optional[Product]:
    result = await db.execute(select(Product).filter(Product.id == product_id))
    return result.scalar_one_or_none()


async def count_products(db: AsyncSession) -> int:
    result = await db.execute(select(func.count()).select_from(Product))
    return result.scalar_one()


async def set_product_stock(db: AsyncSession, product_id: int, in_stock: bool) -> Optional[Product]:
    product = await get_product_by_id(db, product_id)
    if not product:
        return None
    product.in_stock = in_stock
    await db.commit()
    await db.refresh(product)
    return product


# Получить товары из корзины владельца вместе с данными товара
async def get_cart_lines(db: AsyncSession, owner_key: str) -> List[CartLineItem]:
    result = await db.execute(
        select(
            CartItem.id,
            CartItem.product_id,
            CartItem.quantity,
            Product.name,
            Product.price,
            Product.image,
            Product.in_stock,
        )
        .join(Product, CartItem.product_id == Product.id)
        .filter(CartItem.owner_key == owner_key)
        .order_by(CartItem.id)
    )
    return [CartLineItem(**row._mapping) for row in result.all()]


async def get_cart_line(db: AsyncSession, owner_key: str, line_id: int) -> Optional[CartItem]:
    result = await db.execute(
        select(CartItem).filter(CartItem.id == line_id, CartItem.owner_key == owner_key)
    )
    return result.scalar_one_or_none()


async def get_line_quantity(db: AsyncSession, owner_key: str, product_id: int) -> int:
    result = await db.execute(
        select(CartItem.quantity).filter(CartItem.owner_key == owner_key, CartItem.product_id == product_id)
    )
    return result.scalar_one_or_none() or 0


def _insert_for(db: AsyncSession):
    if db.bind.dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


async def upsert_cart_line(db: AsyncSession, owner_key: str, product_id: int, quantity: int):
    """Insert a line, or add ``quantity`` to the existing one, in one statement."""
    insert = _insert_for(db)
    stmt = insert(CartItem).values(owner_key=owner_key, product_id=product_id, quantity=quantity)
    stmt = stmt.on_conflict_do_update(
        index_elements=[CartItem.owner_key, CartItem.product_id],
        set_={"quantity": CartItem.quantity + stmt.excluded.quantity},
    )
    await db.execute(stmt)


async def set_cart_line_quantity(db: AsyncSession, owner_key: str, line_id: int, quantity: int) -> int:
    result = await db.execute(
        update(CartItem)
        .where(CartItem.id == line_id, CartItem.owner_key == owner_key)
        .values(quantity=quantity)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


async def delete_cart_line(db: AsyncSession, owner_key: str, line_id: int) -> int:
    result = await db.execute(
        delete(CartItem).where(CartItem.id == line_id, CartItem.owner_key == owner_key)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


# Очистка корзины владельца
async def clear_cart_lines(db: AsyncSession, owner_key: str) -> int:
    result = await db.execute(
        delete(CartItem)
        .where(CartItem.owner_key == owner_key)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount
