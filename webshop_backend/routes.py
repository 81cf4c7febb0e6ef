# webshop_backend/routes.py
import json
from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, Request, WebSocket, WebSocketDisconnect, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession

from webshop_backend.auth_utils import TOKEN_COOKIE, resolve_owner
from webshop_backend.cart import CartService
from webshop_backend.db.database import get_db
from webshop_backend.db.schemas import (
    CartItemCreate,
    CartItemUpdate,
    CartLineItem,
    CartMutationResponse,
    ProductBase,
    StockUpdate,
)
from webshop_backend.errors import AuthenticationError, Unavailable
from webshop_backend.inventory import InventoryService
from webshop_backend.owners import CartOwner

logger = structlog.get_logger(__name__)

REFRESH_CART = "refresh_cart"

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)

router = APIRouter(prefix="/api")
ws_router = APIRouter()


def get_cart_service(request: Request) -> CartService:
    return request.app.state.cart_service


def get_inventory_service(request: Request) -> InventoryService:
    return request.app.state.inventory_service


def get_owner(request: Request, token: Optional[str] = Depends(oauth2_scheme)) -> CartOwner:
    """Bearer header first, then the session cookie, else the anonymous cart."""
    return resolve_owner(token or request.cookies.get(TOKEN_COOKIE))


# Product Routes
@router.get("/products", response_model=List[ProductBase])
async def read_products(
    db: AsyncSession = Depends(get_db),
    inventory: InventoryService = Depends(get_inventory_service),
):
    return await inventory.list_products(db)


@router.get("/products/{product_id}", response_model=ProductBase)
async def read_product(
    product_id: int,
    db: AsyncSession = Depends(get_db),
    inventory: InventoryService = Depends(get_inventory_service),
):
    return await inventory.get_product(db, product_id)


@router.put("/products/{product_id}/stock", response_model=ProductBase)
async def update_product_stock(
    product_id: int,
    body: StockUpdate,
    db: AsyncSession = Depends(get_db),
    inventory: InventoryService = Depends(get_inventory_service),
):
    return await inventory.set_availability(db, product_id, body.in_stock)


# Cart Routes
@router.get("/cart", response_model=List[CartLineItem])
async def read_cart(
    owner: CartOwner = Depends(get_owner),
    db: AsyncSession = Depends(get_db),
    carts: CartService = Depends(get_cart_service),
):
    cart = await carts.get_cart(db, owner)
    return cart.items


@router.post("/cart", response_model=CartMutationResponse, status_code=status.HTTP_201_CREATED)
async def add_to_cart(
    body: CartItemCreate,
    owner: CartOwner = Depends(get_owner),
    db: AsyncSession = Depends(get_db),
    carts: CartService = Depends(get_cart_service),
):
    cart = await carts.add_item(db, owner, body.product_id, body.quantity)
    return CartMutationResponse(message="Product added to cart", cart=cart.items)


@router.put("/cart/{line_id}", response_model=CartMutationResponse)
async def update_cart_item(
    line_id: int,
    body: CartItemUpdate,
    owner: CartOwner = Depends(get_owner),
    db: AsyncSession = Depends(get_db),
    carts: CartService = Depends(get_cart_service),
):
    cart = await carts.update_item(db, owner, line_id, body.quantity)
    message = "Cart updated" if body.quantity > 0 else "Item removed from cart"
    return CartMutationResponse(message=message, cart=cart.items)


@router.delete("/cart/{line_id}", response_model=CartMutationResponse)
async def remove_cart_item(
    line_id: int,
    owner: CartOwner = Depends(get_owner),
    db: AsyncSession = Depends(get_db),
    carts: CartService = Depends(get_cart_service),
):
    cart = await carts.remove_item(db, owner, line_id, strict=True)
    return CartMutationResponse(message="Item removed from cart", cart=cart.items)


@router.delete("/cart", response_model=CartMutationResponse)
async def clear_cart(
    owner: CartOwner = Depends(get_owner),
    db: AsyncSession = Depends(get_db),
    carts: CartService = Depends(get_cart_service),
):
    await carts.clear_cart(db, owner)
    return CartMutationResponse(message="Cart cleared", cart=[])


@router.get("/debug/cart")
async def debug_cart(
    owner: CartOwner = Depends(get_owner),
    db: AsyncSession = Depends(get_db),
    carts: CartService = Depends(get_cart_service),
):
    cart = await carts.get_cart(db, owner)
    return {
        "owner": owner.key,
        "lines": len(cart.items),
        "total_quantity": cart.total_quantity,
    }


@ws_router.websocket("/ws")
async def cart_updates(websocket: WebSocket):
    """Live cart and inventory updates.

    The current cart is pushed as soon as the socket opens; after that the
    client gets every change to its owner's cart, every stock change, and a
    fresh cart whenever it sends ``{"type": "refresh_cart"}``.
    """
    token = websocket.query_params.get("token") or websocket.cookies.get(TOKEN_COOKIE)
    try:
        owner = resolve_owner(token)
    except AuthenticationError as e:
        logger.info("Rejected websocket", reason=e.message)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    broadcaster = websocket.app.state.broadcaster
    connection = await broadcaster.connect(websocket, owner)
    try:
        await _push_cart(websocket, connection, owner)
        while True:
            message = _parse(await websocket.receive_text())
            if isinstance(message, dict) and message.get("type") == REFRESH_CART:
                await _push_cart(websocket, connection, owner)
            else:
                logger.debug("Ignoring client message", connection_id=connection.id, message=message)
    except WebSocketDisconnect:
        pass
    finally:
        await broadcaster.disconnect(connection)


def _parse(text: str):
    try:
        return json.loads(text)
    except ValueError:
        return None


async def _push_cart(websocket: WebSocket, connection, owner: CartOwner):
    state = websocket.app.state
    async with state.session_factory() as db:
        try:
            await state.cart_service.push_cart(db, owner, connection)
        except Unavailable:
            logger.exception("Could not load cart for websocket", owner=owner.key)
