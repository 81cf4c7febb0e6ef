# webshop_backend/db/schemas.py
from enum import Enum
from pydantic import BaseModel, Field
from typing import List, Optional, Any, Dict

# Верхняя граница количества одной позиции корзины
MAX_LINE_QUANTITY = 999


# Схема для товара (Product)
class ProductBase(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    price: float
    image: Optional[str] = None
    in_stock: bool
    details: Optional[str] = None

    class Config:
        from_attributes = True


class StockUpdate(BaseModel):
    in_stock: bool = Field(alias="inStock")

    class Config:
        populate_by_name = True


# Элемент корзины, объединённый с данными товара
class CartLineItem(BaseModel):
    id: int
    product_id: int
    quantity: int
    name: str
    price: float
    image: Optional[str] = None
    in_stock: bool


class CartSnapshot(BaseModel):
    owner: str
    items: List[CartLineItem] = []

    @property
    def total_quantity(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def total_price(self) -> float:
        return round(sum(item.price * item.quantity for item in self.items), 2)

    def to_payload(self) -> Dict[str, Any]:
        payload = self.model_dump(mode="json")
        payload["total_quantity"] = self.total_quantity
        payload["total_price"] = self.total_price
        return payload


class CartItemCreate(BaseModel):
    product_id: int = Field(alias="productId")
    quantity: int = Field(default=1, ge=1, le=MAX_LINE_QUANTITY)

    class Config:
        populate_by_name = True


class CartItemUpdate(BaseModel):
    quantity: int = Field(le=MAX_LINE_QUANTITY)


class CartMutationResponse(BaseModel):
    message: str
    cart: List[CartLineItem]


class MessageKind(str, Enum):
    cart_update = "cart_update"
    inventory_update = "inventory_update"


# Конверт сообщения для WebSocket клиентов
class Envelope(BaseModel):
    kind: MessageKind
    owner_scope: Optional[str] = None
    payload: Dict[str, Any]
